"""Pydantic models for the wire protocol and session summaries."""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class RoomStatus(str, Enum):
    LOBBY = "lobby"
    PLAYING = "playing"
    SETTLEMENT = "settlement"
    ENDED = "ended"


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


# --- Inbound action payloads ---


class RoomPayload(WireModel):
    room_code: str = Field(..., min_length=1, max_length=12)

    @field_validator("room_code")
    @classmethod
    def _normalize_code(cls, v: str) -> str:
        return v.strip().upper()


class CreateRoomPayload(WireModel):
    host_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=20)
    min_bet: float = Field(..., gt=0)
    max_bet: Optional[float] = Field(default=None, gt=0)


class JoinRoomPayload(RoomPayload):
    player_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=20)


class HostActionPayload(RoomPayload):
    """start-game, next-round and end-session."""

    host_id: str


class PlayerActionPayload(RoomPayload):
    """pack, show and leave-session."""

    player_id: str


class PlaceBetPayload(RoomPayload):
    player_id: str
    # Validated by the round engine so bad amounts surface as InvalidBetAmount
    amount: Any = None


class DeclareWinnerPayload(RoomPayload):
    host_id: str
    winner_id: str


class ReorderTurnsPayload(RoomPayload):
    host_id: str
    new_order: list[str]


class ChangeMinBetPayload(RoomPayload):
    host_id: str
    new_min_bet: Any = None


# --- Outbound / derived models ---


class SettlementTransaction(WireModel):
    from_player_id: str
    to_player_id: str
    amount: float


class PlayerSummary(WireModel):
    player_id: str
    name: str
    total_net: float
    wins: int
    rounds_played: int
    win_rate: float
    total_won: float
    total_lost: float


class SessionSummary(WireModel):
    room_code: str
    player_stats: list[PlayerSummary]
    total_rounds: int
    settlement: list[SettlementTransaction] = Field(default_factory=list)


class ErrorMessage(WireModel):
    code: str
    message: str
