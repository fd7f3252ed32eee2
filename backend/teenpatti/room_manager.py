"""Room registry: room lifecycle, roster, host authority and round actions.

``RoomStore`` owns every live room. It does no locking of its own: the
gateway funnels all actions for a room through that room's channel, so
methods here always run one at a time per room and never await.
"""

from __future__ import annotations

import logging
import random
import string
import time
from typing import Any, NamedTuple, Optional, Sequence

from teenpatti import engine, session
from teenpatti.engine import RoundResult, RoundState
from teenpatti.errors import (
    InsufficientPlayers,
    InvalidBetAmount,
    NotHost,
    PlayerNotActive,
    RoomEnded,
    RoomNotFound,
    RoundInProgress,
    RoundNotActive,
)
from teenpatti.models import RoomStatus, SessionSummary
from teenpatti.money import parse_amount, round_money

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits


class PlayerSessionStats:
    """A player's standing across the whole session."""

    def __init__(self, player_id: str, name: str, spectating: bool = False) -> None:
        self.player_id = player_id
        self.name = name
        self.total_net: float = 0.0
        self.wins: int = 0
        self.rounds_played: int = 0
        self.connection_active: bool = True
        self.spectating = spectating

    def to_dict(self) -> dict[str, Any]:
        return {
            "playerId": self.player_id,
            "name": self.name,
            "totalNet": self.total_net,
            "wins": self.wins,
            "roundsPlayed": self.rounds_played,
            "connectionActive": self.connection_active,
            "spectating": self.spectating,
        }


class Room:
    """A hosted multi-round session."""

    def __init__(
        self,
        code: str,
        host_id: str,
        host_name: str,
        min_bet: float,
        max_bet: Optional[float] = None,
    ) -> None:
        self.code = code
        self.host_id = host_id
        self.min_bet = min_bet
        self.max_bet = max_bet
        self.status = RoomStatus.LOBBY
        self.players: dict[str, PlayerSessionStats] = {
            host_id: PlayerSessionStats(host_id, host_name),
        }
        self.current_round: Optional[RoundState] = None
        self.round_history: list[RoundResult] = []
        self.counted_round_ids: set[str] = set()
        self.created_at = time.time()

    @property
    def ended(self) -> bool:
        return self.status == RoomStatus.ENDED

    def require_host(self, player_id: str) -> None:
        if player_id != self.host_id:
            raise NotHost(player_id)

    def eligible_player_ids(self) -> list[str]:
        """Players who will be dealt into the next round."""
        return [
            p.player_id
            for p in self.players.values()
            if p.connection_active and not p.spectating
        ]

    def promote_spectators(self) -> None:
        for p in self.players.values():
            if p.connection_active and p.spectating:
                p.spectating = False

    def player_names(self) -> dict[str, str]:
        return {pid: p.name for pid, p in self.players.items()}

    def metadata(self) -> dict[str, Any]:
        """Static room settings, persisted once at creation."""
        return {
            "roomCode": self.code,
            "hostId": self.host_id,
            "minBet": self.min_bet,
            "maxBet": self.max_bet,
            "createdAt": self.created_at,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "roomCode": self.code,
            "hostId": self.host_id,
            "minBet": self.min_bet,
            "maxBet": self.max_bet,
            "status": self.status.value,
            "players": {pid: p.to_dict() for pid, p in self.players.items()},
            "currentRound": (
                self.current_round.to_dict() if self.current_round else None
            ),
            "totalRounds": len(self.round_history),
            "createdAt": self.created_at,
        }


class JoinResult(NamedTuple):
    room: Room
    rejoining: bool
    spectating: bool


class RoomStore:
    """In-memory registry of rooms, keyed by room code.

    Rooms live for the life of the process; ended rooms are kept so late
    reads still see the final state.
    """

    def __init__(self, code_length: int = 6, rng: Optional[random.Random] = None) -> None:
        self._rooms: dict[str, Room] = {}
        self._code_length = code_length
        self._rng = rng or random.Random()

    def __contains__(self, code: str) -> bool:
        return code.upper() in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)

    def _generate_code(self) -> str:
        return "".join(self._rng.choices(CODE_ALPHABET, k=self._code_length))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_room(
        self,
        host_id: str,
        host_name: str,
        min_bet: Any,
        max_bet: Any = None,
    ) -> Room:
        """Create a room in the lobby with the host as its only player."""
        min_amt = parse_amount(min_bet)
        if min_amt is None or min_amt <= 0:
            raise InvalidBetAmount(f"Invalid minimum bet: {min_bet!r}")
        max_amt = None
        if max_bet is not None:
            max_amt = parse_amount(max_bet)
            if max_amt is None or max_amt < min_amt:
                raise InvalidBetAmount("Maximum bet must be at least the minimum bet")

        code = self._generate_code()
        while code in self._rooms:
            logger.warning("Room code collision detected, regenerating: %s", code)
            code = self._generate_code()

        room = Room(code, host_id, host_name, min_amt, max_amt)
        self._rooms[code] = room
        logger.info("Room created: room=%s host=%s", code, host_id)
        return room

    def find_room(self, code: str) -> Optional[Room]:
        return self._rooms.get(code.upper())

    def get_room(self, code: str) -> Room:
        room = self.find_room(code)
        if room is None:
            raise RoomNotFound(code)
        return room

    def _open_room(self, code: str) -> Room:
        room = self.get_room(code)
        if room.ended:
            raise RoomEnded(room.code)
        return room

    # ------------------------------------------------------------------
    # Roster
    # ------------------------------------------------------------------

    def join_room(self, code: str, player_id: str, name: str) -> JoinResult:
        """Add or reconnect a player. Anyone arriving mid-round spectates."""
        room = self._open_room(code)
        mid_round = room.current_round is not None

        player = room.players.get(player_id)
        if player is not None:
            player.connection_active = True
            player.spectating = mid_round
            logger.info("Player rejoined: room=%s player=%s", room.code, player_id)
            return JoinResult(room, True, player.spectating)

        room.players[player_id] = PlayerSessionStats(player_id, name, spectating=mid_round)
        logger.info(
            "Player joined: room=%s player=%s spectating=%s", room.code, player_id, mid_round
        )
        return JoinResult(room, False, mid_round)

    def player_leave(self, code: str, player_id: str) -> Optional[str]:
        """Mark a player disconnected. Returns the new host id if it changed."""
        room = self.find_room(code)
        if room is None or player_id not in room.players:
            return None

        room.players[player_id].connection_active = False
        logger.info("Player left: room=%s player=%s", room.code, player_id)

        if room.host_id != player_id:
            return None

        remaining = [
            p.player_id
            for p in room.players.values()
            if p.connection_active and p.player_id != player_id
        ]
        if not remaining:
            logger.info("Room %s has no connected players left", room.code)
            return None

        room.host_id = self._rng.choice(remaining)
        logger.info("Host changed: room=%s new_host=%s", room.code, room.host_id)
        return room.host_id

    def change_min_bet(self, code: str, host_id: str, new_min_bet: Any) -> Room:
        """Set the entry bet for rounds started from now on."""
        room = self._open_room(code)
        room.require_host(host_id)
        amount = parse_amount(new_min_bet)
        if amount is None or amount <= 0:
            raise InvalidBetAmount(f"Invalid minimum bet: {new_min_bet!r}")
        if room.max_bet is not None and amount > room.max_bet:
            raise InvalidBetAmount("Minimum bet cannot exceed the maximum bet")
        room.min_bet = amount
        return room

    # ------------------------------------------------------------------
    # Rounds
    # ------------------------------------------------------------------

    def start_round(self, code: str, host_id: str, promote: bool = False) -> RoundState:
        """Deal a new round to every eligible player (host only).

        With ``promote`` set, connected spectators are dealt in as well.
        """
        room = self._open_room(code)
        room.require_host(host_id)
        if room.current_round is not None:
            raise RoundInProgress()

        if promote:
            player_ids = [p.player_id for p in room.players.values() if p.connection_active]
        else:
            player_ids = room.eligible_player_ids()
        if len(player_ids) < 2:
            raise InsufficientPlayers(len(player_ids))

        state = engine.start_round(player_ids, room.min_bet, room.max_bet)
        if promote:
            room.promote_spectators()
        room.current_round = state
        room.status = RoomStatus.PLAYING
        logger.info(
            "Round started: room=%s round=%s players=%d pot=%s",
            room.code,
            state.round_id,
            len(player_ids),
            state.pot,
        )
        return state

    def _active_round(
        self, code: str, actor_id: Optional[str] = None
    ) -> tuple[Room, RoundState]:
        """The room and its running round. ``actor_id`` must not be spectating."""
        room = self._open_room(code)
        if room.current_round is None:
            raise RoundNotActive()
        if actor_id is not None:
            stats = room.players.get(actor_id)
            if stats is not None and stats.spectating:
                raise PlayerNotActive(actor_id)
        return room, room.current_round

    def place_bet(self, code: str, player_id: str, amount: Any) -> RoundState:
        room, state = self._active_round(code, player_id)
        room.current_round = engine.place_bet(state, player_id, amount)
        return room.current_round

    def pack(self, code: str, player_id: str) -> tuple[RoundState, Optional[str]]:
        room, state = self._active_round(code, player_id)
        room.current_round, auto_winner = engine.pack(state, player_id)
        return room.current_round, auto_winner

    def show(self, code: str, player_id: str) -> tuple[RoundState, float]:
        room, state = self._active_round(code, player_id)
        room.current_round, show_cost = engine.show(state, player_id)
        return room.current_round, show_cost

    def reorder_turns(
        self, code: str, host_id: str, new_order: Sequence[str]
    ) -> RoundState:
        room, state = self._active_round(code)
        room.require_host(host_id)
        room.current_round = engine.reorder_turns(state, new_order)
        return room.current_round

    def declare_winner(
        self, code: str, winner_id: str, host_id: Optional[str] = None
    ) -> RoundResult:
        """Resolve the current round and fold it into the session totals.

        ``host_id`` is required for a declared winner; auto-wins after a
        pack pass None.
        """
        room, state = self._active_round(code)
        if host_id is not None:
            room.require_host(host_id)
        result = engine.resolve(state, winner_id)
        session.record_round_result(room, result)
        logger.info(
            "Round ended: room=%s round=%s winner=%s pot=%s",
            room.code,
            result.round_id,
            winner_id,
            result.pot,
        )
        return result

    def end_session(self, code: str, host_id: str) -> SessionSummary:
        room = self._open_room(code)
        room.require_host(host_id)
        return session.end_session(room)

    def session_totals(self, code: str) -> dict[str, float]:
        room = self.get_room(code)
        return {pid: round_money(p.total_net) for pid, p in room.players.items()}
