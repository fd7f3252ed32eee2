"""Error taxonomy for room and round actions.

Every error is raised before any state is touched, so a rejected action
never leaves a room half-updated. The gateway reports them to the sender
only, using ``code`` as the wire identifier.
"""

from __future__ import annotations


class GameError(ValueError):
    """Base class for all rejected actions."""

    @property
    def code(self) -> str:
        return type(self).__name__


# ============ Room ============


class RoomNotFound(GameError):
    def __init__(self, room_code: str) -> None:
        self.room_code = room_code
        super().__init__(f"Room {room_code} not found")


class RoomEnded(GameError):
    def __init__(self, room_code: str) -> None:
        self.room_code = room_code
        super().__init__(f"Session in room {room_code} has ended")


class NotHost(GameError):
    def __init__(self, player_id: str) -> None:
        self.player_id = player_id
        super().__init__("Only the host can do that")


class InsufficientPlayers(GameError):
    def __init__(self, count: int) -> None:
        self.count = count
        super().__init__(f"Need at least 2 players (have {count})")


# ============ Round ============


class RoundNotActive(GameError):
    def __init__(self) -> None:
        super().__init__("No round in progress")


class RoundInProgress(GameError):
    def __init__(self) -> None:
        super().__init__("A round is already in progress")


class NotYourTurn(GameError):
    def __init__(self, player_id: str) -> None:
        self.player_id = player_id
        super().__init__("It's not your turn yet")


class PlayerNotActive(GameError):
    def __init__(self, player_id: str) -> None:
        self.player_id = player_id
        super().__init__(f"Player {player_id} is not active in this round")


class ShowAlreadyCalled(GameError):
    def __init__(self) -> None:
        super().__init__("Show has already been called")


class InvalidBetAmount(GameError):
    """Amount is not a number, not positive, or outside the allowed range."""


class InvalidTurnOrder(GameError):
    """New turn order is not a permutation of the active players."""
