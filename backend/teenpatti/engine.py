"""Round state machine for one Teen Patti hand.

Tracks the pot, per-player contributions, turn order and the show call.
Card values never appear here; a round ends when the host declares a
winner (or everyone else packs).

Transitions are value-style: every operation validates first, then
returns a fresh ``RoundState`` and leaves its input untouched. A rejected
action therefore can never leave a round half-applied.
"""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Optional, Sequence

from teenpatti.errors import (
    InsufficientPlayers,
    InvalidBetAmount,
    InvalidTurnOrder,
    NotYourTurn,
    PlayerNotActive,
    ShowAlreadyCalled,
)
from teenpatti.money import parse_amount, round_money


class PlayerStatus(str, Enum):
    ACTIVE = "active"
    PACKED = "packed"
    SHOW = "show"


class RoundPhase(str, Enum):
    ACTIVE = "active"
    SHOW_PENDING = "show_pending"


class RoundState:
    """Betting state of the round in progress."""

    def __init__(
        self,
        round_id: str,
        turn_order: list[str],
        player_bets: dict[str, float],
        player_status: dict[str, PlayerStatus],
        pot: float,
        current_min_bet: float,
        current_turn_index: int = 0,
        show_called_by: Optional[str] = None,
        max_bet: Optional[float] = None,
    ) -> None:
        self.round_id = round_id
        self.turn_order = turn_order
        self.player_bets = player_bets
        self.player_status = player_status
        self.pot = pot
        self.current_min_bet = current_min_bet
        self.current_turn_index = current_turn_index
        self.show_called_by = show_called_by
        self.max_bet = max_bet

    def copy(self) -> RoundState:
        return RoundState(
            round_id=self.round_id,
            turn_order=list(self.turn_order),
            player_bets=dict(self.player_bets),
            player_status=dict(self.player_status),
            pot=self.pot,
            current_min_bet=self.current_min_bet,
            current_turn_index=self.current_turn_index,
            show_called_by=self.show_called_by,
            max_bet=self.max_bet,
        )

    @property
    def phase(self) -> RoundPhase:
        if self.show_called_by is not None:
            return RoundPhase.SHOW_PENDING
        return RoundPhase.ACTIVE

    @property
    def active_players(self) -> list[str]:
        """Players still betting, in turn order."""
        return [
            pid
            for pid in self.turn_order
            if self.player_status.get(pid) == PlayerStatus.ACTIVE
        ]

    @property
    def current_turn(self) -> Optional[str]:
        """Whose turn it is. Derived from the active set on every call."""
        active = self.active_players
        if not active:
            return None
        return active[self.current_turn_index % len(active)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "roundId": self.round_id,
            "phase": self.phase.value,
            "pot": self.pot,
            "currentMinBet": self.current_min_bet,
            "maxBet": self.max_bet,
            "playerBets": dict(self.player_bets),
            "playerStatus": {pid: s.value for pid, s in self.player_status.items()},
            "turnOrder": list(self.turn_order),
            "currentTurnIndex": self.current_turn_index,
            "currentTurn": self.current_turn,
            "showCalledBy": self.show_called_by,
        }


class RoundResult:
    """Outcome of a resolved round. Net results always sum to zero."""

    def __init__(
        self,
        round_id: str,
        winner_id: str,
        pot: float,
        results: dict[str, float],
        player_bets: dict[str, float],
        timestamp: float,
    ) -> None:
        self.round_id = round_id
        self.winner_id = winner_id
        self.pot = pot
        self.results = results
        self.player_bets = player_bets
        self.timestamp = timestamp

    def to_dict(self) -> dict[str, Any]:
        return {
            "roundId": self.round_id,
            "winnerId": self.winner_id,
            "pot": self.pot,
            "results": dict(self.results),
            "playerBets": dict(self.player_bets),
            "timestamp": self.timestamp,
        }


# ------------------------------------------------------------------
# Transitions
# ------------------------------------------------------------------


def start_round(
    player_ids: Sequence[str],
    min_bet: float,
    max_bet: Optional[float] = None,
    round_id: Optional[str] = None,
) -> RoundState:
    """Deal in ``player_ids``; everyone pays the entry bet up front."""
    # Preserve seating order, drop accidental duplicates
    order = list(dict.fromkeys(player_ids))
    if len(order) < 2:
        raise InsufficientPlayers(len(order))

    entry = parse_amount(min_bet)
    if entry is None or entry <= 0:
        raise InvalidBetAmount(f"Invalid minimum bet: {min_bet!r}")

    return RoundState(
        round_id=round_id or uuid.uuid4().hex,
        turn_order=order,
        player_bets={pid: entry for pid in order},
        player_status={pid: PlayerStatus.ACTIVE for pid in order},
        pot=round_money(entry * len(order)),
        current_min_bet=entry,
        max_bet=max_bet,
    )


def _require_turn(state: RoundState, player_id: str) -> None:
    if state.player_status.get(player_id) != PlayerStatus.ACTIVE:
        raise PlayerNotActive(player_id)
    if state.current_turn != player_id:
        raise NotYourTurn(player_id)


def place_bet(state: RoundState, player_id: str, amount: Any) -> RoundState:
    """Pay a chaal of ``amount`` on top of what the player already put in.

    Calling at the current minimum still adds a fresh contribution; an
    amount above it raises the minimum for everyone after.
    """
    if state.show_called_by is not None:
        raise ShowAlreadyCalled()
    _require_turn(state, player_id)

    amt = parse_amount(amount)
    if amt is None or amt <= 0:
        raise InvalidBetAmount("Invalid bet amount")
    if amt < state.current_min_bet:
        raise InvalidBetAmount(f"Bet must be at least {state.current_min_bet:g}")
    if state.max_bet is not None and amt > state.max_bet:
        raise InvalidBetAmount(f"Bet cannot exceed {state.max_bet:g}")

    new = state.copy()
    new.pot = round_money(new.pot + amt)
    new.player_bets[player_id] = round_money(new.player_bets[player_id] + amt)
    if amt > new.current_min_bet:
        new.current_min_bet = amt

    new.current_turn_index = (new.current_turn_index + 1) % len(new.active_players)
    return new


def pack(state: RoundState, player_id: str) -> tuple[RoundState, Optional[str]]:
    """Fold. Returns the new state and the auto-winner, if only one is left.

    The auto-winner still has to be resolved by the caller.
    """
    _require_turn(state, player_id)

    new = state.copy()
    new.player_status[player_id] = PlayerStatus.PACKED

    remaining = new.active_players
    if len(remaining) == 1:
        return new, remaining[0]

    # The next player slides into the packed player's slot
    new.current_turn_index = new.current_turn_index % len(remaining)
    return new, None


def show(state: RoundState, player_id: str) -> tuple[RoundState, float]:
    """Call a show, paying the current minimum for every other active player.

    Players can go into debt; there is no balance check.
    """
    if state.show_called_by is not None:
        raise ShowAlreadyCalled()
    _require_turn(state, player_id)

    show_cost = round_money(state.current_min_bet * (len(state.active_players) - 1))

    new = state.copy()
    new.pot = round_money(new.pot + show_cost)
    new.player_bets[player_id] = round_money(new.player_bets[player_id] + show_cost)
    new.player_status[player_id] = PlayerStatus.SHOW
    new.show_called_by = player_id
    return new, show_cost


def resolve(
    state: RoundState, winner_id: str, timestamp: Optional[float] = None
) -> RoundResult:
    """Compute the round's net results with ``winner_id`` taking the pot."""
    status = state.player_status.get(winner_id)
    if winner_id not in state.player_bets or status == PlayerStatus.PACKED:
        raise PlayerNotActive(winner_id)

    results: dict[str, float] = {}
    for pid, bet in state.player_bets.items():
        if pid == winner_id:
            results[pid] = round_money(state.pot - bet)
        else:
            results[pid] = round_money(-bet)

    return RoundResult(
        round_id=state.round_id,
        winner_id=winner_id,
        pot=state.pot,
        results=results,
        player_bets=dict(state.player_bets),
        timestamp=time.time() if timestamp is None else timestamp,
    )


def reorder_turns(state: RoundState, new_order: Sequence[str]) -> RoundState:
    """Replace the turn order and restart from its first player.

    ``new_order`` covers the active players only. Packed players and the
    show caller keep their seats, moved behind everyone still betting.
    """
    order = list(new_order)
    active = state.active_players
    if len(order) != len(set(order)) or set(order) != set(active):
        raise InvalidTurnOrder("New order must list every active player exactly once")

    new = state.copy()
    new.turn_order = order + [pid for pid in state.turn_order if pid not in order]
    new.current_turn_index = 0
    return new
