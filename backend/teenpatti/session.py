"""Session aggregation: running totals per player and the end-of-session summary."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from teenpatti.engine import RoundResult
from teenpatti.models import PlayerSummary, RoomStatus, SessionSummary
from teenpatti.money import round_money
from teenpatti.settlement import settle

if TYPE_CHECKING:
    from teenpatti.room_manager import Room

logger = logging.getLogger(__name__)


def record_round_result(room: Room, result: RoundResult) -> bool:
    """Fold a resolved round into the room's totals.

    A round id that was already counted is ignored, so redelivered
    results change the totals exactly once. Returns True if counted.
    """
    if result.round_id in room.counted_round_ids:
        logger.warning(
            "Round already counted: room=%s round=%s", room.code, result.round_id
        )
        return False
    room.counted_round_ids.add(result.round_id)

    for player_id, net in result.results.items():
        player = room.players.get(player_id)
        if player is None:
            continue
        player.total_net = round_money(player.total_net + net)
        player.rounds_played += 1
        if player_id == result.winner_id:
            player.wins += 1

    room.round_history.append(result)
    room.status = RoomStatus.SETTLEMENT
    room.current_round = None
    return True


def end_session(room: Room) -> SessionSummary:
    """Close the room and build the final standings.

    Won/lost totals are recomputed from the round history rather than
    derived from ``total_net``, so they double as a cross-check.
    """
    if room.current_round is not None:
        logger.info(
            "Discarding unresolved round %s in room %s",
            room.current_round.round_id,
            room.code,
        )
        room.current_round = None

    stats: list[PlayerSummary] = []
    for p in room.players.values():
        total_won = 0.0
        total_lost = 0.0
        for r in room.round_history:
            net = r.results.get(p.player_id)
            if net is None:
                continue
            if net > 0:
                total_won += net
            else:
                total_lost += abs(net)

        win_rate = round(p.wins / p.rounds_played * 100, 1) if p.rounds_played else 0.0
        stats.append(
            PlayerSummary(
                player_id=p.player_id,
                name=p.name,
                total_net=p.total_net,
                wins=p.wins,
                rounds_played=p.rounds_played,
                win_rate=win_rate,
                total_won=round_money(total_won),
                total_lost=round_money(total_lost),
            )
        )

    stats.sort(key=lambda s: s.total_net, reverse=True)

    room.status = RoomStatus.ENDED
    logger.info(
        "Session ended: room=%s rounds=%d", room.code, len(room.round_history)
    )
    return SessionSummary(
        room_code=room.code,
        player_stats=stats,
        total_rounds=len(room.round_history),
        settlement=settle({s.player_id: s.total_net for s in stats}),
    )
