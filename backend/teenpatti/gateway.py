"""Realtime gateway: decodes socket actions, applies them to rooms, broadcasts results.

Every room-scoped action runs as one job on that room's channel: the
state transition and the broadcasts it causes complete before the next
action for the room starts. Errors go back to the sender only.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, ValidationError

from teenpatti import redis_client
from teenpatti.channels import ChannelRegistry
from teenpatti.engine import RoundResult
from teenpatti.errors import GameError, RoomNotFound
from teenpatti.models import (
    ChangeMinBetPayload,
    CreateRoomPayload,
    DeclareWinnerPayload,
    ErrorMessage,
    HostActionPayload,
    JoinRoomPayload,
    PlaceBetPayload,
    PlayerActionPayload,
    ReorderTurnsPayload,
    RoomPayload,
)
from teenpatti.room_manager import RoomStore
from teenpatti.settlement import settle
from teenpatti.ws_manager import ClientConnection, ConnectionManager

logger = logging.getLogger(__name__)

PERSISTENCE_ENABLED = os.getenv("PERSISTENCE_ENABLED", "1") != "0"

Handler = Callable[[ClientConnection, Any], Awaitable[None]]


def _message(event: str, data: dict[str, Any]) -> str:
    return json.dumps({"type": event, "data": data})


class Gateway:
    """Routes inbound socket actions to the room store."""

    def __init__(
        self,
        store: RoomStore,
        manager: ConnectionManager,
        channels: Optional[ChannelRegistry] = None,
        persist: bool = PERSISTENCE_ENABLED,
    ) -> None:
        self.store = store
        self.manager = manager
        self.channels = channels or ChannelRegistry()
        self.persist = persist
        self._background: set[asyncio.Task] = set()

        self._handlers: dict[str, tuple[type[BaseModel], Handler]] = {
            "create-room": (CreateRoomPayload, self._create_room),
            "join-room": (JoinRoomPayload, self._join_room),
            "start-game": (HostActionPayload, self._start_game),
            "next-round": (HostActionPayload, self._next_round),
            "place-bet": (PlaceBetPayload, self._place_bet),
            "pack": (PlayerActionPayload, self._pack),
            "show": (PlayerActionPayload, self._show),
            "declare-winner": (DeclareWinnerPayload, self._declare_winner),
            "reorder-turns": (ReorderTurnsPayload, self._reorder_turns),
            "change-min-bet": (ChangeMinBetPayload, self._change_min_bet),
            "leave-session": (PlayerActionPayload, self._leave_session),
            "end-session": (HostActionPayload, self._end_session),
        }

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def handle(self, conn: ClientConnection, raw: str) -> None:
        """Process one inbound frame from ``conn``."""
        try:
            msg = json.loads(raw)
        except json.JSONDecodeError:
            await self._send_error(conn, "InvalidPayload", "Malformed JSON")
            return
        if not isinstance(msg, dict):
            await self._send_error(conn, "InvalidPayload", "Expected a JSON object")
            return

        msg_type = msg.get("type", "")
        if msg_type == "pong":
            self.manager.record_pong(conn)
            return

        entry = self._handlers.get(msg_type)
        if entry is None:
            await self._send_error(conn, "UnknownAction", f"Unknown action: {msg_type}")
            return

        model, handler = entry
        try:
            payload = model.model_validate(msg.get("data") or {})
        except ValidationError as e:
            err = e.errors()[0]
            field = ".".join(str(part) for part in err["loc"])
            await self._send_error(conn, "InvalidPayload", f"{field}: {err['msg']}")
            return

        logger.debug("Action %s from player=%s", msg_type, conn.player_id)
        try:
            if isinstance(payload, RoomPayload):
                # Rooms are never deleted, so an unknown code stays unknown
                if self.store.find_room(payload.room_code) is None:
                    raise RoomNotFound(payload.room_code)
                await self.channels.submit(
                    payload.room_code, lambda: handler(conn, payload)
                )
            else:
                await handler(conn, payload)
        except GameError as e:
            await self._send_error(conn, e.code, str(e))
        except Exception:
            logger.exception("Unhandled error processing %s", msg_type)
            await self._send_error(conn, "InternalError", "Something went wrong")

    async def disconnect(self, conn: ClientConnection) -> None:
        """Treat a dropped socket as the player leaving the session."""
        if not conn.bound:
            return
        code, player_id = conn.room_code, conn.player_id
        self.manager.unbind(conn)
        await self._release(code, player_id)

    async def drain(self) -> None:
        """Wait for outstanding background work: persistence writes and queued leaves."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self) -> None:
        await self.drain()
        await self.channels.close_all()
        await self.drain()

    # ------------------------------------------------------------------
    # Lobby actions
    # ------------------------------------------------------------------

    async def _create_room(self, conn: ClientConnection, p: CreateRoomPayload) -> None:
        room = self.store.create_room(p.host_id, p.name, p.min_bet, p.max_bet)
        self._vacate(conn, room.code, p.host_id)
        await self.manager.bind(conn, room.code, p.host_id)
        await self._unicast(
            conn, "room-created", {"roomCode": room.code, "room": room.to_dict()}
        )
        metadata = room.metadata()
        self._persist(
            lambda: redis_client.store_room(room.code, metadata), f"room {room.code}"
        )

    async def _join_room(self, conn: ClientConnection, p: JoinRoomPayload) -> None:
        room, rejoining, spectating = self.store.join_room(
            p.room_code, p.player_id, p.name
        )
        self._vacate(conn, room.code, p.player_id)
        await self.manager.bind(conn, room.code, p.player_id)
        await self._unicast(
            conn,
            "room-joined",
            {"room": room.to_dict(), "spectating": spectating, "rejoining": rejoining},
        )
        await self._broadcast(room.code, "room-updated", {"room": room.to_dict()})
        if spectating:
            await self._unicast(conn, "spectating", {})
            # Catch the newcomer up on the hand in progress
            if room.current_round is not None:
                await self._unicast(
                    conn, "round-updated", {"roundState": room.current_round.to_dict()}
                )

    async def _start_game(self, conn: ClientConnection, p: HostActionPayload) -> None:
        state = self.store.start_round(p.room_code, p.host_id)
        room = self.store.get_room(p.room_code)
        await self._broadcast(
            room.code,
            "game-started",
            {"room": room.to_dict(), "roundState": state.to_dict()},
        )

    async def _next_round(self, conn: ClientConnection, p: HostActionPayload) -> None:
        state = self.store.start_round(p.room_code, p.host_id, promote=True)
        room = self.store.get_room(p.room_code)
        await self._broadcast(
            room.code,
            "game-started",
            {"room": room.to_dict(), "roundState": state.to_dict()},
        )

    async def _change_min_bet(
        self, conn: ClientConnection, p: ChangeMinBetPayload
    ) -> None:
        room = self.store.change_min_bet(p.room_code, p.host_id, p.new_min_bet)
        await self._broadcast(room.code, "room-updated", {"room": room.to_dict()})

    async def _leave_session(
        self, conn: ClientConnection, p: PlayerActionPayload
    ) -> None:
        self.store.get_room(p.room_code)
        if (conn.room_code, conn.player_id) == (p.room_code, p.player_id):
            self.manager.unbind(conn)
        await self._leave(p.room_code, p.player_id)

    def _vacate(self, conn: ClientConnection, code: str, player_id: str) -> None:
        """Leave the seat ``conn`` holds before it takes a different one.

        The leave is queued on the old room's channel rather than awaited,
        since this runs inside the new room's job.
        """
        if not conn.bound or (conn.room_code, conn.player_id) == (code, player_id):
            return
        old_code, old_player = conn.room_code, conn.player_id
        self.manager.unbind(conn)
        self._spawn(self._release(old_code, old_player))

    async def _release(self, code: str, player_id: str) -> None:
        try:
            await self.channels.submit(code, lambda: self._leave(code, player_id))
        except GameError:
            logger.debug("Room %s vanished before %s left", code, player_id)

    async def _leave(self, code: str, player_id: str) -> None:
        new_host = self.store.player_leave(code, player_id)
        room = self.store.get_room(code)
        if new_host is not None:
            await self._broadcast(
                code, "host-changed", {"newHostId": new_host, "room": room.to_dict()}
            )
        else:
            await self._broadcast(code, "room-updated", {"room": room.to_dict()})

    async def _end_session(self, conn: ClientConnection, p: HostActionPayload) -> None:
        summary = self.store.end_session(p.room_code, p.host_id)
        await self._broadcast(
            p.room_code, "session-ended", {"sessionSummary": summary.to_wire()}
        )

    # ------------------------------------------------------------------
    # Round actions
    # ------------------------------------------------------------------

    async def _place_bet(self, conn: ClientConnection, p: PlaceBetPayload) -> None:
        state = self.store.place_bet(p.room_code, p.player_id, p.amount)
        await self._broadcast(p.room_code, "round-updated", {"roundState": state.to_dict()})

    async def _pack(self, conn: ClientConnection, p: PlayerActionPayload) -> None:
        state, auto_winner = self.store.pack(p.room_code, p.player_id)
        await self._broadcast(p.room_code, "round-updated", {"roundState": state.to_dict()})
        if auto_winner is not None:
            result = self.store.declare_winner(p.room_code, auto_winner)
            await self._round_ended(p.room_code, result, auto_win=True)

    async def _show(self, conn: ClientConnection, p: PlayerActionPayload) -> None:
        state, show_cost = self.store.show(p.room_code, p.player_id)
        await self._broadcast(p.room_code, "round-updated", {"roundState": state.to_dict()})
        await self._broadcast(
            p.room_code, "show-called", {"playerId": p.player_id, "showCost": show_cost}
        )

    async def _declare_winner(
        self, conn: ClientConnection, p: DeclareWinnerPayload
    ) -> None:
        result = self.store.declare_winner(p.room_code, p.winner_id, host_id=p.host_id)
        await self._round_ended(p.room_code, result, auto_win=False)

    async def _reorder_turns(
        self, conn: ClientConnection, p: ReorderTurnsPayload
    ) -> None:
        state = self.store.reorder_turns(p.room_code, p.host_id, p.new_order)
        await self._broadcast(p.room_code, "round-updated", {"roundState": state.to_dict()})

    async def _round_ended(self, code: str, result: RoundResult, auto_win: bool) -> None:
        room = self.store.get_room(code)
        names = room.player_names()
        await self._broadcast(
            code,
            "round-ended",
            {
                "result": result.to_dict(),
                "settlement": [t.to_wire() for t in settle(result.results)],
                "playerNames": names,
                "players": {pid: s.to_dict() for pid, s in room.players.items()},
                "autoWin": auto_win,
            },
        )
        record = {**result.to_dict(), "roomCode": code, "playerNames": names}
        self._persist(
            lambda: redis_client.store_round_result(code, record),
            f"round {result.round_id}",
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _unicast(
        self, conn: ClientConnection, event: str, data: dict[str, Any]
    ) -> None:
        await conn.send(_message(event, data))

    async def _broadcast(self, code: str, event: str, data: dict[str, Any]) -> None:
        await self.manager.broadcast(code, _message(event, data))

    async def _send_error(self, conn: ClientConnection, code: str, message: str) -> None:
        await self._unicast(
            conn, "error", ErrorMessage(code=code, message=message).to_wire()
        )

    def _persist(self, write: Callable[[], Awaitable[Any]], what: str) -> None:
        """Fire-and-forget a persistence write. Failures never touch room state."""
        if not self.persist:
            return
        self._spawn(self._persist_safely(write, what))

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _persist_safely(self, write: Callable[[], Awaitable[Any]], what: str) -> None:
        try:
            await write()
        except Exception:
            logger.warning("Failed to persist %s", what, exc_info=True)
