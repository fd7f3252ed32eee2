"""WebSocket connection manager: tracks which socket belongs to which player in which room."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ClientConnection:
    """Wraps a single WebSocket connection with metadata."""

    __slots__ = ("ws", "room_code", "player_id", "last_pong")

    def __init__(self, ws: WebSocket) -> None:
        self.ws = ws
        # Set once the socket creates or joins a room
        self.room_code: Optional[str] = None
        self.player_id: Optional[str] = None
        self.last_pong = time.time()

    @property
    def bound(self) -> bool:
        return self.room_code is not None and self.player_id is not None

    async def send(self, text: str) -> bool:
        """Send text, returning False on failure."""
        try:
            await self.ws.send_text(text)
            return True
        except Exception:
            return False


class ConnectionManager:
    """Manages WebSocket connections per room with heartbeat support."""

    # Seconds between pings, and how long a socket may go without a pong
    HEARTBEAT_INTERVAL = 10
    HEARTBEAT_TIMEOUT = 30

    def __init__(self) -> None:
        # room_code -> {player_id -> ClientConnection}
        self._rooms: dict[str, dict[str, ClientConnection]] = {}

    async def connect(self, ws: WebSocket) -> ClientConnection:
        await ws.accept()
        return ClientConnection(ws)

    async def bind(self, conn: ClientConnection, code: str, player_id: str) -> None:
        """Attach a connection to a player seat, replacing any older socket."""
        if conn.bound and (conn.room_code, conn.player_id) != (code, player_id):
            self.unbind(conn)

        players = self._rooms.setdefault(code, {})
        old = players.get(player_id)
        if old is not None and old is not conn:
            old.room_code = None
            old.player_id = None
            try:
                await old.ws.close(code=4001, reason="Replaced by new connection")
            except Exception:
                pass

        players[player_id] = conn
        conn.room_code = code
        conn.player_id = player_id
        logger.info("WS bind: room=%s player=%s", code, player_id)

    def unbind(self, conn: ClientConnection) -> None:
        """Detach a connection. Only removes the seat if it still points at ``conn``."""
        code, player_id = conn.room_code, conn.player_id
        if code is None or player_id is None:
            return
        players = self._rooms.get(code)
        if players is not None and players.get(player_id) is conn:
            del players[player_id]
            if not players:
                del self._rooms[code]
            logger.info("WS unbind: room=%s player=%s", code, player_id)
        conn.room_code = None
        conn.player_id = None

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    def record_pong(self, conn: ClientConnection) -> None:
        """Record that a client responded to a heartbeat."""
        conn.last_pong = time.time()

    def is_stale(self, conn: ClientConnection) -> bool:
        return (time.time() - conn.last_pong) > self.HEARTBEAT_TIMEOUT

    async def send_pings(self) -> None:
        """Ping every bound socket and close the ones that stopped answering.

        Closing a socket ends its receive loop, which runs the usual leave.
        """
        ping_msg = json.dumps({"type": "ping", "data": {"ts": time.time()}})
        for code, players in list(self._rooms.items()):
            for player_id, conn in list(players.items()):
                if self.is_stale(conn):
                    logger.info("WS heartbeat timeout: room=%s player=%s", code, player_id)
                    try:
                        await conn.ws.close(code=4000, reason="Heartbeat timeout")
                    except Exception:
                        pass
                else:
                    await conn.send(ping_msg)

    async def run_heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.HEARTBEAT_INTERVAL)
            await self.send_pings()

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def broadcast(self, code: str, message: str) -> None:
        """Send a message to every socket bound to the room.

        Failed sends are left bound; the socket's receive loop notices the
        disconnect and runs the leave.
        """
        for conn in list(self._rooms.get(code, {}).values()):
            if not await conn.send(message):
                logger.debug("WS send failed: room=%s player=%s", code, conn.player_id)
