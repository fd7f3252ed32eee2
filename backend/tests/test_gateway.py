"""Tests for the realtime gateway: socket actions in, broadcasts out."""

from __future__ import annotations

import json
import random
import time
from unittest.mock import AsyncMock, patch

import pytest

from teenpatti.gateway import Gateway
from teenpatti.models import RoomStatus
from teenpatti.room_manager import RoomStore
from teenpatti.ws_manager import ClientConnection, ConnectionManager


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

PATCH_REDIS = "teenpatti.gateway.redis_client"


class FakeSocket:
    """Stands in for a Starlette WebSocket; records every frame sent."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.closed_with: int | None = None

    async def accept(self) -> None:
        pass

    async def send_text(self, text: str) -> None:
        self.sent.append(json.loads(text))

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.closed_with = code

    def events(self) -> list[str]:
        return [m["type"] for m in self.sent]

    def last(self, event: str) -> dict:
        for m in reversed(self.sent):
            if m["type"] == event:
                return m["data"]
        raise AssertionError(f"no {event} frame in {self.events()}")

    def clear(self) -> None:
        self.sent.clear()


def _gateway(persist: bool = False) -> Gateway:
    return Gateway(RoomStore(rng=random.Random(3)), ConnectionManager(), persist=persist)


async def _client(gw: Gateway) -> tuple[ClientConnection, FakeSocket]:
    sock = FakeSocket()
    conn = await gw.manager.connect(sock)
    return conn, sock


async def _send(gw: Gateway, conn: ClientConnection, action: str, **data) -> None:
    await gw.handle(conn, json.dumps({"type": action, "data": data}))


async def _table(gw: Gateway, *names: str):
    """Create a room hosted by the first name and seat the rest."""
    clients = {}
    host = names[0]
    conn, sock = await _client(gw)
    await _send(gw, conn, "create-room", hostId=host, name=host, minBet=1)
    code = sock.last("room-created")["roomCode"]
    clients[host] = (conn, sock)
    for name in names[1:]:
        conn, sock = await _client(gw)
        await _send(gw, conn, "join-room", roomCode=code, playerId=name, name=name)
        clients[name] = (conn, sock)
    for _, sock in clients.values():
        sock.clear()
    return code, clients


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class TestProtocol:
    async def test_malformed_json(self):
        gw = _gateway()
        conn, sock = await _client(gw)
        await gw.handle(conn, "{not json")
        assert sock.last("error")["code"] == "InvalidPayload"

    async def test_non_object_frame(self):
        gw = _gateway()
        conn, sock = await _client(gw)
        await gw.handle(conn, "[1, 2]")
        assert sock.last("error")["code"] == "InvalidPayload"

    async def test_unknown_action(self):
        gw = _gateway()
        conn, sock = await _client(gw)
        await _send(gw, conn, "deal-cards")
        assert sock.last("error") == {
            "code": "UnknownAction",
            "message": "Unknown action: deal-cards",
        }

    async def test_missing_fields(self):
        gw = _gateway()
        conn, sock = await _client(gw)
        await _send(gw, conn, "create-room", hostId="A")
        err = sock.last("error")
        assert err["code"] == "InvalidPayload"

    async def test_pong_updates_heartbeat(self):
        gw = _gateway()
        conn, sock = await _client(gw)
        conn.last_pong = 0
        await gw.handle(conn, json.dumps({"type": "pong"}))
        assert conn.last_pong > 0
        assert sock.sent == []

    async def test_unknown_room_codes_open_no_channels(self):
        gw = _gateway()
        conn, sock = await _client(gw)
        for i in range(20):
            await _send(gw, conn, "join-room", roomCode=f"X{i}", playerId="B", name="Bob")
            await _send(gw, conn, "place-bet", roomCode=f"Y{i}", playerId="B", amount=1)
        assert len(gw.channels) == 0
        assert sock.events() == ["error"] * 40
        assert {m["data"]["code"] for m in sock.sent} == {"RoomNotFound"}


# ---------------------------------------------------------------------------
# Heartbeat
# ---------------------------------------------------------------------------


class TestHeartbeat:
    async def test_ping_live_and_close_stale(self):
        gw = _gateway()
        code, clients = await _table(gw, "A", "B")
        clients["B"][0].last_pong = time.time() - gw.manager.HEARTBEAT_TIMEOUT - 1

        await gw.manager.send_pings()

        sock_a, sock_b = clients["A"][1], clients["B"][1]
        assert sock_a.events() == ["ping"]
        assert sock_a.last("ping")["ts"] > 0
        assert sock_a.closed_with is None
        assert sock_b.closed_with == 4000
        assert sock_b.sent == []

    async def test_pong_keeps_socket_alive(self):
        gw = _gateway()
        code, clients = await _table(gw, "A")
        conn, sock = clients["A"]
        conn.last_pong = 0
        assert gw.manager.is_stale(conn)
        await gw.handle(conn, json.dumps({"type": "pong"}))
        assert not gw.manager.is_stale(conn)

        await gw.manager.send_pings()
        assert sock.closed_with is None


# ---------------------------------------------------------------------------
# Lobby
# ---------------------------------------------------------------------------


class TestLobby:
    async def test_create_room(self):
        gw = _gateway()
        conn, sock = await _client(gw)
        await _send(gw, conn, "create-room", hostId="A", name="Alice", minBet=1, maxBet=20)
        data = sock.last("room-created")
        assert data["room"]["hostId"] == "A"
        assert data["room"]["maxBet"] == 20
        assert data["room"]["status"] == "lobby"
        assert conn.room_code == data["roomCode"]
        assert conn.player_id == "A"

    async def test_join_broadcasts_room_update(self):
        gw = _gateway()
        code, clients = await _table(gw, "A")
        conn, sock = await _client(gw)
        await _send(gw, conn, "join-room", roomCode=code.lower(), playerId="B", name="Bob")

        joined = sock.last("room-joined")
        assert joined["spectating"] is False
        assert joined["rejoining"] is False
        assert set(joined["room"]["players"]) == {"A", "B"}
        assert clients["A"][1].events() == ["room-updated"]

    async def test_join_missing_room_errors_sender_only(self):
        gw = _gateway()
        code, clients = await _table(gw, "A")
        conn, sock = await _client(gw)
        await _send(gw, conn, "join-room", roomCode="NOPE00", playerId="B", name="Bob")
        assert sock.last("error")["code"] == "RoomNotFound"
        assert clients["A"][1].sent == []

    async def test_mid_round_join_gets_snapshot(self):
        gw = _gateway()
        code, clients = await _table(gw, "A", "B")
        await _send(gw, clients["A"][0], "start-game", roomCode=code, hostId="A")

        conn, sock = await _client(gw)
        await _send(gw, conn, "join-room", roomCode=code, playerId="C", name="Cat")
        assert sock.events() == ["room-joined", "room-updated", "spectating", "round-updated"]
        assert sock.last("room-joined")["spectating"] is True
        assert sock.last("round-updated")["roundState"]["pot"] == 2

    async def test_change_min_bet(self):
        gw = _gateway()
        code, clients = await _table(gw, "A", "B")
        await _send(gw, clients["A"][0], "change-min-bet", roomCode=code, hostId="A", newMinBet=2.5)
        assert clients["B"][1].last("room-updated")["room"]["minBet"] == 2.5

    async def test_change_min_bet_not_host(self):
        gw = _gateway()
        code, clients = await _table(gw, "A", "B")
        await _send(gw, clients["B"][0], "change-min-bet", roomCode=code, hostId="B", newMinBet=2)
        assert clients["B"][1].last("error")["code"] == "NotHost"
        assert clients["A"][1].sent == []


# ---------------------------------------------------------------------------
# Rounds
# ---------------------------------------------------------------------------


class TestRounds:
    async def test_start_game_broadcast(self):
        gw = _gateway()
        code, clients = await _table(gw, "A", "B", "C")
        await _send(gw, clients["A"][0], "start-game", roomCode=code, hostId="A")
        for _, sock in clients.values():
            data = sock.last("game-started")
            assert data["roundState"]["pot"] == 3
            assert data["room"]["status"] == "playing"

    async def test_start_game_needs_players(self):
        gw = _gateway()
        code, clients = await _table(gw, "A")
        await _send(gw, clients["A"][0], "start-game", roomCode=code, hostId="A")
        assert clients["A"][1].last("error")["code"] == "InsufficientPlayers"

    async def test_bet_out_of_turn_rejected_privately(self):
        gw = _gateway()
        code, clients = await _table(gw, "A", "B")
        await _send(gw, clients["A"][0], "start-game", roomCode=code, hostId="A")
        clients["A"][1].clear()
        clients["B"][1].clear()

        await _send(gw, clients["B"][0], "place-bet", roomCode=code, playerId="B", amount=1)
        assert clients["B"][1].events() == ["error"]
        assert clients["B"][1].last("error")["code"] == "NotYourTurn"
        assert clients["A"][1].sent == []

    async def test_invalid_bet_amount(self):
        gw = _gateway()
        code, clients = await _table(gw, "A", "B")
        await _send(gw, clients["A"][0], "start-game", roomCode=code, hostId="A")
        await _send(gw, clients["A"][0], "place-bet", roomCode=code, playerId="A", amount="lots")
        assert clients["A"][1].last("error")["code"] == "InvalidBetAmount"

    async def test_bet_without_round(self):
        gw = _gateway()
        code, clients = await _table(gw, "A", "B")
        await _send(gw, clients["A"][0], "place-bet", roomCode=code, playerId="A", amount=1)
        assert clients["A"][1].last("error")["code"] == "RoundNotActive"

    async def test_show_and_declare_winner(self):
        gw = _gateway()
        code, clients = await _table(gw, "A", "B", "C")
        host = clients["A"][0]
        await _send(gw, host, "start-game", roomCode=code, hostId="A")
        await _send(gw, host, "place-bet", roomCode=code, playerId="A", amount=1)
        await _send(gw, clients["B"][0], "place-bet", roomCode=code, playerId="B", amount=3)
        await _send(gw, clients["C"][0], "pack", roomCode=code, playerId="C")
        await _send(gw, host, "show", roomCode=code, playerId="A")

        sock_b = clients["B"][1]
        assert sock_b.last("show-called") == {"playerId": "A", "showCost": 3}
        assert sock_b.last("round-updated")["roundState"]["pot"] == 10

        await _send(gw, host, "declare-winner", roomCode=code, hostId="A", winnerId="A")
        ended = sock_b.last("round-ended")
        assert ended["result"]["results"] == {"A": 5, "B": -4, "C": -1}
        assert ended["autoWin"] is False
        assert ended["settlement"] == [
            {"fromPlayerId": "B", "toPlayerId": "A", "amount": 4},
            {"fromPlayerId": "C", "toPlayerId": "A", "amount": 1},
        ]
        assert ended["playerNames"] == {"A": "A", "B": "B", "C": "C"}
        assert ended["players"]["A"]["totalNet"] == 5
        assert gw.store.get_room(code).status == RoomStatus.SETTLEMENT

    async def test_declare_winner_not_host(self):
        gw = _gateway()
        code, clients = await _table(gw, "A", "B")
        await _send(gw, clients["A"][0], "start-game", roomCode=code, hostId="A")
        await _send(gw, clients["B"][0], "declare-winner", roomCode=code, hostId="B", winnerId="B")
        assert clients["B"][1].last("error")["code"] == "NotHost"
        assert "round-ended" not in clients["A"][1].events()

    async def test_pack_auto_win(self):
        gw = _gateway()
        code, clients = await _table(gw, "A", "B")
        await _send(gw, clients["A"][0], "start-game", roomCode=code, hostId="A")
        clients["B"][1].clear()

        await _send(gw, clients["A"][0], "pack", roomCode=code, playerId="A")
        sock_b = clients["B"][1]
        assert sock_b.events() == ["round-updated", "round-ended"]
        ended = sock_b.last("round-ended")
        assert ended["autoWin"] is True
        assert ended["result"]["winnerId"] == "B"
        assert ended["result"]["results"] == {"A": -1, "B": 1}

    async def test_redelivered_declare_winner_counts_once(self):
        gw = _gateway()
        code, clients = await _table(gw, "A", "B")
        host, sock_a = clients["A"]
        sock_b = clients["B"][1]
        await _send(gw, host, "start-game", roomCode=code, hostId="A")
        await _send(gw, host, "declare-winner", roomCode=code, hostId="A", winnerId="A")
        sock_a.clear()
        sock_b.clear()

        await _send(gw, host, "declare-winner", roomCode=code, hostId="A", winnerId="A")
        assert sock_a.events() == ["error"]
        assert sock_a.last("error")["code"] == "RoundNotActive"
        assert sock_b.sent == []

        room = gw.store.get_room(code)
        assert room.players["A"].total_net == 1
        assert room.players["A"].wins == 1
        assert room.players["B"].rounds_played == 1
        assert len(room.round_history) == 1

    async def test_pack_after_auto_win_counts_once(self):
        gw = _gateway()
        code, clients = await _table(gw, "A", "B")
        conn_a, sock_a = clients["A"]
        await _send(gw, conn_a, "start-game", roomCode=code, hostId="A")
        await _send(gw, conn_a, "pack", roomCode=code, playerId="A")
        sock_a.clear()
        clients["B"][1].clear()

        await _send(gw, conn_a, "pack", roomCode=code, playerId="A")
        assert sock_a.events() == ["error"]
        assert sock_a.last("error")["code"] == "RoundNotActive"
        assert clients["B"][1].sent == []

        room = gw.store.get_room(code)
        assert room.players["B"].total_net == 1
        assert room.players["B"].wins == 1
        assert len(room.round_history) == 1

    async def test_spectator_action_rejected_privately(self):
        gw = _gateway()
        code, clients = await _table(gw, "A", "B", "C")
        await _send(gw, clients["A"][0], "start-game", roomCode=code, hostId="A")
        await gw.disconnect(clients["B"][0])
        conn, sock = await _client(gw)
        await _send(gw, conn, "join-room", roomCode=code, playerId="B", name="B")
        await _send(gw, clients["A"][0], "place-bet", roomCode=code, playerId="A", amount=1)
        clients["A"][1].clear()

        await _send(gw, conn, "place-bet", roomCode=code, playerId="B", amount=1)
        assert sock.last("error")["code"] == "PlayerNotActive"
        assert clients["A"][1].sent == []
        assert gw.store.get_room(code).current_round.pot == 4

    async def test_reorder_turns(self):
        gw = _gateway()
        code, clients = await _table(gw, "A", "B", "C")
        await _send(gw, clients["A"][0], "start-game", roomCode=code, hostId="A")
        await _send(
            gw, clients["A"][0], "reorder-turns", roomCode=code, hostId="A", newOrder=["C", "B", "A"]
        )
        assert clients["C"][1].last("round-updated")["roundState"]["currentTurn"] == "C"

        await _send(
            gw, clients["A"][0], "reorder-turns", roomCode=code, hostId="A", newOrder=["C", "B"]
        )
        assert clients["A"][1].last("error")["code"] == "InvalidTurnOrder"

    async def test_next_round_promotes_spectator(self):
        gw = _gateway()
        code, clients = await _table(gw, "A", "B")
        host = clients["A"][0]
        await _send(gw, host, "start-game", roomCode=code, hostId="A")
        conn_c, sock_c = await _client(gw)
        await _send(gw, conn_c, "join-room", roomCode=code, playerId="C", name="Cat")
        await _send(gw, host, "declare-winner", roomCode=code, hostId="A", winnerId="B")

        await _send(gw, host, "next-round", roomCode=code, hostId="A")
        state = sock_c.last("game-started")["roundState"]
        assert state["turnOrder"] == ["A", "B", "C"]


# ---------------------------------------------------------------------------
# Leaving and ending
# ---------------------------------------------------------------------------


class TestLeaveAndEnd:
    async def test_disconnect_of_host_changes_host(self):
        gw = _gateway()
        code, clients = await _table(gw, "A", "B")
        await gw.disconnect(clients["A"][0])
        data = clients["B"][1].last("host-changed")
        assert data["newHostId"] == "B"
        assert data["room"]["players"]["A"]["connectionActive"] is False
        assert clients["A"][1].sent == []

    async def test_leave_session_of_guest(self):
        gw = _gateway()
        code, clients = await _table(gw, "A", "B")
        await _send(gw, clients["B"][0], "leave-session", roomCode=code, playerId="B")
        assert clients["A"][1].last("room-updated")["room"]["players"]["B"]["connectionActive"] is False
        assert not clients["B"][0].bound

        # Socket closing afterwards does not leave twice
        clients["A"][1].clear()
        await gw.disconnect(clients["B"][0])
        assert clients["A"][1].sent == []

    async def test_reconnect_replaces_old_socket(self):
        gw = _gateway()
        code, clients = await _table(gw, "A", "B")
        old_conn, old_sock = clients["B"]
        conn, sock = await _client(gw)
        await _send(gw, conn, "join-room", roomCode=code, playerId="B", name="Bob")

        assert old_sock.closed_with == 4001
        assert sock.last("room-joined")["rejoining"] is True
        # The replaced socket going away must not mark B as left
        await gw.disconnect(old_conn)
        assert gw.store.get_room(code).players["B"].connection_active

    async def test_creating_another_room_leaves_the_old_one(self):
        gw = _gateway()
        code, clients = await _table(gw, "A", "B")
        conn_b, sock_b = clients["B"]

        await _send(gw, conn_b, "create-room", hostId="B", name="Bob", minBet=1)
        new_code = sock_b.last("room-created")["roomCode"]
        await gw.drain()

        assert new_code != code
        assert (conn_b.room_code, conn_b.player_id) == (new_code, "B")
        old_room = gw.store.get_room(code)
        assert not old_room.players["B"].connection_active
        assert old_room.eligible_player_ids() == ["A"]
        assert clients["A"][1].last("room-updated")["room"]["players"]["B"]["connectionActive"] is False

        await _send(gw, clients["A"][0], "start-game", roomCode=code, hostId="A")
        assert clients["A"][1].last("error")["code"] == "InsufficientPlayers"

    async def test_joining_another_room_leaves_the_old_one(self):
        gw = _gateway()
        code_x, clients_x = await _table(gw, "A", "B")
        code_y, clients_y = await _table(gw, "C")
        conn_b = clients_x["B"][0]

        await _send(gw, conn_b, "join-room", roomCode=code_y, playerId="B", name="Bob")
        await gw.drain()

        assert conn_b.room_code == code_y
        assert not gw.store.get_room(code_x).players["B"].connection_active
        assert gw.store.get_room(code_y).players["B"].connection_active

    async def test_end_session(self):
        gw = _gateway()
        code, clients = await _table(gw, "A", "B")
        host = clients["A"][0]
        await _send(gw, host, "start-game", roomCode=code, hostId="A")
        await _send(gw, host, "declare-winner", roomCode=code, hostId="A", winnerId="B")
        await _send(gw, host, "end-session", roomCode=code, hostId="A")

        summary = clients["B"][1].last("session-ended")["sessionSummary"]
        assert summary["totalRounds"] == 1
        assert summary["playerStats"][0]["playerId"] == "B"
        assert summary["settlement"] == [{"fromPlayerId": "A", "toPlayerId": "B", "amount": 1}]

        conn, sock = await _client(gw)
        await _send(gw, conn, "join-room", roomCode=code, playerId="C", name="Cat")
        assert sock.last("error")["code"] == "RoomEnded"


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class TestPersistence:
    @pytest.fixture(autouse=True)
    def _mock_redis(self):
        with patch(f"{PATCH_REDIS}.store_room", new_callable=AsyncMock) as m1, \
             patch(f"{PATCH_REDIS}.store_round_result", new_callable=AsyncMock) as m2:
            self.store_room = m1
            self.store_round_result = m2
            yield

    async def test_room_and_round_written(self):
        gw = _gateway(persist=True)
        code, clients = await _table(gw, "A", "B")
        await _send(gw, clients["A"][0], "start-game", roomCode=code, hostId="A")
        await _send(gw, clients["A"][0], "declare-winner", roomCode=code, hostId="A", winnerId="A")
        await gw.drain()

        self.store_room.assert_awaited_once()
        assert self.store_room.call_args[0][0] == code
        self.store_round_result.assert_awaited_once()
        stored_code, record = self.store_round_result.call_args[0]
        assert stored_code == code
        assert record["roomCode"] == code
        assert record["winnerId"] == "A"
        assert record["results"] == {"A": 1, "B": -1}
        assert record["playerNames"] == {"A": "A", "B": "B"}
        assert record["roundId"]

    async def test_redelivered_result_written_once(self):
        gw = _gateway(persist=True)
        code, clients = await _table(gw, "A", "B")
        host = clients["A"][0]
        await _send(gw, host, "start-game", roomCode=code, hostId="A")
        for _ in range(2):
            await _send(gw, host, "declare-winner", roomCode=code, hostId="A", winnerId="A")
        await gw.drain()
        self.store_round_result.assert_awaited_once()

    async def test_write_failure_keeps_state(self):
        self.store_round_result.side_effect = ConnectionError("redis down")
        gw = _gateway(persist=True)
        code, clients = await _table(gw, "A", "B")
        await _send(gw, clients["A"][0], "start-game", roomCode=code, hostId="A")
        await _send(gw, clients["A"][0], "declare-winner", roomCode=code, hostId="A", winnerId="A")
        await gw.drain()

        room = gw.store.get_room(code)
        assert room.players["A"].total_net == 1
        assert len(room.round_history) == 1
        assert "error" not in clients["A"][1].events()

    async def test_disabled(self):
        gw = _gateway(persist=False)
        await _table(gw, "A", "B")
        await gw.drain()
        self.store_room.assert_not_awaited()
