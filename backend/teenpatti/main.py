"""FastAPI application: WebSocket gateway plus read-only REST endpoints."""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from teenpatti import redis_client
from teenpatti.errors import RoomNotFound
from teenpatti.gateway import Gateway
from teenpatti.logging_config import configure_logging
from teenpatti.room_manager import Room, RoomStore
from teenpatti.settlement import settle
from teenpatti.ws_manager import ConnectionManager

logger = logging.getLogger(__name__)

store = RoomStore()
manager = ConnectionManager()
gateway = Gateway(store, manager)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger.info("Teen Patti tracker starting")
    heartbeat = asyncio.create_task(app.state.gateway.manager.run_heartbeat())
    yield
    heartbeat.cancel()
    try:
        await heartbeat
    except asyncio.CancelledError:
        pass
    await app.state.gateway.shutdown()
    await redis_client.close()


app = FastAPI(title="Teen Patti Session Tracker", lifespan=lifespan)
app.state.store = store
app.state.gateway = gateway

# ---------- Rate Limiting ----------

_rate_limit_enabled = os.getenv("RATE_LIMIT_ENABLED", "1") != "0"

limiter = Limiter(
    key_func=get_remote_address,
    enabled=_rate_limit_enabled,
)
app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def _rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"detail": "Rate limit exceeded. Please slow down."},
    )


CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_store(request: Request) -> RoomStore:
    return request.app.state.store


def _room_or_404(store: RoomStore, code: str) -> Room:
    try:
        return store.get_room(code)
    except RoomNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


# ---------- REST endpoints ----------


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/api/rooms/{code}")
@limiter.limit("30/minute")
async def get_room(request: Request, code: str, store: RoomStore = Depends(get_store)):
    return _room_or_404(store, code).to_dict()


@app.get("/api/rooms/{code}/history")
@limiter.limit("30/minute")
async def get_history(request: Request, code: str, store: RoomStore = Depends(get_store)):
    room = _room_or_404(store, code)
    return {
        "roomCode": room.code,
        "rounds": [r.to_dict() for r in room.round_history],
    }


@app.get("/api/rooms/{code}/settlement")
@limiter.limit("30/minute")
async def get_settlement(
    request: Request, code: str, store: RoomStore = Depends(get_store)
):
    """Who pays whom if the session were settled right now."""
    room = _room_or_404(store, code)
    totals = store.session_totals(room.code)
    return {
        "roomCode": room.code,
        "totals": totals,
        "playerNames": room.player_names(),
        "settlement": [t.to_wire() for t in settle(totals)],
    }


# ---------- WebSocket ----------


@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    gw: Gateway = ws.app.state.gateway
    conn = await gw.manager.connect(ws)

    try:
        while True:
            raw = await ws.receive_text()
            await gw.handle(conn, raw)
    except WebSocketDisconnect:
        pass
    finally:
        try:
            await gw.disconnect(conn)
        except Exception:
            logger.warning("Error handling disconnect for %s", conn.player_id, exc_info=True)
