"""Redis client wrapper for write-only session persistence.

Room metadata is written once at creation and every resolved round once
per round id. Nothing here is read back during a live session.
"""

from __future__ import annotations

import json
import os
from typing import Any, Optional

import redis.asyncio as redis

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

_pool: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    global _pool
    if _pool is None:
        _pool = redis.from_url(REDIS_URL, decode_responses=True)
    return _pool


def _room_key(code: str) -> str:
    return f"room:{code}"


def _room_rounds_key(code: str) -> str:
    return f"room:{code}:rounds"


def _round_key(round_id: str) -> str:
    return f"round:{round_id}"


async def store_room(code: str, data: dict[str, Any]) -> None:
    r = await get_redis()
    await r.set(_room_key(code), json.dumps(data))


async def store_round_result(code: str, data: dict[str, Any]) -> bool:
    """Append a round result to the room's history.

    Keyed by round id; a repeated write for the same round is ignored.
    Returns True if the round was newly stored.
    """
    r = await get_redis()
    round_id = data["roundId"]
    created = await r.set(_round_key(round_id), json.dumps(data), nx=True)
    if not created:
        return False
    await r.rpush(_room_rounds_key(code), round_id)
    return True


async def close() -> None:
    global _pool
    if _pool is not None:
        await _pool.aclose()
        _pool = None
