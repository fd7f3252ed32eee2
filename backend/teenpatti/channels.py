"""Per-room action channels.

Each room gets its own queue drained by a single worker task, so actions
for one room are applied strictly in arrival order and one at a time,
while different rooms proceed independently.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Job = Callable[[], Awaitable[Any]]


class RoomChannel:
    """Single-consumer job queue for one room."""

    def __init__(self, code: str) -> None:
        self.code = code
        self._queue: asyncio.Queue[tuple[Job, asyncio.Future]] = asyncio.Queue()
        self._task: asyncio.Task | None = None

    def _ensure_worker(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def submit(self, job: Callable[[], Awaitable[T]]) -> T:
        """Queue ``job`` and wait for its result (or exception).

        Once queued the job always runs to completion, even if the caller
        stops waiting.
        """
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((job, future))
        self._ensure_worker()
        return await future

    async def _run(self) -> None:
        while True:
            job, future = await self._queue.get()
            try:
                result = await job()
            except Exception as exc:
                if not future.cancelled():
                    future.set_exception(exc)
            else:
                if not future.cancelled():
                    future.set_result(result)
            finally:
                self._queue.task_done()

    async def close(self) -> None:
        """Finish queued jobs, then stop the worker."""
        if self._task is None:
            return
        await self._queue.join()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


class ChannelRegistry:
    """Creates channels lazily, one per room code."""

    def __init__(self) -> None:
        self._channels: dict[str, RoomChannel] = {}

    def __len__(self) -> int:
        return len(self._channels)

    def get(self, code: str) -> RoomChannel:
        channel = self._channels.get(code)
        if channel is None:
            channel = RoomChannel(code)
            self._channels[code] = channel
        return channel

    async def submit(self, code: str, job: Callable[[], Awaitable[T]]) -> T:
        return await self.get(code).submit(job)

    async def close_all(self) -> None:
        for channel in list(self._channels.values()):
            await channel.close()
        self._channels.clear()
        logger.info("Room channels closed")
