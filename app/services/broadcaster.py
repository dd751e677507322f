"""Push periodic task snapshots to live-update observers as server-sent events."""
from __future__ import annotations

import asyncio
import uuid
from typing import Any, AsyncIterator, Callable, Dict, Set

import structlog
from pydantic import TypeAdapter

from app.config import StreamConfig

logger = structlog.get_logger(__name__)

TASK_UPDATE_EVENT = "task_update"
KEEPALIVE_FRAME = ": keepalive\n\n"
SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
    "Access-Control-Allow-Origin": "*",
}

SnapshotProvider = Callable[[], Dict[str, Any]]

_snapshot_adapter = TypeAdapter(Dict[str, Any])


def sse_frame(event: str, data: Dict[str, Any]) -> str:
    payload = _snapshot_adapter.dump_json(data).decode("utf-8")
    return f"event: {event}\ndata: {payload}\n\n"


class LiveUpdateBroadcaster:
    """Hand each observer its own stream of snapshot and keepalive frames.

    There is no per-observer buffer: frames are produced when the observer
    asks for the next one, so a slow reader simply sees fewer snapshots.
    Closing the stream unregisters the observer.
    """

    def __init__(self, snapshot: SnapshotProvider, settings: StreamConfig) -> None:
        self._snapshot = snapshot
        self._settings = settings
        self._observers: Set[str] = set()

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    async def subscribe(self) -> AsyncIterator[str]:
        observer_id = uuid.uuid4().hex[:8]
        self._observers.add(observer_id)
        logger.info("observer_connected", observer=observer_id, observers=len(self._observers))
        loop = asyncio.get_running_loop()
        try:
            yield self._frame()
            next_update = loop.time() + self._settings.poll_interval
            next_keepalive = loop.time() + self._settings.keepalive_interval
            while True:
                await asyncio.sleep(max(min(next_update, next_keepalive) - loop.time(), 0))
                now = loop.time()
                if now >= next_keepalive:
                    next_keepalive = now + self._settings.keepalive_interval
                    yield KEEPALIVE_FRAME
                if now >= next_update:
                    next_update = now + self._settings.poll_interval
                    yield self._frame()
        finally:
            self._observers.discard(observer_id)
            logger.info("observer_disconnected", observer=observer_id, observers=len(self._observers))

    def _frame(self) -> str:
        return sse_frame(TASK_UPDATE_EVENT, self._snapshot())
