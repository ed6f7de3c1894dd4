"""Short-lived snapshot cache with request coalescing."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from .sources import SourceId

logger = logging.getLogger(__name__)

DEFAULT_FRESHNESS_S = 0.2

CaptureFn = Callable[[str], Awaitable[bytes]]


@dataclass(frozen=True, slots=True)
class CacheEntry:
    source_id: SourceId
    payload: bytes
    captured_at: float


class FrameCache:
    """Serve recent snapshots and collapse concurrent captures per source.

    At most one capture runs for a source at any time. Callers arriving while
    it is in flight await the same task; a cancelled caller leaves the shared
    capture running for the others.
    """

    def __init__(
        self,
        *,
        freshness_s: float = DEFAULT_FRESHNESS_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if freshness_s < 0:
            raise ValueError("freshness_s must not be negative")
        self.freshness_s = float(freshness_s)
        self._clock = clock
        self._entries: dict[SourceId, CacheEntry] = {}
        self._in_flight: dict[SourceId, asyncio.Task[bytes]] = {}

    async def get_or_create(
        self,
        source_id: SourceId,
        source_url: str,
        capture: CaptureFn,
    ) -> bytes:
        entry = self._entries.get(source_id)
        if entry is not None and self._clock() - entry.captured_at < self.freshness_s:
            return entry.payload

        task = self._in_flight.get(source_id)
        if task is None:
            task = asyncio.create_task(self._capture(source_id, source_url, capture))
            task.add_done_callback(_consume_task_exception)
            self._in_flight[source_id] = task
        return await asyncio.shield(task)

    async def _capture(self, source_id: SourceId, source_url: str, capture: CaptureFn) -> bytes:
        current = asyncio.current_task()
        try:
            payload = await capture(source_url)
        finally:
            owned = self._in_flight.get(source_id) is current
            if owned:
                del self._in_flight[source_id]
        if owned:
            self._entries[source_id] = CacheEntry(source_id, payload, self._clock())
        else:
            logger.debug("Discarding snapshot for %s captured after cache reset", source_id)
        return payload

    def get_entry(self, source_id: SourceId) -> CacheEntry | None:
        return self._entries.get(source_id)

    def in_flight(self, source_id: SourceId) -> bool:
        return source_id in self._in_flight

    def clear(self, source_id: SourceId) -> None:
        self._entries.pop(source_id, None)

    def clear_all(self) -> None:
        self._entries.clear()
        self._in_flight.clear()


def _consume_task_exception(task: asyncio.Task[bytes]) -> None:
    # Failures reach the waiting callers; this keeps asyncio from reporting
    # them again when every caller was cancelled first.
    if not task.cancelled():
        task.exception()


__all__ = ["CacheEntry", "CaptureFn", "DEFAULT_FRESHNESS_S", "FrameCache"]
