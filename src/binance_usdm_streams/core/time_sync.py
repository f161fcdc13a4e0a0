from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta

logger = logging.getLogger(__name__)

INVALID_TIMESTAMP_CODE = -1021

ServerTimeFetcher = Callable[[], Awaitable[int]]


def local_time_ms() -> float:
    return time.time() * 1000


@dataclass(frozen=True, slots=True)
class TimeSyncSnapshot:
    offset_ms: float
    generation: int


class TimeSyncState:
    """Clock offset between this host and the exchange, shared by every signed request.

    ``generation`` increments on every successful sync. A request records the
    generation it was signed under; a stale-timestamp rejection invalidates
    the state only if no other request from the same generation already did.
    """

    def __init__(
        self,
        *,
        auto_timestamp: bool = True,
        recalculation_interval: timedelta = timedelta(hours=1),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._auto_timestamp = auto_timestamp
        self._recalculation_interval_seconds = recalculation_interval.total_seconds()
        self._clock = clock
        self._offset_ms = 0.0
        self._last_sync: float | None = None
        self._generation = 0
        self._invalidated_generation: int | None = None
        self._inflight: asyncio.Task[float] | None = None
        self._lock = threading.RLock()

    @property
    def auto_timestamp(self) -> bool:
        return self._auto_timestamp

    @property
    def offset_ms(self) -> float:
        with self._lock:
            return self._offset_ms if self._auto_timestamp else 0.0

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    @property
    def last_sync(self) -> float | None:
        with self._lock:
            return self._last_sync

    def snapshot(self) -> TimeSyncSnapshot:
        with self._lock:
            offset = self._offset_ms if self._auto_timestamp else 0.0
            return TimeSyncSnapshot(offset_ms=offset, generation=self._generation)

    def needs_sync(self) -> bool:
        if not self._auto_timestamp:
            return False
        with self._lock:
            if self._last_sync is None:
                return True
            return self._clock() - self._last_sync >= self._recalculation_interval_seconds

    def invalidate(self, generation: int | None = None) -> bool:
        """Force a re-sync before the next signed call.

        Returns ``False`` when the rejection belongs to a generation that was
        already invalidated or superseded by a newer sync.
        """
        with self._lock:
            target = self._generation if generation is None else generation
            if target != self._generation or self._invalidated_generation == target:
                return False
            self._invalidated_generation = target
            self._last_sync = None
        logger.debug("Time sync invalidated", extra={"generation": target})
        return True

    async def ensure_synced(self, fetch_server_time: ServerTimeFetcher) -> TimeSyncSnapshot:
        if not self.needs_sync():
            return self.snapshot()

        with self._lock:
            task = self._inflight
            if task is None or task.done():
                task = asyncio.ensure_future(self._recalculate(fetch_server_time))
                task.add_done_callback(self._clear_inflight)
                self._inflight = task

        await asyncio.shield(task)
        return self.snapshot()

    def _clear_inflight(self, task: asyncio.Task[float]) -> None:
        with self._lock:
            if self._inflight is task:
                self._inflight = None
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Server time sync failed", extra={"error": repr(task.exception())})

    async def _recalculate(self, fetch_server_time: ServerTimeFetcher) -> float:
        before = local_time_ms()
        server_time_ms = await fetch_server_time()
        after = local_time_ms()

        offset = server_time_ms - (before + (after - before) / 2)
        with self._lock:
            self._offset_ms = offset
            self._last_sync = self._clock()
            self._generation += 1
            generation = self._generation
        logger.debug(
            "Time sync completed",
            extra={"offset_ms": round(offset, 3), "round_trip_ms": round(after - before, 3), "generation": generation},
        )
        return offset
