"""Window writer: drains the event queue into time-bucketed window logs.

Each drain cycle:
- snapshots the queue;
- routes every event by its own timestamp to the reference window (the last
  completed window) or the one after it, dropping anything else as stale;
- seals windows left behind when the reference window advances;
- deletes sealed windows that fell out of the retention horizon.

Durability is best-effort: a batch that fails to write is logged and lost.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from contextlib import suppress
from dataclasses import dataclass, field

from .event_log import EventLogFileHandler
from .event_queue import EventQueue
from .models import Event, now_millis, window_key
from .stats import PipelineStats

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DrainResult:
    """What one drain cycle did."""

    reference_key: int
    drained: int
    written_current: int = 0
    written_next: int = 0
    stale: int = 0
    sealed: tuple[int, ...] = field(default_factory=tuple)
    deleted: tuple[int, ...] = field(default_factory=tuple)


class WindowedEventWriter:
    """Single writer that owns every open window log.

    The synchronous `drain_and_write()` / `cleanup()` methods do the work and
    take an optional `now_ms` so they can be driven deterministically. `start()`
    runs them periodically in a background task, with file I/O off the event
    loop.
    """

    def __init__(
        self,
        *,
        event_queue: EventQueue,
        event_log: EventLogFileHandler,
        sampling_interval_ms: int = 5000,
        drain_interval_ms: int = 1000,
        initial_delay_ms: int = 5000,
        retention_ms: int = 60000,
        cleanup_period_ms: int = 60000,
        stats: PipelineStats | None = None,
        clock: Callable[[], int] = now_millis,
        enabled: bool = True,
    ) -> None:
        if sampling_interval_ms <= 0:
            raise ValueError(f"sampling_interval_ms must be > 0. Got: {sampling_interval_ms}")
        if retention_ms < 2 * sampling_interval_ms:
            raise ValueError(
                f"retention_ms must be >= 2 * sampling_interval_ms. Got: {retention_ms} < 2 * {sampling_interval_ms}"
            )

        self._queue = event_queue
        self._log = event_log
        self._interval = sampling_interval_ms
        self._drain_interval_s = drain_interval_ms / 1000.0
        self._initial_delay_s = initial_delay_ms / 1000.0
        self._retention = retention_ms
        self._cleanup_period = cleanup_period_ms
        self._clock = clock
        self._enabled = enabled
        self.stats = stats if stats is not None else event_queue.stats

        self._last_reference: int | None = None
        self._last_cleanup_horizon: int | None = None
        # Windows that may have an open (.tmp) log written by this writer.
        self._open_keys: set[int] = set()

        self._worker: asyncio.Task[None] | None = None
        self._stopping: asyncio.Event | None = None
        self._closed = False

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        """Turn writing on or off. While off, drained events are discarded."""
        if enabled != self._enabled:
            logger.info("Window writer %s", "enabled" if enabled else "disabled")
        self._enabled = enabled

    @property
    def open_window_keys(self) -> list[int]:
        return sorted(self._open_keys)

    @property
    def last_cleanup_horizon(self) -> int | None:
        return self._last_cleanup_horizon

    def drain_and_write(self, now_ms: int | None = None) -> DrainResult:
        """Run one drain cycle at `now_ms` (defaults to the clock)."""
        now = self._clock() if now_ms is None else now_ms
        events = self._queue.drain()

        # E.g. draining at 12.5s with 5s windows: reference is the 5s window,
        # and events already stamped in the 10s window go to the next log.
        reference = window_key(now, self._interval) - self._interval
        next_key = reference + self._interval

        if not self._enabled:
            if events:
                self.stats.incr("events_discarded", len(events))
                logger.info("Window writer disabled; discarded %d queued events", len(events))
            return DrainResult(reference_key=reference, drained=len(events))

        current: list[Event] = []
        upcoming: list[Event] = []
        stale = 0
        for event in events:
            key = event.window(self._interval)
            if key == reference:
                current.append(event)
            elif key == next_key:
                upcoming.append(event)
            else:
                stale += 1
        self.stats.incr("stale_events", stale)

        if self._last_cleanup_horizon is None:
            self._last_cleanup_horizon = reference

        sealed = self._rotate(reference)
        written_current = self._append(current, reference)
        # The next window is only appended to; it is sealed once it has been
        # the reference window for a full cycle.
        written_next = self._append(upcoming, next_key)
        self._last_reference = reference

        deleted = self.cleanup(now)

        logger.debug(
            "Drained %d events (current=%d next=%d stale=%d) for window %d",
            len(events),
            written_current,
            written_next,
            stale,
            reference,
        )
        return DrainResult(
            reference_key=reference,
            drained=len(events),
            written_current=written_current,
            written_next=written_next,
            stale=stale,
            sealed=tuple(sealed),
            deleted=tuple(deleted),
        )

    def cleanup(self, now_ms: int | None = None) -> list[int]:
        """Delete windows in `[last_horizon, horizon)` once the horizon moved far enough.

        Returns the keys whose logs were deleted. Without a horizon advance this
        is a no-op.
        """
        if self._last_cleanup_horizon is None:
            return []
        now = self._clock() if now_ms is None else now_ms
        horizon = window_key(now - self._retention, self._interval)
        if horizon - self._last_cleanup_horizon <= self._cleanup_period:
            return []

        start = window_key(self._last_cleanup_horizon, self._interval)
        keys = list(range(start, horizon, self._interval))
        deleted, failed = self._log.delete_files(keys)

        self.stats.incr("windows_deleted", len(deleted))
        self.stats.incr("delete_errors", len(failed))
        self._open_keys.difference_update(k for k in keys if k not in failed)

        # A failed key is re-evaluated by the next cleanup.
        self._last_cleanup_horizon = min(failed) if failed else horizon
        logger.info(
            "Cleanup deleted %d window logs in [%d, %d); %d failed", len(deleted), start, horizon, len(failed)
        )
        return deleted

    def _rotate(self, reference: int) -> list[int]:
        """Seal every open window older than `reference` once the reference moved."""
        if self._last_reference is None or reference == self._last_reference:
            return []

        sealed: list[int] = []
        for key in sorted(k for k in self._open_keys if k < reference):
            try:
                renamed = self._log.rename_from_tmp(key)
            except FileExistsError:
                self.stats.incr("seal_errors")
                logger.error("Window %d is already sealed; leaving its open log for cleanup", key)
                self._open_keys.discard(key)
                continue
            except OSError:
                self.stats.incr("seal_errors")
                logger.error("Failed to seal window %d; will retry on next rotation", key, exc_info=True)
                continue

            self._open_keys.discard(key)
            if renamed:
                self.stats.incr("windows_sealed")
                sealed.append(key)
        if sealed:
            logger.info("Sealed windows %s", sealed)
        return sealed

    def _append(self, events: Sequence[Event], key: int) -> int:
        """Append a batch to window `key`'s open log. Returns the number written."""
        if not events:
            return 0
        # Tracked before writing so a partially written log still gets sealed.
        self._open_keys.add(key)
        try:
            self._log.write_tmp_file(events, key)
        except OSError:
            self.stats.incr("write_errors")
            logger.error("Failed to append %d events to window %d; batch dropped", len(events), key, exc_info=True)
            return 0
        self.stats.incr("events_written", len(events))
        return len(events)

    async def start(self) -> None:
        """Remove logs left by a previous run and start the periodic drain task."""
        if self._worker is not None:
            return
        try:
            removed = await asyncio.to_thread(self._log.delete_all_files)
            logger.info("Removed %d lingering window logs from a previous run", removed)
        except OSError:
            logger.error("Unable to clean up lingering window logs from a previous run", exc_info=True)

        self._last_reference = None
        self._last_cleanup_horizon = None
        self._open_keys.clear()
        self._closed = False
        self._stopping = asyncio.Event()
        self._worker = asyncio.create_task(self._run(self._stopping), name="window-writer")

    async def aclose(self) -> None:
        """Stop the periodic task and flush whatever is queued into open logs.

        A drain cycle already running finishes before the final flush starts.
        Safe to call multiple times.
        """
        if self._closed:
            return
        self._closed = True
        if self._worker is not None:
            self._stopping.set()
            await self._worker
            self._worker = None
            await asyncio.to_thread(self.drain_and_write)

    async def _run(self, stopping: asyncio.Event) -> None:
        """Drain at a fixed rate until `stopping` is set."""
        loop = asyncio.get_running_loop()
        if await _wait_for(stopping, self._initial_delay_s):
            return
        next_tick = loop.time()
        while True:
            try:
                await asyncio.to_thread(self.drain_and_write)
            except Exception:  # noqa: BLE001 - one bad cycle must not stop the writer
                logger.exception("Window writer cycle failed")
            next_tick += self._drain_interval_s
            if await _wait_for(stopping, max(0.0, next_tick - loop.time())):
                return


async def _wait_for(event: asyncio.Event, timeout: float) -> bool:
    """Wait up to `timeout` seconds for `event`. Returns whether it is set."""
    if event.is_set():
        return True
    with suppress(asyncio.TimeoutError):
        await asyncio.wait_for(event.wait(), timeout=timeout)
    return event.is_set()
