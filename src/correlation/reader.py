"""Loads sealed window logs into correlation stores and answers queries.

A request may start in one window and end in a later one, so the store for
window W is built by first rolling over the in-flight requests of W's
predecessor. The reader walks back through earlier windows (only as far as the
expiry horizon can reach) and replays the chain oldest first.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict

import duckdb

from ingest.event_log import EventLogFileHandler, WindowNotSealedError
from ingest.models import Event
from ingest.stats import PipelineStats

from .models import LatencyRecord, OperationAggregate, RequestRecord
from .store import DEFAULT_EXPIRY_MS, WindowStore

logger = logging.getLogger(__name__)


class RequestMetricsReader:
    """Query surface over sealed windows for the downstream metrics consumer."""

    def __init__(
        self,
        *,
        event_log: EventLogFileHandler,
        sampling_interval_ms: int = 5000,
        expiry_ms: int = DEFAULT_EXPIRY_MS,
        stats: PipelineStats | None = None,
        max_cached_windows: int = 4,
        conn: duckdb.DuckDBPyConnection | None = None,
    ) -> None:
        """Create a reader.

        Args:
            event_log: Source of sealed window logs.
            sampling_interval_ms: Window size; must match the writer's.
            expiry_ms: How far back an unfinished request is still carried forward.
            stats: Counters for malformed log lines.
            max_cached_windows: Stores kept in memory (least recently used are removed).
            conn: Optional shared DuckDB database for the stores' tables.
        """
        if sampling_interval_ms <= 0:
            raise ValueError(f"sampling_interval_ms must be > 0. Got: {sampling_interval_ms}")
        if max_cached_windows < 2:
            raise ValueError(f"max_cached_windows must be >= 2. Got: {max_cached_windows}")
        self._log = event_log
        self._interval = sampling_interval_ms
        self._expiry = expiry_ms
        self._max_cached = max_cached_windows
        self._conn = conn
        self.stats = stats if stats is not None else PipelineStats()

        self._lock = threading.Lock()
        self._stores: OrderedDict[int, WindowStore] = OrderedDict()

    def aggregate_rows(self, key: int) -> list[OperationAggregate]:
        """Aggregated latency rows for sealed window `key`."""
        return self.load_window(key).aggregate_by_operation()

    def in_flight_rows(self, key: int) -> list[RequestRecord]:
        """Requests still in flight at the end of sealed window `key`."""
        return self.load_window(key).in_flight_view()

    def latency_rows(self, key: int) -> list[LatencyRecord]:
        return self.load_window(key).latency_view()

    def latest_sealed_window(self) -> int | None:
        keys = self._log.sealed_window_keys()
        return keys[-1] if keys else None

    def load_window(self, key: int) -> WindowStore:
        """Return the store for sealed window `key`, building its rollover chain if needed.

        Raises `WindowNotSealedError` when the window has no sealed log and
        `ValueError` when `key` is not aligned to the sampling interval.
        """
        if key % self._interval != 0:
            raise ValueError(f"window key {key} is not aligned to {self._interval} ms")

        with self._lock:
            cached = self._stores.get(key)
            if cached is not None:
                self._stores.move_to_end(key)
                return cached

            if not self._log.is_sealed(key):
                raise WindowNotSealedError(key)

            chain = self._predecessors(key)
            previous = self._stores.get(chain[0] - self._interval)
            for k in chain:
                store = self._build(k, previous)
                self._stores[k] = store
                self._stores.move_to_end(k)
                self._evict()
                previous = store
            return self._stores[key]

    def _predecessors(self, key: int) -> list[int]:
        """Windows to build, oldest first, ending with `key`.

        Stops at a cached window, at the oldest sealed log on disk, or once a
        window is too old for any of its requests to survive the rollover into
        `key`. Windows without a log inside that range are built empty so the
        carry-forward chain is not broken.
        """
        sealed = self._log.sealed_window_keys()
        oldest = sealed[0] if sealed else key
        # Rows reach `key` through rollover from `key - interval`, which keeps
        # starts at or after that window's own expiry horizon.
        horizon = key - self._interval - self._expiry

        chain = [key]
        prev = key - self._interval
        while prev >= oldest and prev + self._interval > horizon and prev not in self._stores:
            chain.append(prev)
            prev -= self._interval
        chain.reverse()
        return chain

    def _build(self, key: int, previous: WindowStore | None) -> WindowStore:
        store = WindowStore(window_start=key, expiry_ms=self._expiry, conn=self._conn)
        carried = store.rollover(previous) if previous is not None else 0

        loaded = 0
        malformed = 0
        if self._log.is_sealed(key):
            for event in self._log.read_window(key):
                if event is None:
                    malformed += 1
                    continue
                try:
                    self._apply(store, event)
                except ValueError as exc:
                    malformed += 1
                    logger.debug("Dropping event %s in window %d: %s", event.correlation_id, key, exc)
                    continue
                loaded += 1
        self.stats.incr("malformed_events", malformed)
        logger.debug("Built window %d: %d events, %d carried, %d malformed", key, loaded, carried, malformed)
        return store

    @staticmethod
    def _apply(store: WindowStore, event: Event) -> None:
        if event.kind == "start":
            store.put_start(event.correlation_id, event.emitted_at_millis, event.dimensions)
        else:
            store.put_end(event.correlation_id, event.emitted_at_millis, event.dimensions)

    def _evict(self) -> None:
        while len(self._stores) > self._max_cached:
            _, store = self._stores.popitem(last=False)
            store.remove()

    def close(self) -> None:
        """Remove every cached store."""
        with self._lock:
            while self._stores:
                _, store = self._stores.popitem(last=False)
                store.remove()
