"""Thread-safe event queue shared by producer threads and the window writer."""

from __future__ import annotations

import logging
import queue
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from .models import Event
from .stats import PipelineStats

logger = logging.getLogger(__name__)


class EventQueue:
    """Bounded multi-producer queue drained by a single writer.

    Producers never block: when the queue is full the event is dropped and
    counted as overflow.
    """

    def __init__(self, *, max_size: int = 100000, stats: PipelineStats | None = None) -> None:
        """Create a queue.

        Args:
            max_size: Capacity; events offered beyond it are dropped.
            stats: Counters for overflow and malformed payloads.
        """
        if max_size <= 0:
            raise ValueError(f"max_size must be > 0. Got: {max_size}")
        self._queue: queue.Queue[Event] = queue.Queue(maxsize=max_size)
        self.stats = stats if stats is not None else PipelineStats()

    def put(self, event: Event | Mapping[str, Any]) -> bool:
        """Offer an event without blocking. Returns False if it was dropped."""
        if not isinstance(event, Event):
            try:
                event = Event.model_validate(event)
            except ValidationError as exc:
                self.stats.incr("malformed_events")
                logger.debug("Dropping malformed event: %s", exc)
                return False

        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.stats.incr("queue_overflow")
            return False
        return True

    def drain(self) -> list[Event]:
        """Remove and return the events queued at the time of the call.

        Events put concurrently with the drain are left for the next cycle.
        """
        drained: list[Event] = []
        for _ in range(self._queue.qsize()):
            try:
                drained.append(self._queue.get_nowait())
            except queue.Empty:
                break
        return drained

    def __len__(self) -> int:
        return self._queue.qsize()
