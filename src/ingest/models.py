"""Event model and window-key arithmetic.

Events are designed to be:
- Produced by independent instrumentation threads and consumed exactly once by
  the window writer.
- Routed by their own emission timestamp, never by the time they are drained.
- Small and flat (one JSON object per line in a window log).
"""

from __future__ import annotations

import time
from typing import Literal, TypeAlias

from pydantic import BaseModel, ConfigDict, Field, StrictFloat, StrictInt, StrictStr

EventKind = Literal["start", "end"]

# Strict so a boolean is rejected rather than read as 0 or 1.
DimensionValue: TypeAlias = StrictStr | StrictInt | StrictFloat


def now_millis() -> int:
    """Return the current wall-clock time in epoch milliseconds."""
    return time.time_ns() // 1_000_000


def window_key(ts_millis: int, interval_millis: int) -> int:
    """Return the start of the window that `ts_millis` falls into.

    `floor(ts / interval) * interval`; a timestamp exactly on a boundary belongs
    to the window that starts there.
    """
    if interval_millis <= 0:
        raise ValueError(f"interval_millis must be > 0. Got: {interval_millis}")
    return (ts_millis // interval_millis) * interval_millis


class Event(BaseModel):
    """One half (start or end) of a request, as emitted by instrumentation."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    emitted_at_millis: int = Field(ge=0)
    correlation_id: StrictStr = Field(min_length=1)
    kind: EventKind

    # Ordered key -> value pairs (e.g. operation/indices/item_count on start,
    # response_code/exception on end).
    dimensions: dict[str, DimensionValue] = Field(default_factory=dict)

    def window(self, interval_millis: int) -> int:
        """Window key this event belongs to."""
        return window_key(self.emitted_at_millis, interval_millis)
