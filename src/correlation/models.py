"""Correlated request rows returned by a window store.

Rows are always derived at query time from the two partial writes (start and
end) of a request; none of these fields is stored precomputed.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class Dimension(str, Enum):
    """Dimensions a request record is correlated and aggregated by."""

    OPERATION = "operation"
    INDICES = "indices"
    RESPONSE_CODE = "response_code"
    EXCEPTION = "exception"
    ITEM_COUNT = "item_count"

    def __str__(self) -> str:
        return self.value


STRING_DIMENSIONS = frozenset({Dimension.OPERATION, Dimension.INDICES, Dimension.EXCEPTION})
INTEGER_DIMENSIONS = frozenset({Dimension.RESPONSE_CODE, Dimension.ITEM_COUNT})

# Response code recorded for requests that failed without an HTTP status.
FAILED_WITHOUT_STATUS = -1


class _Row(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class RequestRecord(_Row):
    """One request: the union of its start and end halves."""

    correlation_id: str
    operation: str | None = None
    indices: str | None = None
    response_code: int | None = None
    exception: str | None = None
    item_count: int | None = None
    start_ts: int | None = None
    end_ts: int | None = None


class LatencyRecord(RequestRecord):
    """A request with both halves present."""

    start_ts: int
    end_ts: int
    latency: int


class OperationAggregate(_Row):
    """Latency rows collapsed by (operation, response_code, indices, exception)."""

    operation: str | None = None
    response_code: int | None = None
    indices: str | None = None
    exception: str | None = None

    count: int

    sum_latency: int
    avg_latency: float
    min_latency: int
    max_latency: int

    # Null when no request in the group reported an item count.
    sum_item_count: int | None = None
    avg_item_count: float | None = None
    min_item_count: int | None = None
    max_item_count: int | None = None
