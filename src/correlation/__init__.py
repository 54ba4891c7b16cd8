"""Request correlation over sealed windows.

Start and end events of a request are merged per correlation id inside a
per-window `WindowStore`; `RequestMetricsReader` builds those stores from
sealed window logs, carrying unfinished requests from one window to the next.
"""

from .models import Dimension, LatencyRecord, OperationAggregate, RequestRecord
from .reader import RequestMetricsReader
from .store import WindowStore

__all__ = [
    "Dimension",
    "LatencyRecord",
    "OperationAggregate",
    "RequestMetricsReader",
    "RequestRecord",
    "WindowStore",
]
