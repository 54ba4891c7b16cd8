"""Event ingestion: queue, window logs and the periodic window writer.

Producers push timestamped start/end events onto an `EventQueue`; a single
`WindowedEventWriter` drains it into per-window log files, seals completed
windows and deletes windows past the retention horizon.
"""

from .event_log import EventLogFileHandler, WindowNotSealedError
from .event_queue import EventQueue
from .models import Event, EventKind, now_millis, window_key
from .stats import PipelineStats
from .writer import DrainResult, WindowedEventWriter

__all__ = [
    "DrainResult",
    "Event",
    "EventKind",
    "EventLogFileHandler",
    "EventQueue",
    "PipelineStats",
    "WindowNotSealedError",
    "WindowedEventWriter",
    "now_millis",
    "window_key",
]
