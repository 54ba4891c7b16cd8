"""Pipeline counters.

Every counter lives on a registry owned by one pipeline instance, so two
pipelines in one process (or two tests) never share state.
"""

from __future__ import annotations

from typing import Any

from prometheus_client import CollectorRegistry, Counter

_COUNTERS = {
    "events_written": "Events appended to a window log",
    "stale_events": "Drained events whose window was neither current nor next",
    "malformed_events": "Events dropped because they could not be validated or parsed",
    "queue_overflow": "Events dropped because the event queue was full",
    "write_errors": "Failed appends to an open window log",
    "seal_errors": "Failed attempts to seal an open window log",
    "delete_errors": "Failed deletions of expired window logs",
    "windows_sealed": "Window logs sealed by rotation",
    "windows_deleted": "Window logs deleted by cleanup",
    "events_discarded": "Events drained while the writer was disabled",
}


class PipelineStats:
    """Thread-safe counters shared by the queue, the writer and the reader."""

    def __init__(self, *, registry: CollectorRegistry | None = None, namespace: str = "window_pipeline") -> None:
        self.registry = registry if registry is not None else CollectorRegistry(auto_describe=True)
        self._namespace = namespace
        self._counters: dict[str, Counter] = {
            name: Counter(name, doc, namespace=namespace, registry=self.registry) for name, doc in _COUNTERS.items()
        }

    def incr(self, name: str, amount: int = 1) -> None:
        """Increment the named counter. Unknown names raise `KeyError`."""
        if amount:
            self._counters[name].inc(amount)

    def value(self, name: str) -> int:
        """Current value of the named counter."""
        if name not in self._counters:
            raise KeyError(name)
        sample = self.registry.get_sample_value(f"{self._namespace}_{name}_total")
        return int(sample or 0)

    def snapshot(self) -> dict[str, Any]:
        """Return a point-in-time view of every counter."""
        return {name: self.value(name) for name in self._counters}
