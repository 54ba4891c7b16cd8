from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from ingest import EventLogFileHandler, EventQueue, PipelineStats


@pytest.fixture(autouse=True)
def _no_threads_in_unit_tests(monkeypatch: pytest.MonkeyPatch):
    """Run `asyncio.to_thread` inline for unit tests.

    The writer moves file I/O off the event loop with `asyncio.to_thread`. In
    unit tests, threadpool workers can keep the process alive longer than
    expected and make drain timing nondeterministic.
    """

    async def _to_thread(func, /, *args, **kwargs):  # noqa: ANN001, D401
        return func(*args, **kwargs)

    monkeypatch.setattr("ingest.writer.asyncio.to_thread", _to_thread)
    yield


@pytest.fixture
def stats() -> PipelineStats:
    return PipelineStats()


@pytest.fixture
def event_queue(stats: PipelineStats) -> EventQueue:
    return EventQueue(max_size=1000, stats=stats)


@pytest.fixture
def event_log(tmp_path: Path) -> Iterator[EventLogFileHandler]:
    yield EventLogFileHandler(tmp_path / "windows")
