"""Writer shutdown with real worker threads.

Unit tests run `asyncio.to_thread` inline; these exercise the threadpool the
writer uses in production.
"""

from __future__ import annotations

import asyncio
import threading
import time
from pathlib import Path

import pytest

from ingest import Event, EventLogFileHandler, EventQueue, PipelineStats, WindowedEventWriter


def _start(rid: str, ts: int) -> Event:
    return Event(emitted_at_millis=ts, correlation_id=rid, kind="start")


@pytest.mark.asyncio
async def test_aclose_waits_for_running_cycle_before_final_flush(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    event_log = EventLogFileHandler(tmp_path / "windows")
    event_queue = EventQueue(max_size=100, stats=PipelineStats())
    writer = WindowedEventWriter(
        event_queue=event_queue,
        event_log=event_log,
        sampling_interval_ms=5000,
        drain_interval_ms=10,
        initial_delay_ms=0,
        retention_ms=20000,
        clock=lambda: 12_500,
    )

    real_write = event_log.write_tmp_file
    lock = threading.Lock()
    active = 0
    max_active = 0
    writes: list[int] = []

    def slow_write(events, key):  # noqa: ANN001
        nonlocal active, max_active
        with lock:
            active += 1
            max_active = max(max_active, active)
        try:
            time.sleep(0.3)
            real_write(events, key)
            writes.append(len(events))
        finally:
            with lock:
                active -= 1

    monkeypatch.setattr(event_log, "write_tmp_file", slow_write)

    await writer.start()
    event_queue.put(_start("a", 6000))
    await asyncio.sleep(0.05)
    # Queued while the first append is still sleeping in its thread.
    event_queue.put(_start("b", 7000))
    await writer.aclose()
    finished = len(writes)
    await asyncio.sleep(0.4)

    assert max_active == 1
    assert writes == [1, 1]
    # Nothing is still writing once aclose() has returned.
    assert len(writes) == finished
    with event_log.tmp_path(5000).open(encoding="utf-8") as fh:
        assert len(fh.readlines()) == 2
