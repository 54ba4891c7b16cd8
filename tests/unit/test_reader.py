from __future__ import annotations

import pytest

from correlation import RequestMetricsReader
from ingest import Event, EventLogFileHandler, EventQueue, PipelineStats, WindowedEventWriter, WindowNotSealedError

INTERVAL = 5000


def _event(rid: str, ts: int, kind: str, **dimensions) -> Event:
    return Event(emitted_at_millis=ts, correlation_id=rid, kind=kind, dimensions=dimensions)  # type: ignore[arg-type]


def _seal(event_log: EventLogFileHandler, key: int, *events: Event) -> None:
    event_log.write_tmp_file(events, key)
    event_log.rename_from_tmp(key)


def test_written_windows_are_correlated_across_rollover(
    event_queue: EventQueue, event_log: EventLogFileHandler, stats: PipelineStats
) -> None:
    writer = WindowedEventWriter(
        event_queue=event_queue,
        event_log=event_log,
        sampling_interval_ms=INTERVAL,
        retention_ms=60000,
        stats=stats,
    )
    reader = RequestMetricsReader(event_log=event_log, sampling_interval_ms=INTERVAL, stats=stats)

    event_queue.put(_event("R1", 6000, "start", operation="search", indices="logs"))
    event_queue.put(_event("R2", 8000, "start", operation="bulk", indices="logs"))
    event_queue.put(_event("R1", 9500, "end", response_code=200))
    writer.drain_and_write(now_ms=12_000)

    event_queue.put(_event("R2", 10000, "end", response_code=201, item_count=40))
    writer.drain_and_write(now_ms=16_000)
    writer.drain_and_write(now_ms=21_000)

    assert reader.latest_sealed_window() == 10000
    try:
        [r1] = reader.latency_rows(5000)
        assert (r1.correlation_id, r1.latency, r1.response_code) == ("R1", 3500, 200)
        assert [r.correlation_id for r in reader.in_flight_rows(5000)] == ["R2"]

        [r2] = reader.latency_rows(10000)
        assert (r2.correlation_id, r2.operation, r2.latency, r2.item_count) == ("R2", "bulk", 2000, 40)
        assert reader.in_flight_rows(10000) == []

        [agg] = reader.aggregate_rows(10000)
        assert (agg.operation, agg.response_code, agg.indices, agg.count) == ("bulk", 201, "logs", 1)
        assert stats.value("malformed_events") == 0
    finally:
        reader.close()


def test_open_or_missing_window_is_not_readable(event_log: EventLogFileHandler) -> None:
    reader = RequestMetricsReader(event_log=event_log, sampling_interval_ms=INTERVAL)
    event_log.write_tmp_file([_event("R1", 5100, "start")], 5000)

    assert reader.latest_sealed_window() is None
    with pytest.raises(WindowNotSealedError) as exc_info:
        reader.load_window(5000)
    assert exc_info.value.key == 5000
    with pytest.raises(WindowNotSealedError):
        reader.load_window(10000)


def test_misaligned_window_key_is_rejected(event_log: EventLogFileHandler) -> None:
    reader = RequestMetricsReader(event_log=event_log, sampling_interval_ms=INTERVAL)
    with pytest.raises(ValueError):
        reader.load_window(12_345)


def test_malformed_log_entries_are_skipped_and_counted(event_log: EventLogFileHandler, stats: PipelineStats) -> None:
    event_log.write_tmp_file(
        [_event("R1", 5100, "start", operation="search"), _event("R2", 5200, "end", response_code="OK")], 5000
    )
    with event_log.tmp_path(5000).open("a", encoding="utf-8") as fh:
        fh.write("not an event\n")
    event_log.rename_from_tmp(5000)

    reader = RequestMetricsReader(event_log=event_log, sampling_interval_ms=INTERVAL, stats=stats)
    try:
        assert [r.correlation_id for r in reader.in_flight_rows(5000)] == ["R1"]
        assert len(reader.load_window(5000)) == 1
        assert stats.value("malformed_events") == 2
    finally:
        reader.close()


def test_empty_windows_keep_the_rollover_chain(event_log: EventLogFileHandler) -> None:
    _seal(event_log, 0, _event("R5", 1000, "start", operation="search"))
    # Nothing was written for window 5000.
    _seal(event_log, 10000, _event("R5", 12000, "end", response_code=200))

    reader = RequestMetricsReader(event_log=event_log, sampling_interval_ms=INTERVAL, max_cached_windows=2)
    try:
        [row] = reader.latency_rows(10000)
        assert (row.correlation_id, row.latency) == ("R5", 11000)
        assert [r.correlation_id for r in reader.in_flight_rows(5000)] == ["R5"]
    finally:
        reader.close()


def test_cold_and_warm_readers_agree(event_log: EventLogFileHandler) -> None:
    _seal(event_log, 0, _event("R", 1000, "start", operation="search"))
    _seal(event_log, 5000, _event("other", 6000, "start"))
    _seal(event_log, 10000, _event("R", 10500, "end", response_code=200))

    cold = RequestMetricsReader(event_log=event_log, sampling_interval_ms=INTERVAL, expiry_ms=INTERVAL)
    warm = RequestMetricsReader(event_log=event_log, sampling_interval_ms=INTERVAL, expiry_ms=INTERVAL)
    try:
        warm.load_window(0)
        warm.load_window(5000)

        # R started at 1000, which window 5000 still reports as in flight.
        assert [r.correlation_id for r in cold.latency_rows(10000)] == ["R"]
        assert [r.correlation_id for r in warm.latency_rows(10000)] == ["R"]
        assert cold.latency_rows(10000)[0].latency == 9500
    finally:
        cold.close()
        warm.close()


def test_chain_stops_at_expiry_horizon(event_log: EventLogFileHandler, stats: PipelineStats) -> None:
    _seal(event_log, 0, _event("R6", 1000, "start"))
    with event_log.sealed_path(0).open("a", encoding="utf-8") as fh:
        fh.write("not an event\n")
    _seal(event_log, 10000, _event("R7", 10500, "start"))
    _seal(event_log, 15000, _event("R8", 15500, "start"))

    reader = RequestMetricsReader(
        event_log=event_log, sampling_interval_ms=INTERVAL, expiry_ms=INTERVAL, stats=stats
    )
    try:
        assert [r.correlation_id for r in reader.in_flight_rows(15000)] == ["R7", "R8"]
        # Nothing in window 0 can reach 15000, so its log is never read.
        assert stats.value("malformed_events") == 0
    finally:
        reader.close()


def test_cache_must_hold_a_window_and_its_predecessor(event_log: EventLogFileHandler) -> None:
    with pytest.raises(ValueError):
        RequestMetricsReader(event_log=event_log, max_cached_windows=1)
