"""Demo entrypoint wiring the window pipeline together.

This module contains a small, end-to-end harness that:

- Loads configuration from environment.
- Builds one queue, one set of counters, the window writer and the reader.
- Starts a few producer threads that emit synthetic request start/end events.
- Periodically logs the aggregate rows of the newest sealed window.

It is **not** production orchestration; real deployments feed the queue from
their own request instrumentation.
"""

from __future__ import annotations

import asyncio
import logging
import os
import random
import threading
import uuid
from dataclasses import dataclass

from config import PipelineConfig, load_config
from correlation import RequestMetricsReader
from correlation.models import FAILED_WITHOUT_STATUS
from ingest import (
    Event,
    EventLogFileHandler,
    EventQueue,
    PipelineStats,
    WindowedEventWriter,
    WindowNotSealedError,
    now_millis,
)

logger = logging.getLogger("main")


@dataclass
class Pipeline:
    """Everything the composition root owns."""

    config: PipelineConfig
    stats: PipelineStats
    queue: EventQueue
    event_log: EventLogFileHandler
    writer: WindowedEventWriter
    reader: RequestMetricsReader


def build_pipeline(cfg: PipelineConfig) -> Pipeline:
    """Construct the queue, writer and reader sharing one set of counters."""
    stats = PipelineStats()
    queue = EventQueue(max_size=cfg.queue_max_size, stats=stats)
    event_log = EventLogFileHandler(cfg.log_dir)
    writer = WindowedEventWriter(
        event_queue=queue,
        event_log=event_log,
        sampling_interval_ms=cfg.sampling_interval_ms,
        drain_interval_ms=cfg.drain_interval_ms,
        initial_delay_ms=cfg.initial_delay_ms,
        retention_ms=cfg.retention_ms,
        cleanup_period_ms=cfg.cleanup_period_ms,
        stats=stats,
        enabled=cfg.writer_enabled,
    )
    reader = RequestMetricsReader(
        event_log=event_log,
        sampling_interval_ms=cfg.sampling_interval_ms,
        expiry_ms=cfg.expiry_ms,
        stats=stats,
    )
    return Pipeline(config=cfg, stats=stats, queue=queue, event_log=event_log, writer=writer, reader=reader)


class SyntheticRequestProducer(threading.Thread):
    """Emits start/end event pairs for fake search and bulk requests."""

    _OPERATIONS = ("search", "bulk")
    _INDICES = ("logs", "orders", "metrics")

    def __init__(self, queue: EventQueue, stop: threading.Event, *, name: str, rate_per_sec: float = 20.0) -> None:
        super().__init__(name=name, daemon=True)
        self._queue = queue
        self._stop_event = stop
        self._interval = 1.0 / max(rate_per_sec, 0.001)

    def run(self) -> None:
        while not self._stop_event.is_set():
            rid = uuid.uuid4().hex
            self._queue.put(
                Event(
                    emitted_at_millis=now_millis(),
                    correlation_id=rid,
                    kind="start",
                    dimensions={
                        "operation": random.choice(self._OPERATIONS),
                        "indices": random.choice(self._INDICES),
                        "item_count": random.randint(1, 500),
                    },
                )
            )
            if self._stop_event.wait(random.uniform(0.0, self._interval)):
                return

            end_dims: dict[str, str | int] = {"response_code": random.choice((200, 200, 200, 404, 429))}
            if random.random() < 0.05:
                end_dims = {"response_code": FAILED_WITHOUT_STATUS, "exception": "ConnectionError"}
            self._queue.put(Event(emitted_at_millis=now_millis(), correlation_id=rid, kind="end", dimensions=end_dims))
            if self._stop_event.wait(self._interval):
                return


async def _report_latest_window(pipeline: Pipeline, interval_s: float) -> None:
    """Log the aggregates of each newly sealed window."""
    last_reported: int | None = None
    while True:
        await asyncio.sleep(interval_s)
        key = pipeline.reader.latest_sealed_window()
        if key is None or key == last_reported:
            continue
        try:
            rows = await asyncio.to_thread(pipeline.reader.aggregate_rows, key)
            in_flight = await asyncio.to_thread(pipeline.reader.in_flight_rows, key)
        except WindowNotSealedError:
            logger.warning("Window %d was removed before it could be reported", key)
            continue
        for row in rows:
            logger.info(
                "window=%d op=%s code=%s indices=%s count=%d avg_latency=%.1f max_latency=%d",
                key,
                row.operation,
                row.response_code,
                row.indices,
                row.count,
                row.avg_latency,
                row.max_latency,
            )
        logger.info("window=%d in_flight=%d stats=%s", key, len(in_flight), pipeline.stats.snapshot())
        last_reported = key


async def run_demo(cfg: PipelineConfig, seconds: float = 30.0, producers: int = 4) -> None:
    """Run producers, the writer and a reporter for `seconds`."""
    pipeline = build_pipeline(cfg)

    stop = threading.Event()
    threads = [SyntheticRequestProducer(pipeline.queue, stop, name=f"producer-{i}") for i in range(producers)]

    await pipeline.writer.start()
    for t in threads:
        t.start()
    report_task = asyncio.create_task(
        _report_latest_window(pipeline, cfg.sampling_interval_ms / 1000.0), name="window-reporter"
    )
    try:
        await asyncio.sleep(seconds)
    finally:
        stop.set()
        for t in threads:
            t.join(timeout=2.0)
        report_task.cancel()
        await asyncio.gather(report_task, return_exceptions=True)
        await pipeline.writer.aclose()
        pipeline.reader.close()


def main() -> None:
    """CLI entrypoint for running the demo with `python src/main.py`."""
    cfg = load_config()
    logging.basicConfig(level=cfg.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    seconds = float(os.getenv("DEMO_SECONDS", "30"))
    asyncio.run(run_demo(cfg, seconds=seconds))


if __name__ == "__main__":
    main()
