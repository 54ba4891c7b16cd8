"""Per-window correlation store backed by DuckDB.

Start and end halves of a request are written as separate rows keyed by
`(rid, kind)`; a later write of the same half replaces the earlier one. Every
view groups those rows by request id at query time:

    raw rows                                   grouped_view()
    rid | kind  | operation | code | st  | et       rid | operation | code | st  | et
    R1  | start | search    |      | 1000|          R1  | search    | 200  | 1000| 1295
    R1  | end   |           | 200  |     | 1295     R2  | bulk      |      | 500 |
    R2  | start | bulk      |      | 500 |
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from typing import Any

import duckdb

from .models import (
    INTEGER_DIMENSIONS,
    STRING_DIMENSIONS,
    Dimension,
    LatencyRecord,
    OperationAggregate,
    RequestRecord,
)

logger = logging.getLogger(__name__)

# Ten minutes.
DEFAULT_EXPIRY_MS = 600_000

_DIMENSION_COLUMNS = (
    Dimension.OPERATION,
    Dimension.INDICES,
    Dimension.RESPONSE_CODE,
    Dimension.EXCEPTION,
    Dimension.ITEM_COUNT,
)
_INSERT_COLUMNS = ("rid", "kind", *(str(d) for d in _DIMENSION_COLUMNS), "st", "et")
_GROUP_KEYS = "operation, response_code, indices, exception"


def _coerce_dimensions(dimensions: Mapping[str, Any] | None) -> dict[str, Any]:
    """Map raw event dimensions onto the store's typed columns.

    Unknown keys are ignored. Raises `ValueError` for values that cannot be
    converted to the column type.
    """
    out: dict[str, Any] = {}
    for raw_key, value in (dimensions or {}).items():
        try:
            dim = Dimension(str(raw_key))
        except ValueError:
            logger.debug("Ignoring unknown dimension %r", raw_key)
            continue
        if value is None:
            continue
        if dim in INTEGER_DIMENSIONS:
            if isinstance(value, bool):
                raise ValueError(f"{dim} must be an integer. Got: {value!r}")
            try:
                out[dim.value] = int(value)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"{dim} must be an integer. Got: {value!r}") from exc
        elif dim in STRING_DIMENSIONS:
            out[dim.value] = str(value)
    return out


class WindowStore:
    """Correlation table for one window.

    Thread-safe: every statement runs under the store's lock. With no `conn`
    the store owns a private in-memory database; with one, it works on its own
    cursor of that database.
    """

    def __init__(
        self,
        *,
        window_start: int,
        expiry_ms: int = DEFAULT_EXPIRY_MS,
        conn: duckdb.DuckDBPyConnection | None = None,
    ) -> None:
        """Create the backing table for the window starting at `window_start`."""
        if expiry_ms < 0:
            raise ValueError(f"expiry_ms must be >= 0. Got: {expiry_ms}")
        self.window_start = window_start
        self.expiry_ms = expiry_ms
        self.table_name = f"http_rq_{window_start}"

        self._lock = threading.Lock()
        self._conn = conn.cursor() if conn is not None else duckdb.connect()
        self._removed = False
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        create_sql = f"""
        create table "{self.table_name}" (
          rid varchar not null,
          kind varchar not null,
          operation varchar,
          indices varchar,
          response_code integer,
          exception varchar,
          item_count bigint,
          st bigint,
          et bigint,
          primary key (rid, kind)
        )
        """
        with self._lock:
            self._conn.execute(create_sql)

    # -- writes -----------------------------------------------------------

    def put_start(self, correlation_id: str, start_ts: int, dimensions: Mapping[str, Any] | None = None) -> None:
        """Record (or replace) the start half of a request."""
        self._upsert(correlation_id, "start", _coerce_dimensions(dimensions), st=start_ts, et=None)

    def put_end(self, correlation_id: str, end_ts: int, dimensions: Mapping[str, Any] | None = None) -> None:
        """Record (or replace) the end half of a request."""
        self._upsert(correlation_id, "end", _coerce_dimensions(dimensions), st=None, et=end_ts)

    def rollover(self, previous: WindowStore) -> int:
        """Copy the previous window's in-flight requests into this store.

        Carried rows keep their correlation id, start time and dimensions so a
        late end event can still complete them here. Returns the number copied.
        """
        if previous is self:
            raise ValueError("cannot roll a window over into itself")
        rows = previous.in_flight_view()
        for row in rows:
            dims = {str(d): getattr(row, str(d)) for d in _DIMENSION_COLUMNS}
            self._upsert(row.correlation_id, "start", dims, st=row.start_ts, et=None)
        if rows:
            logger.debug(
                "Rolled %d in-flight requests from %s into %s", len(rows), previous.table_name, self.table_name
            )
        return len(rows)

    def _upsert(self, rid: str, kind: str, dims: Mapping[str, Any], *, st: int | None, et: int | None) -> None:
        values = [rid, kind, *(dims.get(str(d)) for d in _DIMENSION_COLUMNS), st, et]
        placeholders = ", ".join("?" for _ in _INSERT_COLUMNS)
        insert_sql = f"""
        insert or replace into "{self.table_name}"
        ({", ".join(_INSERT_COLUMNS)})
        values ({placeholders})
        """
        with self._lock:
            self._check_open()
            self._conn.execute(insert_sql, values)

    # -- views ------------------------------------------------------------

    def _grouped_sql(self) -> str:
        return f"""
        select rid as correlation_id,
               max(operation) as operation,
               max(indices) as indices,
               max(response_code) as response_code,
               max(exception) as exception,
               max(item_count) as item_count,
               max(st) as start_ts,
               max(et) as end_ts
        from "{self.table_name}"
        group by rid
        """

    def _latency_sql(self) -> str:
        return f"""
        select *, end_ts - start_ts as latency
        from ({self._grouped_sql()})
        where start_ts is not null and end_ts is not null
        """

    def grouped_view(self) -> list[RequestRecord]:
        """One row per request id with both halves merged."""
        rows = self._fetch(f"{self._grouped_sql()} order by correlation_id")
        return [RequestRecord.model_validate(r) for r in rows]

    def latency_view(self) -> list[LatencyRecord]:
        """Completed requests only, with `latency = end_ts - start_ts`."""
        rows = self._fetch(f"select * from ({self._latency_sql()}) order by correlation_id")
        return [LatencyRecord.model_validate(r) for r in rows]

    def aggregate_by_operation(self) -> list[OperationAggregate]:
        """Completed requests collapsed to one row per dimension tuple."""
        sql = f"""
        select {_GROUP_KEYS},
               count(*) as "count",
               sum(latency) as sum_latency,
               avg(latency) as avg_latency,
               min(latency) as min_latency,
               max(latency) as max_latency,
               sum(item_count) as sum_item_count,
               avg(item_count) as avg_item_count,
               min(item_count) as min_item_count,
               max(item_count) as max_item_count
        from ({self._latency_sql()})
        group by {_GROUP_KEYS}
        order by {_GROUP_KEYS}
        """
        return [OperationAggregate.model_validate(r) for r in self._fetch(sql)]

    def in_flight_view(self) -> list[RequestRecord]:
        """Requests that started no earlier than the expiry horizon and have not ended."""
        sql = f"""
        select * from ({self._grouped_sql()})
        where start_ts is not null
          and end_ts is null
          and start_ts >= ?
        order by correlation_id
        """
        rows = self._fetch(sql, [self.window_start - self.expiry_ms])
        return [RequestRecord.model_validate(r) for r in rows]

    def fetch_all(self) -> list[dict[str, Any]]:
        """Raw half rows, for debugging."""
        return self._fetch(f'select * from "{self.table_name}" order by rid, kind')

    def _fetch(self, sql: str, params: list[Any] | None = None) -> list[dict[str, Any]]:
        with self._lock:
            self._check_open()
            cursor = self._conn.execute(sql, params or [])
            columns = [d[0] for d in cursor.description]
            rows = cursor.fetchall()
        return [dict(zip(columns, row)) for row in rows]

    # -- lifecycle --------------------------------------------------------

    def remove(self) -> None:
        """Drop the window's table and release the handle. Safe to call twice."""
        with self._lock:
            if self._removed:
                return
            logger.info("Dropping table %s", self.table_name)
            self._conn.execute(f'drop table if exists "{self.table_name}"')
            self._conn.close()
            self._removed = True

    def _check_open(self) -> None:
        if self._removed:
            raise RuntimeError(f"window store {self.table_name} has been removed")

    def __len__(self) -> int:
        rows = self._fetch(f'select count(distinct rid) as n from "{self.table_name}"')
        return int(rows[0]["n"])
