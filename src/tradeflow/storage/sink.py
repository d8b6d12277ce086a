"""Storage sink - idempotent batch writes of trade rows into DuckDB."""

from __future__ import annotations

import time
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterator, Sequence

import duckdb
import structlog

from tradeflow.errors import PermanentStorageError, StorageError, TransientStorageError
from tradeflow.metrics.pipeline import PipelineMetrics
from tradeflow.models.trade import TradeEvent
from tradeflow.storage.db import get_connection, init_schema, verify_schema

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

log = structlog.get_logger(__name__)

INSERT_SQL = """
INSERT INTO trades (pair, trade_id, price, quantity, side, event_time, trade_time, ingest_time, broker_partition, broker_offset, written_at)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT (pair, trade_id) DO NOTHING
"""

# Failures a retry (possibly on a fresh connection) can get past.
_TRANSIENT_ERRORS = (
    duckdb.IOException,
    duckdb.ConnectionException,
    duckdb.TransactionException,
    duckdb.OutOfMemoryException,
    duckdb.InterruptException,
)


@dataclass(frozen=True)
class TradeRow:
    """One trades table row."""

    pair: str
    trade_id: int
    price: Decimal
    quantity: Decimal
    side: str
    event_time: int
    trade_time: int | None
    ingest_time: int
    broker_partition: int | None = None
    broker_offset: int | None = None

    @classmethod
    def from_event(cls, event: TradeEvent, partition: int | None = None, offset: int | None = None) -> TradeRow:
        return cls(
            pair=event.pair,
            trade_id=event.trade_id,
            price=event.price,
            quantity=event.quantity,
            side=event.side.value,
            event_time=event.event_time,
            trade_time=event.trade_time,
            ingest_time=event.ingest_time,
            broker_partition=partition,
            broker_offset=offset,
        )

    @property
    def key(self) -> tuple[str, int]:
        return (self.pair, self.trade_id)

    def params(self, written_at: int) -> list[Any]:
        return [
            self.pair,
            self.trade_id,
            self.price,
            self.quantity,
            self.side,
            self.event_time,
            self.trade_time,
            self.ingest_time,
            self.broker_partition,
            self.broker_offset,
            written_at,
        ]


def _chunks(rows: Sequence[TradeRow], size: int) -> Iterator[Sequence[TradeRow]]:
    for i in range(0, len(rows), size):
        yield rows[i : i + size]


def classify_error(e: duckdb.Error) -> StorageError:
    if isinstance(e, _TRANSIENT_ERRORS):
        return TransientStorageError(f"{type(e).__name__}: {e}")
    return PermanentStorageError(f"{type(e).__name__}: {e}")


class StorageSink:
    """Owns one DuckDB connection; writes TradeRows keyed by (pair, trade_id).

    Re-writing a stored row is a no-op. Batches above `max_batch_rows` are split
    into chunks, one transaction each; a failed chunk rolls back alone, and the
    caller retries the whole batch safely.
    """

    def __init__(
        self,
        db_path: str | Path,
        *,
        max_batch_rows: int = 1000,
        metrics: PipelineMetrics | None = None,
        now_ms: Callable[[], int] = lambda: int(time.time() * 1000),
    ) -> None:
        if max_batch_rows < 1:
            raise ValueError("max_batch_rows must be >= 1")
        self.db_path = db_path
        self.max_batch_rows = max_batch_rows
        self.metrics = metrics or PipelineMetrics()
        self._now_ms = now_ms
        self._conn: DuckDBPyConnection | None = None

    def _get_conn(self) -> DuckDBPyConnection:
        if self._conn is None:
            try:
                conn = get_connection(self.db_path)
            except duckdb.Error as e:
                raise classify_error(e) from e
            try:
                init_schema(conn)
                verify_schema(conn)
            except StorageError:
                conn.close()
                raise
            except duckdb.Error as e:
                conn.close()
                raise classify_error(e) from e
            self._conn = conn
            log.info("storage_opened", db_path=str(self.db_path))
        return self._conn

    def open(self) -> StorageSink:
        """Open the connection and check the schema now rather than on the first write."""
        self._get_conn()
        return self

    def write_batch(self, rows: Sequence[TradeRow]) -> int:
        """Insert rows, ignoring ones already stored. Returns the number of rows submitted."""
        if not rows:
            return 0
        submitted = 0
        for chunk in _chunks(rows, self.max_batch_rows):
            self._write_chunk(chunk)
            submitted += len(chunk)
        return submitted

    def _write_chunk(self, chunk: Sequence[TradeRow]) -> None:
        conn = self._get_conn()
        written_at = self._now_ms()
        try:
            with self.metrics.timer("store_write_ms"):
                conn.begin()
                conn.executemany(INSERT_SQL, [row.params(written_at) for row in chunk])
                conn.commit()
        except duckdb.Error as e:
            self._rollback(conn)
            err = classify_error(e)
            if err.transient:
                self._reset()
            log.warning("storage_write_failed", rows=len(chunk), transient=err.transient, error=str(err))
            raise err from e

    def _rollback(self, conn: DuckDBPyConnection) -> None:
        try:
            conn.rollback()
        except duckdb.Error as e:
            log.debug("storage_rollback_failed", error=str(e))

    def _reset(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None:
            try:
                conn.close()
            except duckdb.Error as e:
                log.debug("storage_close_failed", error=str(e))

    def count(self) -> int:
        return self._get_conn().execute("SELECT COUNT(*) FROM trades").fetchone()[0]

    def close(self) -> None:
        self._reset()
