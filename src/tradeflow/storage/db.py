"""DuckDB connection and schema init."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import duckdb

from tradeflow.errors import PermanentStorageError

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

SCHEMA_SQL = """
-- One row per executed trade, keyed by (pair, trade_id)
CREATE TABLE IF NOT EXISTS trades (
    pair                VARCHAR NOT NULL,
    trade_id            BIGINT NOT NULL,
    price               DECIMAL(38, 18) NOT NULL,
    quantity            DECIMAL(38, 18) NOT NULL,
    side                VARCHAR NOT NULL,
    event_time          BIGINT NOT NULL,
    trade_time          BIGINT,
    ingest_time         BIGINT NOT NULL,
    broker_partition    INTEGER,
    broker_offset       BIGINT,
    written_at          BIGINT NOT NULL,
    PRIMARY KEY (pair, trade_id)
);
"""

# Column name -> DuckDB type as reported by information_schema
TRADES_COLUMNS: dict[str, str] = {
    "pair": "VARCHAR",
    "trade_id": "BIGINT",
    "price": "DECIMAL(38,18)",
    "quantity": "DECIMAL(38,18)",
    "side": "VARCHAR",
    "event_time": "BIGINT",
    "trade_time": "BIGINT",
    "ingest_time": "BIGINT",
    "broker_partition": "INTEGER",
    "broker_offset": "BIGINT",
    "written_at": "BIGINT",
}


def get_connection(db_path: str | Path, read_only: bool = False) -> DuckDBPyConnection:
    """Return a DuckDB connection. Caller must close or use as context manager.
    Use read_only=True when another process may be writing (e.g. a running consumer)."""
    if str(db_path) == ":memory:":
        return duckdb.connect(":memory:")
    path = Path(db_path)
    if not read_only:
        path.parent.mkdir(parents=True, exist_ok=True)
    return duckdb.connect(str(path), read_only=read_only)


def init_schema(conn: DuckDBPyConnection) -> None:
    """Create tables if they do not exist."""
    for stmt in SCHEMA_SQL.split(";"):
        stmt = stmt.strip()
        if stmt:
            try:
                conn.execute(stmt)
            except duckdb.Error as e:
                if "already exists" not in str(e).lower():
                    raise


def verify_schema(conn: DuckDBPyConnection) -> None:
    """Raise PermanentStorageError if an existing trades table does not have the expected columns."""
    rows = conn.execute(
        "SELECT column_name, data_type FROM information_schema.columns WHERE table_name = 'trades'"
    ).fetchall()
    actual = {name: dtype.replace(" ", "").upper() for name, dtype in rows}
    missing = [c for c in TRADES_COLUMNS if c not in actual]
    wrong = [c for c, t in TRADES_COLUMNS.items() if c in actual and actual[c] != t]
    if missing or wrong:
        raise PermanentStorageError(
            f"trades table schema mismatch: missing={missing} wrong_type={wrong}"
        )
