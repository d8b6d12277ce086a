"""Read-side queries over the trades table."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection

_COLUMNS = [
    "pair",
    "trade_id",
    "price",
    "quantity",
    "side",
    "event_time",
    "trade_time",
    "ingest_time",
    "broker_partition",
    "broker_offset",
    "written_at",
]


def count_trades(conn: DuckDBPyConnection, pair: str | None = None) -> int:
    if pair:
        return conn.execute("SELECT COUNT(*) FROM trades WHERE pair = ?", [pair]).fetchone()[0]
    return conn.execute("SELECT COUNT(*) FROM trades").fetchone()[0]


def trade_stats(conn: DuckDBPyConnection) -> dict[str, Any]:
    """Return trade table statistics: total rows, event_time range, per-pair counts and trade id range."""
    total = count_trades(conn)
    range_row = conn.execute("SELECT MIN(event_time), MAX(event_time), MAX(written_at) FROM trades").fetchone()
    by_pair = conn.execute(
        """
        SELECT pair, COUNT(*) AS cnt, MIN(trade_id), MAX(trade_id)
        FROM trades GROUP BY pair ORDER BY cnt DESC
        """
    ).fetchall()
    return {
        "total_trades": total,
        "min_event_time": range_row[0],
        "max_event_time": range_row[1],
        "last_written_at": range_row[2],
        "by_pair": [
            {
                "pair": r[0],
                "count": r[1],
                "min_trade_id": r[2],
                "max_trade_id": r[3],
                # Trade ids are contiguous per pair at the source; the difference is what was missed.
                "missing": (r[3] - r[2] + 1) - r[1],
            }
            for r in by_pair
        ],
    }


def recent_trades(conn: DuckDBPyConnection, limit: int = 20, pair: str | None = None) -> list[dict[str, Any]]:
    """Latest trades by trade id, newest first."""
    cols = ", ".join(_COLUMNS)
    if pair:
        rows = conn.execute(
            f"SELECT {cols} FROM trades WHERE pair = ? ORDER BY trade_id DESC LIMIT ?", [pair, limit]
        ).fetchall()
    else:
        rows = conn.execute(f"SELECT {cols} FROM trades ORDER BY event_time DESC, trade_id DESC LIMIT ?", [limit]).fetchall()
    return [dict(zip(_COLUMNS, r)) for r in rows]
