"""Export stored trades to Parquet."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from duckdb import DuckDBPyConnection


def _literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def export_trades_to_parquet(
    conn: DuckDBPyConnection,
    output_path: str | Path,
    pair: str | None = None,
) -> int:
    """Export trades, ordered by pair and trade id, to a Parquet file. Optional filter by pair. Returns row count."""
    path = Path(output_path).resolve()
    path.parent.mkdir(parents=True, exist_ok=True)
    target = _literal(str(path))
    if pair:
        # COPY takes no prepared parameters; the pair goes in as an escaped literal.
        conn.execute(
            f"COPY (SELECT * FROM trades WHERE pair = {_literal(pair)} ORDER BY trade_id) TO {target} (FORMAT PARQUET)"
        )
        count = conn.execute("SELECT COUNT(*) FROM trades WHERE pair = ?", [pair]).fetchone()[0]
    else:
        conn.execute(f"COPY (SELECT * FROM trades ORDER BY pair, trade_id) TO {target} (FORMAT PARQUET)")
        count = conn.execute("SELECT COUNT(*) FROM trades").fetchone()[0]
    return count
