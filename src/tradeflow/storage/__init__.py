"""DuckDB trade store: schema, idempotent sink, read helpers."""

from tradeflow.storage.sink import StorageSink, TradeRow

__all__ = ["StorageSink", "TradeRow"]
