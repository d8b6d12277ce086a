"""tradeflow - live crypto trades from exchange WebSocket through Kafka into DuckDB."""

__version__ = "0.1.0"
