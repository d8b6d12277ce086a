"""Feed ingestion: transport, Binance decoding, reconnecting connector."""
