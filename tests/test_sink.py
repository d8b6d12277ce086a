"""Storage sink: idempotent writes, batch splitting, schema checks, read helpers."""

from decimal import Decimal

import duckdb
import pytest
from conftest import make_event
from pydantic import ValidationError

from tradeflow.errors import PermanentStorageError, TransientStorageError
from tradeflow.storage.db import get_connection, init_schema, verify_schema
from tradeflow.storage.export import export_trades_to_parquet
from tradeflow.storage.sink import StorageSink, TradeRow, classify_error
from tradeflow.storage.trades import count_trades, recent_trades, trade_stats


def _rows(*trade_ids, pair="BTC-USDT"):
    return [TradeRow.from_event(make_event(i, pair=pair), partition=0, offset=i) for i in trade_ids]


def test_same_batch_twice_keeps_one_row_per_trade(db_path):
    sink = StorageSink(db_path)
    rows = _rows(1, 2, 3)
    assert sink.write_batch(rows) == 3
    assert sink.write_batch(rows) == 3
    assert sink.count() == 3
    sink.close()


def test_large_batch_split_into_chunks(db_path):
    sink = StorageSink(db_path, max_batch_rows=2)
    sink.write_batch(_rows(*range(1, 6)))
    assert sink.count() == 5
    assert sink.metrics.snapshot()["latency_ms"]["store_write_ms"]["count"] == 3
    sink.close()


def test_empty_batch_is_a_no_op(db_path):
    sink = StorageSink(db_path)
    assert sink.write_batch([]) == 0
    sink.close()


def test_decimal_precision_preserved(db_path):
    event = make_event(1, price="30000.123456789012345678", quantity="0.000000000000000001")
    sink = StorageSink(db_path)
    sink.write_batch([TradeRow.from_event(event)])
    row = sink._get_conn().execute("SELECT price, quantity, side FROM trades").fetchone()
    sink.close()
    assert row[0] == Decimal("30000.123456789012345678")
    assert row[1] == Decimal("0.000000000000000001")
    assert row[2] == "buyer_maker"


def test_incompatible_existing_table_is_permanent_error(db_path):
    conn = get_connection(db_path)
    conn.execute("CREATE TABLE trades (pair VARCHAR, trade_id BIGINT, price DOUBLE)")
    conn.close()
    with pytest.raises(PermanentStorageError):
        StorageSink(db_path).open()


def test_error_classification():
    assert isinstance(classify_error(duckdb.IOException("disk full")), TransientStorageError)
    assert isinstance(classify_error(duckdb.TransactionException("conflict")), TransientStorageError)
    assert isinstance(classify_error(duckdb.ConversionException("bad value")), PermanentStorageError)
    assert isinstance(classify_error(duckdb.ConstraintException("not null")), PermanentStorageError)


def test_stats_recent_and_export(db_path, tmp_path):
    sink = StorageSink(db_path)
    # Trade 3 never arrived.
    sink.write_batch(_rows(1, 2, 4) + _rows(10, pair="ETH-USDT"))
    conn = sink._get_conn()

    stats = trade_stats(conn)
    assert stats["total_trades"] == 4
    btc = next(p for p in stats["by_pair"] if p["pair"] == "BTC-USDT")
    assert (btc["count"], btc["min_trade_id"], btc["max_trade_id"], btc["missing"]) == (3, 1, 4, 1)
    assert count_trades(conn, "ETH-USDT") == 1

    recent = recent_trades(conn, limit=2, pair="BTC-USDT")
    assert [r["trade_id"] for r in recent] == [4, 2]

    out = tmp_path / "trades.parquet"
    assert export_trades_to_parquet(conn, out, pair="BTC-USDT") == 3
    assert out.exists()
    assert conn.execute(f"SELECT COUNT(*) FROM read_parquet('{out}')").fetchone()[0] == 3
    sink.close()


def test_schema_created_on_fresh_store(db_path):
    conn = get_connection(db_path)
    try:
        init_schema(conn)
        init_schema(conn)
        verify_schema(conn)
        assert count_trades(conn) == 0
    finally:
        conn.close()


def test_widest_column_values_round_trip_exactly(db_path):
    event = make_event(1, price="99999999999999999999.999999999999999999", quantity="0.000000000000000001")
    sink = StorageSink(db_path)
    sink.write_batch([TradeRow.from_event(event)])
    row = sink._get_conn().execute("SELECT price, quantity FROM trades").fetchone()
    sink.close()
    assert row == (Decimal("99999999999999999999.999999999999999999"), Decimal("0.000000000000000001"))


@pytest.mark.parametrize(
    "price",
    ["1e25", "123456789012345678901.5", "0.0000000000000000001", "1.1234567890123456789"],
)
def test_values_the_columns_cannot_hold_never_become_rows(price):
    with pytest.raises(ValidationError):
        make_event(1, price=price)
