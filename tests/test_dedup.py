"""Dedup window: size and time bounds."""

from conftest import FakeClock

from tradeflow.pipeline.dedup import DedupWindow


def test_add_and_contains():
    w = DedupWindow(max_size=10)
    w.add(("BTC-USDT", 1))
    assert ("BTC-USDT", 1) in w
    assert ("BTC-USDT", 2) not in w
    assert ("ETH-USDT", 1) not in w


def test_oldest_key_evicted_at_max_size():
    w = DedupWindow(max_size=3, ttl_sec=None)
    w.add_many([("P-Q", i) for i in range(1, 5)])
    assert len(w) == 3
    assert ("P-Q", 1) not in w
    assert ("P-Q", 4) in w


def test_re_adding_refreshes_position():
    w = DedupWindow(max_size=2, ttl_sec=None)
    w.add("a")
    w.add("b")
    w.add("a")
    w.add("c")
    assert "a" in w
    assert "b" not in w


def test_keys_expire_after_ttl():
    clock = FakeClock()
    w = DedupWindow(max_size=100, ttl_sec=10.0, clock=clock)
    w.add("old")
    clock.advance(6)
    w.add("new")
    clock.advance(5)
    assert "old" not in w
    assert "new" in w
    assert len(w) == 1
