"""Shared fixtures: trade builders, a scripted feed transport, temp DuckDB paths."""

from __future__ import annotations

import asyncio
import json
import tempfile
from collections import deque
from decimal import Decimal
from pathlib import Path

import pytest

from tradeflow.errors import TransientFeedError
from tradeflow.models.trade import Side, TradeEvent

CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"

# Frame that never arrives; used to trip the liveness timeout.
HANG = object()


def make_event(trade_id: int, pair: str = "BTC-USDT", price: str = "30000.50", quantity: str = "0.001") -> TradeEvent:
    return TradeEvent(
        pair=pair,
        trade_id=trade_id,
        price=Decimal(price),
        quantity=Decimal(quantity),
        side=Side.BUYER_MAKER,
        event_time=1672515782000 + trade_id,
        trade_time=1672515782000 + trade_id,
        ingest_time=1672515782100 + trade_id,
    )


def trade_frame(
    trade_id: int, symbol: str = "BTCUSDT", price: object = "30000.50", quantity: object = "0.001", maker: object = True
) -> str:
    return json.dumps(
        {
            "e": "trade",
            "E": 1672515782136 + trade_id,
            "s": symbol,
            "t": trade_id,
            "p": price,
            "q": quantity,
            "T": 1672515782140 + trade_id,
            "m": maker,
        }
    )


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeConnection:
    """Replays frames; raises TransientFeedError once they run out (server closed)."""

    def __init__(self, frames, clock: FakeClock | None = None, tick: float = 0.0) -> None:
        self.frames = deque(frames)
        self.sent: list[str] = []
        self.closed = False
        self._clock = clock
        self._tick = tick

    async def send(self, message: str) -> None:
        self.sent.append(message)

    async def recv(self):
        await asyncio.sleep(0)
        if not self.frames:
            raise TransientFeedError("connection closed by server")
        item = self.frames.popleft()
        if item is HANG:
            await asyncio.sleep(3600)
        if isinstance(item, BaseException):
            raise item
        if self._clock is not None:
            self._clock.advance(self._tick)
        return item

    async def close(self) -> None:
        self.closed = True


class ScriptedTransport:
    """Each connect() consumes one session: a list of frames, or an exception to raise."""

    def __init__(self, *sessions, clock: FakeClock | None = None, tick: float = 0.0) -> None:
        self._sessions = deque(sessions)
        self.connections: list[FakeConnection] = []
        self.connects = 0
        self._clock = clock
        self._tick = tick

    async def connect(self) -> FakeConnection:
        self.connects += 1
        if not self._sessions:
            raise TransientFeedError("connection refused")
        session = self._sessions.popleft()
        if isinstance(session, BaseException):
            raise session
        conn = FakeConnection(session, clock=self._clock, tick=self._tick)
        self.connections.append(conn)
        return conn


class SleepRecorder:
    """Stand-in for asyncio.sleep that records delays and only yields to the loop."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def db_path():
    tmp = tempfile.mkdtemp()
    path = Path(tmp) / "test.duckdb"
    yield path
    for p in Path(tmp).iterdir():
        p.unlink(missing_ok=True)
    Path(tmp).rmdir()
