"""Feed connector - connect, subscribe, decode, and reconnect through an explicit state machine."""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable

import structlog

from tradeflow.backoff import ExponentialBackoff
from tradeflow.errors import FeedConnectionError, TransientFeedError
from tradeflow.ingestion.binance import (
    DecodeFailure,
    decode_trade,
    parse_control,
    parse_frame,
    subscribe_message,
)
from tradeflow.ingestion.transport import FeedConnection, FeedTransport
from tradeflow.metrics.pipeline import PipelineMetrics
from tradeflow.models.trade import TradeEvent, normalize_pair

log = structlog.get_logger(__name__)


class ConnectorState(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    BACKOFF = "backoff"
    RECONNECTING = "reconnecting"


def _now_ms() -> int:
    return int(time.time() * 1000)


class FeedConnector:
    """Turns a feed transport into a lazy, infinite stream of TradeEvents.

    DISCONNECTED -> BACKOFF -> RECONNECTING -> CONNECTED, driven by the loop in
    `stream()`. The first connection skips the backoff delay. Each disconnect or
    failed connect increments the attempt counter; it only resets after the
    connection has stayed up for `stable_after_sec`. When the counter exceeds
    `backoff.max_attempts` the stream raises FeedConnectionError.

    The source has no resume-from-sequence, so after a reconnect any trade id
    at or below the last emitted one is dropped as overlap.
    """

    def __init__(
        self,
        transport: FeedTransport,
        pair: str,
        *,
        backoff: ExponentialBackoff | None = None,
        liveness_timeout_sec: float = 30.0,
        stable_after_sec: float = 30.0,
        metrics: PipelineMetrics | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now_ms: Callable[[], int] = _now_ms,
    ) -> None:
        self.transport = transport
        self.pair = normalize_pair(pair)
        self.backoff = backoff or ExponentialBackoff(1.0, 60.0, max_attempts=20)
        self.liveness_timeout_sec = liveness_timeout_sec
        self.stable_after_sec = stable_after_sec
        self.metrics = metrics or PipelineMetrics()
        self._clock = clock
        self._sleep = sleep
        self._now_ms = now_ms

        self.state = ConnectorState.DISCONNECTED
        self.transitions: list[tuple[ConnectorState, ConnectorState]] = []
        self.attempt = 0
        self.last_trade_id: int | None = None
        self.last_message_at: float | None = None
        self._conn: FeedConnection | None = None
        self._initial = True
        self._ever_connected = False
        self._connected_since: float | None = None
        self._first_after_connect = False
        self._request_id = 0

    def _set_state(self, new: ConnectorState, **context: object) -> None:
        old = self.state
        self.state = new
        self.transitions.append((old, new))
        self.metrics.set_gauge("feed_state", new.value)
        log.info("feed_state", pair=self.pair, old=old.value, new=new.value, attempt=self.attempt, **context)

    def _fatal(self, message: str) -> FeedConnectionError:
        return FeedConnectionError(
            message, pair=self.pair, last_trade_id=self.last_trade_id, attempts=self.attempt
        )

    async def stream(self, stop_event: asyncio.Event | None = None) -> AsyncIterator[TradeEvent]:
        """Yield TradeEvents until stop_event is set. Raises FeedConnectionError when unrecoverable."""
        stop = stop_event or asyncio.Event()
        try:
            while not stop.is_set():
                if self.state is ConnectorState.CONNECTED:
                    event = await self._read_one()
                    if event is not None:
                        yield event
                elif self.state is ConnectorState.DISCONNECTED:
                    await self._on_disconnected()
                elif self.state is ConnectorState.BACKOFF:
                    await self._on_backoff()
                elif self.state is ConnectorState.RECONNECTING:
                    await self._on_reconnecting()
        finally:
            await self._close_connection()
            log.info("feed_stopped", pair=self.pair, last_trade_id=self.last_trade_id)

    async def _on_disconnected(self) -> None:
        await self._close_connection()
        if self._initial:
            self._initial = False
            self._set_state(ConnectorState.RECONNECTING)
            return
        self.attempt += 1
        if self.attempt > self.backoff.max_attempts:
            log.error("feed_max_attempts_reached", pair=self.pair, attempts=self.attempt - 1)
            raise self._fatal(f"gave up after {self.attempt - 1} consecutive reconnect attempts")
        self._set_state(ConnectorState.BACKOFF)

    async def _on_backoff(self) -> None:
        delay = self.backoff.delay(self.attempt)
        log.info("feed_backoff", pair=self.pair, attempt=self.attempt, delay=round(delay, 3))
        await self._sleep(delay)
        self._set_state(ConnectorState.RECONNECTING)

    async def _on_reconnecting(self) -> None:
        try:
            self._conn = await self.transport.connect()
            self._request_id += 1
            await self._conn.send(subscribe_message(self.pair, self._request_id))
        except TransientFeedError as e:
            log.warning("feed_connect_failed", pair=self.pair, error=str(e), attempt=self.attempt)
            self._set_state(ConnectorState.DISCONNECTED)
            return
        except FeedConnectionError as e:
            e.pair, e.last_trade_id, e.attempts = self.pair, self.last_trade_id, self.attempt
            log.error("feed_fatal", pair=self.pair, error=str(e))
            raise
        if self._ever_connected:
            self.metrics.inc("reconnects")
        self._ever_connected = True
        self._connected_since = self._clock()
        self.last_message_at = self._connected_since
        self._first_after_connect = True
        self._set_state(ConnectorState.CONNECTED, request_id=self._request_id)

    async def _read_one(self) -> TradeEvent | None:
        conn = self._conn
        if conn is None:
            self._set_state(ConnectorState.DISCONNECTED, reason="no_connection")
            return None
        try:
            raw = await asyncio.wait_for(conn.recv(), timeout=self.liveness_timeout_sec)
        except asyncio.TimeoutError:
            log.warning("feed_stale", pair=self.pair, timeout_sec=self.liveness_timeout_sec)
            self.metrics.inc("stale_disconnects")
            self._set_state(ConnectorState.DISCONNECTED, reason="stale")
            return None
        except TransientFeedError as e:
            log.warning("feed_disconnected", pair=self.pair, error=str(e))
            self._set_state(ConnectorState.DISCONNECTED, reason="closed")
            return None

        now = self._clock()
        self.last_message_at = now
        if self.attempt and self._connected_since is not None and now - self._connected_since >= self.stable_after_sec:
            log.info("feed_stable", pair=self.pair, previous_attempts=self.attempt)
            self.attempt = 0

        payload = parse_frame(raw)
        if payload is None:
            self.metrics.inc("decode_failures")
            log.warning("feed_framing_error", pair=self.pair, raw=str(raw)[:200])
            self._set_state(ConnectorState.DISCONNECTED, reason="framing")
            return None

        control = parse_control(payload)
        if control is not None:
            if control.error:
                log.error("feed_subscription_rejected", pair=self.pair, error=control.error)
                raise self._fatal(f"subscription rejected: {control.error}")
            log.info("feed_subscribed", pair=self.pair, request_id=control.request_id)
            return None

        result = decode_trade(payload, self.pair, self._now_ms())
        if isinstance(result, DecodeFailure):
            self.metrics.inc("decode_failures")
            log.warning("trade_decode_failed", pair=self.pair, reason=result.reason)
            return None
        return self._accept(result)

    def _accept(self, event: TradeEvent) -> TradeEvent | None:
        last = self.last_trade_id
        after_connect = self._first_after_connect
        self._first_after_connect = False
        if last is not None and event.trade_id <= last:
            self.metrics.inc("overlap_dropped")
            log.debug("trade_overlap_dropped", pair=self.pair, trade_id=event.trade_id, last_trade_id=last)
            return None
        if last is not None and event.trade_id > last + 1:
            log.warning(
                "feed_gap",
                pair=self.pair,
                last_trade_id=last,
                trade_id=event.trade_id,
                missing=event.trade_id - last - 1,
                after_reconnect=after_connect,
            )
        self.last_trade_id = event.trade_id
        self.metrics.inc("events_ingested")
        return event

    async def _close_connection(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            await conn.close()
        except Exception as e:
            log.warning("feed_close_error", pair=self.pair, error=str(e))
