"""Feed connector: subscription, reconnect state machine, overlap suppression, fatal errors."""

import asyncio
import json

import pytest
from conftest import HANG, FakeClock, ScriptedTransport, trade_frame

from tradeflow.backoff import ExponentialBackoff
from tradeflow.errors import FeedConnectionError
from tradeflow.ingestion.connector import ConnectorState, FeedConnector
from tradeflow.metrics.pipeline import PipelineMetrics


def _connector(transport, sleeps, *, max_attempts=3, **kwargs):
    return FeedConnector(
        transport,
        "BTC-USDT",
        backoff=ExponentialBackoff(1.0, 60.0, max_attempts=max_attempts, jitter=False),
        metrics=PipelineMetrics(),
        sleep=sleeps,
        **kwargs,
    )


async def _collect(connector):
    """Drain the stream until it gives up; return (events, error)."""
    events = []
    with pytest.raises(FeedConnectionError) as exc:
        async for event in connector.stream():
            events.append(event)
    return events, exc.value


@pytest.mark.asyncio
async def test_subscribes_and_streams_trades(sleeps):
    ack = json.dumps({"result": None, "id": 1})
    transport = ScriptedTransport([ack, trade_frame(1), trade_frame(2)])
    connector = _connector(transport, sleeps)

    events, _ = await _collect(connector)

    assert [e.trade_id for e in events] == [1, 2]
    sub = json.loads(transport.connections[0].sent[0])
    assert sub["method"] == "SUBSCRIBE"
    assert sub["params"] == ["btcusdt@trade"]
    assert connector.transitions[:2] == [
        (ConnectorState.DISCONNECTED, ConnectorState.RECONNECTING),
        (ConnectorState.RECONNECTING, ConnectorState.CONNECTED),
    ]
    assert connector.metrics.get("events_ingested") == 2
    assert transport.connections[0].closed


@pytest.mark.asyncio
async def test_reconnect_follows_backoff_and_drops_overlap(sleeps):
    transport = ScriptedTransport(
        [trade_frame(1), trade_frame(2), trade_frame(3)],
        [trade_frame(2), trade_frame(3), trade_frame(4)],
    )
    connector = _connector(transport, sleeps, max_attempts=3)

    events, err = await _collect(connector)

    # First connect is immediate; then 1s, 2s, 4s until max_attempts is exceeded.
    assert sleeps.calls == [1.0, 2.0, 4.0]
    assert [e.trade_id for e in events] == [1, 2, 3, 4]
    assert connector.metrics.get("overlap_dropped") == 2
    assert connector.metrics.get("reconnects") == 1
    assert err.last_trade_id == 4
    assert err.pair == "BTC-USDT"
    assert (ConnectorState.DISCONNECTED, ConnectorState.BACKOFF) in connector.transitions
    assert (ConnectorState.BACKOFF, ConnectorState.RECONNECTING) in connector.transitions


@pytest.mark.asyncio
async def test_stale_connection_is_dropped_and_reconnected(sleeps):
    transport = ScriptedTransport([trade_frame(1), HANG], [trade_frame(2)])
    connector = _connector(transport, sleeps, liveness_timeout_sec=0.05)

    events, _ = await _collect(connector)

    assert [e.trade_id for e in events] == [1, 2]
    assert connector.metrics.get("stale_disconnects") == 1
    assert transport.connections[0].closed


@pytest.mark.asyncio
async def test_auth_failure_is_fatal_without_retry(sleeps):
    transport = ScriptedTransport(FeedConnectionError("feed rejected handshake with HTTP 401"))
    connector = _connector(transport, sleeps)

    events, err = await _collect(connector)

    assert events == []
    assert "401" in str(err)
    assert err.pair == "BTC-USDT"
    assert transport.connects == 1
    assert sleeps.calls == []


@pytest.mark.asyncio
async def test_subscription_rejected_is_fatal(sleeps):
    reply = json.dumps({"error": {"code": 2, "msg": "Invalid request"}, "id": 1})
    transport = ScriptedTransport([reply, trade_frame(1)])
    connector = _connector(transport, sleeps)

    events, err = await _collect(connector)

    assert events == []
    assert "Invalid request" in str(err)
    assert transport.connects == 1


@pytest.mark.asyncio
async def test_bad_trades_dropped_and_broken_frames_reconnect(sleeps):
    transport = ScriptedTransport(
        [trade_frame(1, price=1.5), trade_frame(1), "not json", trade_frame(9)],
        [trade_frame(2)],
    )
    connector = _connector(transport, sleeps)

    events, _ = await _collect(connector)

    # Schema failure is skipped in place; the framing failure drops the session (and trade 9 with it).
    assert [e.trade_id for e in events] == [1, 2]
    assert connector.metrics.get("decode_failures") == 2
    assert connector.metrics.get("reconnects") == 1


@pytest.mark.asyncio
async def test_attempt_counter_resets_after_stable_session(sleeps):
    clock = FakeClock()
    transport = ScriptedTransport(
        [trade_frame(1)],
        [trade_frame(2), trade_frame(3)],
        [trade_frame(4)],
        clock=clock,
        tick=3.0,
    )
    connector = _connector(transport, sleeps, max_attempts=2, stable_after_sec=5.0, clock=clock)

    events, _ = await _collect(connector)

    # The second session lasts 6s >= 5s, so the next disconnect starts over at attempt 1.
    assert sleeps.calls == [1.0, 1.0, 2.0]
    assert [e.trade_id for e in events] == [1, 2, 3, 4]


@pytest.mark.asyncio
async def test_stop_event_ends_stream_and_closes_connection(sleeps):
    transport = ScriptedTransport([trade_frame(1), trade_frame(2), trade_frame(3)])
    connector = _connector(transport, sleeps)
    stop = asyncio.Event()
    seen = []
    async for event in connector.stream(stop):
        seen.append(event.trade_id)
        stop.set()
    assert seen == [1]
    assert transport.connections[0].closed


@pytest.mark.asyncio
async def test_read_without_connection_falls_back_to_disconnected(sleeps):
    connector = _connector(ScriptedTransport(), sleeps)
    connector._set_state(ConnectorState.CONNECTED)

    assert await connector._read_one() is None
    assert connector.state is ConnectorState.DISCONNECTED
