"""Subscriber: write-then-commit, dedup across redelivery, failure handling."""

import asyncio

import pytest
from conftest import make_event

from tradeflow.backoff import ExponentialBackoff
from tradeflow.broker.base import TopicPartition
from tradeflow.broker.memory import InMemoryBroker, InMemoryConsumer
from tradeflow.errors import PermanentStorageError, SubscriberError, TransientBrokerError, TransientStorageError
from tradeflow.metrics.pipeline import PipelineMetrics
from tradeflow.pipeline.codec import encode_event, encode_key
from tradeflow.pipeline.dedup import DedupWindow
from tradeflow.pipeline.subscriber import Subscriber
from tradeflow.storage.db import get_connection
from tradeflow.storage.sink import StorageSink

TOPIC = "btc-usdt"
GROUP = "btc-consumer-group"
TP0 = TopicPartition(TOPIC, 0)


class FlakySink(StorageSink):
    """Fails the next `failures` writes with the given error."""

    def __init__(self, *args, error=TransientStorageError, failures=0, **kwargs):
        super().__init__(*args, **kwargs)
        self.error = error
        self.failures = failures
        self.calls = 0

    def write_batch(self, rows):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise self.error("disk went away")
        return super().write_batch(rows)


def _publish(broker, *trade_ids):
    for i in trade_ids:
        e = make_event(i)
        broker.append(TOPIC, encode_key(e), encode_event(e))


def _subscriber(broker, sink, sleeps, **kwargs):
    kwargs.setdefault("backoff", ExponentialBackoff(0.1, 1.0, max_attempts=3, jitter=False))
    return Subscriber(
        broker.consumer(GROUP),
        sink,
        TOPIC,
        poll_timeout_ms=20,
        metrics=PipelineMetrics(),
        sleep=sleeps,
        **kwargs,
    )


def _stored(db_path):
    conn = get_connection(db_path, read_only=True)
    try:
        return conn.execute("SELECT trade_id, broker_offset FROM trades ORDER BY trade_id").fetchall()
    finally:
        conn.close()


@pytest.mark.asyncio
async def test_two_trades_written_in_order_then_offset_2_committed(db_path, sleeps):
    broker = InMemoryBroker()
    _publish(broker, 1, 2)
    sink = StorageSink(db_path)
    sub = _subscriber(broker, sink, sleeps)
    await sub.start()

    batch = await sub.poll()
    assert [(e.trade_id, off.offset) for e, off in batch] == [(1, 0), (2, 1)]
    assert broker.committed(GROUP, TP0) is None

    assert await sub.process_batch(batch) == 2
    await sub.stop()
    sink.close()

    assert _stored(db_path) == [(1, 0), (2, 1)]
    assert broker.committed(GROUP, TP0) == 2
    assert sub.metrics.get("batches_committed") == 1
    assert sub.metrics.gauge("committed_offset[0]") == 2
    assert sub.metrics.gauge("consumer_lag[0]") == 0


@pytest.mark.asyncio
async def test_redelivery_after_rebalance_is_deduplicated(db_path, sleeps):
    broker = InMemoryBroker()
    _publish(broker, 1, 2, 3)
    sink = StorageSink(db_path)
    sub = _subscriber(broker, sink, sleeps)
    await sub.start()

    batch = await sub.poll()
    # Partition is revoked and handed back before the batch commits; its offsets are discarded.
    await broker.rebalance(GROUP)
    await sub.process_batch(batch)
    assert broker.committed(GROUP, TP0) is None

    redelivered = await sub.poll()
    assert [e.trade_id for e, _ in redelivered] == [1, 2, 3]
    assert await sub.process_batch(redelivered) == 0
    await sub.stop()
    sink.close()

    assert sub.metrics.get("dedup_hits") == 3
    assert broker.committed(GROUP, TP0) == 3
    assert [r[0] for r in _stored(db_path)] == [1, 2, 3]


@pytest.mark.asyncio
async def test_new_member_rewrites_uncommitted_batch_idempotently(db_path, sleeps):
    broker = InMemoryBroker()
    _publish(broker, 1, 2, 3)
    sink = StorageSink(db_path)
    first = _subscriber(broker, sink, sleeps)
    await first.start()
    batch = await first.poll()
    # Member leaves after polling; rows get written but its commit no longer applies.
    await first.stop()
    await first.process_batch(batch)
    assert broker.committed(GROUP, TP0) is None

    second = _subscriber(broker, sink, sleeps, dedup=DedupWindow())
    await second.start()
    again = await second.poll()
    assert len(again) == 3
    await second.process_batch(again)
    await second.stop()
    sink.close()

    assert [r[0] for r in _stored(db_path)] == [1, 2, 3]
    assert broker.committed(GROUP, TP0) == 3


@pytest.mark.asyncio
async def test_write_failure_blocks_commit_until_retry_succeeds(db_path, sleeps):
    broker = InMemoryBroker()
    _publish(broker, 1, 2)
    sink = FlakySink(db_path, failures=3)
    sub = _subscriber(broker, sink, sleeps)
    await sub.start()
    batch = await sub.poll()

    with pytest.raises(SubscriberError) as exc:
        await sub.process_batch(batch)
    assert exc.value.attempts == 3
    assert exc.value.context() == {"pair": "BTC-USDT", "partition": 0, "offset": 1, "attempts": 3}
    assert sleeps.calls == [0.1, 0.2]
    assert broker.committed(GROUP, TP0) is None
    assert sub.metrics.get("storage_write_failures") == 3

    await sub.process_batch(batch)
    await sub.stop()
    sink.close()

    assert broker.committed(GROUP, TP0) == 2
    assert [r[0] for r in _stored(db_path)] == [1, 2]


@pytest.mark.asyncio
async def test_permanent_storage_error_is_not_retried(db_path, sleeps):
    broker = InMemoryBroker()
    _publish(broker, 1)
    sink = FlakySink(db_path, error=PermanentStorageError, failures=1)
    sub = _subscriber(broker, sink, sleeps)
    await sub.start()
    batch = await sub.poll()

    with pytest.raises(SubscriberError) as exc:
        await sub.process_batch(batch)
    await sub.stop()
    sink.close()

    assert exc.value.attempts == 1
    assert sink.calls == 1
    assert sleeps.calls == []
    assert broker.committed(GROUP, TP0) is None


@pytest.mark.asyncio
async def test_undecodable_record_is_skipped_but_committed_past(db_path, sleeps):
    broker = InMemoryBroker()
    broker.append(TOPIC, b"BTC-USDT", b"not json")
    _publish(broker, 5)
    sink = StorageSink(db_path)
    sub = _subscriber(broker, sink, sleeps)
    await sub.start()

    batch = await sub.poll()
    assert [e.trade_id for e, _ in batch] == [5]
    await sub.process_batch(batch)
    await sub.stop()
    sink.close()

    assert sub.metrics.get("decode_failures") == 1
    assert sub.metrics.get("records_consumed") == 2
    assert broker.committed(GROUP, TP0) == 2


@pytest.mark.asyncio
async def test_duplicates_within_one_batch_written_once(db_path, sleeps):
    broker = InMemoryBroker()
    _publish(broker, 1, 1, 2)
    sink = StorageSink(db_path)
    sub = _subscriber(broker, sink, sleeps)
    await sub.start()

    assert await sub.process_batch(await sub.poll()) == 2
    await sub.stop()
    sink.close()

    assert sub.metrics.get("dedup_hits") == 1
    assert broker.committed(GROUP, TP0) == 3


@pytest.mark.asyncio
async def test_poll_returns_empty_on_timeout(db_path, sleeps):
    broker = InMemoryBroker()
    sub = _subscriber(broker, StorageSink(db_path), sleeps)
    await sub.start()
    assert await sub.poll() == []
    await sub.stop()


@pytest.mark.asyncio
async def test_poll_failures_are_bounded(db_path, sleeps):
    class BrokenConsumer:
        def subscribe(self, topic, on_revoked, on_assigned):
            pass

        async def start(self):
            pass

        async def stop(self):
            pass

        async def getmany(self, timeout_ms, max_records):
            raise TransientBrokerError("coordinator not available")

    sub = Subscriber(
        BrokenConsumer(),
        StorageSink(db_path),
        TOPIC,
        backoff=ExponentialBackoff(0.1, 1.0, jitter=False),
        max_poll_failures=3,
        sleep=sleeps,
    )
    assert await sub.poll() == []
    assert await sub.poll() == []
    with pytest.raises(SubscriberError):
        await sub.poll()
    assert sleeps.calls == [0.1, 0.2]


class StopAfterPoll(InMemoryConsumer):
    """Requests shutdown as soon as a poll hands out records."""

    def __init__(self, broker, group_id, stop_event):
        super().__init__(broker, group_id)
        self.stop_event = stop_event

    async def getmany(self, timeout_ms, max_records):
        records = await super().getmany(timeout_ms, max_records)
        if records:
            self.stop_event.set()
        return records


@pytest.mark.asyncio
async def test_stop_during_batch_still_writes_and_commits_it(db_path, sleeps):
    broker = InMemoryBroker()
    _publish(broker, 1, 2)
    stop = asyncio.Event()
    sink = StorageSink(db_path)
    sub = Subscriber(
        StopAfterPoll(broker, GROUP, stop),
        sink,
        TOPIC,
        poll_timeout_ms=20,
        metrics=PipelineMetrics(),
        sleep=sleeps,
    )
    await sub.start()

    await asyncio.wait_for(sub.run(stop), timeout=2)
    await sub.stop()
    sink.close()

    assert _stored(db_path) == [(1, 0), (2, 1)]
    assert broker.committed(GROUP, TP0) == 2
    assert sub.metrics.get("batches_committed") == 1
