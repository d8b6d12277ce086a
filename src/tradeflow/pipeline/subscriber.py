"""Subscriber - broker batches -> dedup -> storage sink -> offset commit."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

import structlog

from tradeflow.backoff import ExponentialBackoff
from tradeflow.broker.base import BrokerConsumer, TopicPartition
from tradeflow.errors import (
    OffsetCommitError,
    PermanentStorageError,
    SubscriberError,
    TransientBrokerError,
    TransientStorageError,
)
from tradeflow.metrics.pipeline import PipelineMetrics
from tradeflow.models.trade import TradeEvent
from tradeflow.pipeline.codec import decode_event
from tradeflow.pipeline.dedup import DedupWindow
from tradeflow.storage.sink import StorageSink, TradeRow

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BrokerOffset:
    topic: str
    partition: int
    offset: int

    @property
    def tp(self) -> TopicPartition:
        return TopicPartition(self.topic, self.partition)


class Subscriber:
    """Consumes the trade topic as part of a consumer group and writes to the sink.

    Offsets are committed only after the batch holding them has been written.
    Polled-but-uncommitted offsets are tracked per partition and dropped when
    that partition is revoked, so a rebalance never commits on behalf of a
    partition this member no longer owns.
    """

    def __init__(
        self,
        consumer: BrokerConsumer,
        sink: StorageSink,
        topic: str,
        *,
        max_batch: int = 500,
        poll_timeout_ms: int = 1000,
        dedup: DedupWindow | None = None,
        backoff: ExponentialBackoff | None = None,
        max_poll_failures: int = 10,
        metrics: PipelineMetrics | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now_ms: Callable[[], int] = lambda: int(time.time() * 1000),
    ) -> None:
        self.consumer = consumer
        self.sink = sink
        self.topic = topic
        self.max_batch = max_batch
        self.poll_timeout_ms = poll_timeout_ms
        self.dedup = dedup or DedupWindow()
        self.backoff = backoff or ExponentialBackoff(0.5, 10.0, max_attempts=5)
        self.max_poll_failures = max_poll_failures
        self.metrics = metrics or PipelineMetrics()
        self._sleep = sleep
        self._now_ms = now_ms
        self._assigned: set[TopicPartition] = set()
        self._inflight: dict[TopicPartition, int] = {}
        self._committed: dict[TopicPartition, int] = {}
        self._poll_failures = 0

    @property
    def committed_offsets(self) -> dict[TopicPartition, int]:
        return dict(self._committed)

    async def start(self) -> None:
        self.consumer.subscribe(self.topic, self._on_revoked, self._on_assigned)
        await self.consumer.start()

    async def stop(self) -> None:
        await self.consumer.stop()

    async def _on_revoked(self, revoked: set[TopicPartition]) -> None:
        dropped = {tp.partition: self._inflight.pop(tp) for tp in revoked if tp in self._inflight}
        self._assigned -= revoked
        log.info("partitions_revoked", partitions=sorted(tp.partition for tp in revoked), dropped_inflight=dropped)

    async def _on_assigned(self, assigned: set[TopicPartition]) -> None:
        self._assigned |= assigned
        for tp in sorted(assigned):
            committed = await self.consumer.committed(tp)
            if committed is None:
                self._committed.pop(tp, None)
            else:
                self._committed[tp] = committed
            log.info("partition_assigned", topic=tp.topic, partition=tp.partition, resume_offset=committed)

    async def poll(self, max_batch: int | None = None) -> list[tuple[TradeEvent, BrokerOffset]]:
        """Fetch the next batch, ordered by partition then offset. Empty on timeout."""
        try:
            records = await self.consumer.getmany(
                timeout_ms=self.poll_timeout_ms, max_records=max_batch or self.max_batch
            )
        except TransientBrokerError as e:
            self._poll_failures += 1
            self.metrics.inc("poll_failures")
            if self._poll_failures >= self.max_poll_failures:
                raise SubscriberError(
                    f"broker poll failed {self._poll_failures} times in a row: {e}",
                    pair=None,
                    partition=None,
                    offset=None,
                    attempts=self._poll_failures,
                ) from e
            delay = self.backoff.delay(self._poll_failures)
            log.warning("poll_failed", error=str(e), attempt=self._poll_failures, delay=round(delay, 3))
            await self._sleep(delay)
            return []
        self._poll_failures = 0
        out: list[tuple[TradeEvent, BrokerOffset]] = []
        for rec in records:
            tp = rec.tp
            self._inflight[tp] = max(self._inflight.get(tp, -1), rec.offset)
            event = decode_event(rec.value)
            if event is None:
                self.metrics.inc("decode_failures")
                log.warning("record_decode_failed", partition=rec.partition, offset=rec.offset)
                continue
            out.append((event, BrokerOffset(rec.topic, rec.partition, rec.offset)))
        if records:
            self.metrics.inc("records_consumed", len(records))
        return out

    def _dedup(self, batch: list[tuple[TradeEvent, BrokerOffset]]) -> list[TradeRow]:
        rows: list[TradeRow] = []
        batch_keys: set[tuple[str, int]] = set()
        for event, off in batch:
            key = event.key
            if key in batch_keys or key in self.dedup:
                self.metrics.inc("dedup_hits")
                log.debug("duplicate_dropped", pair=event.pair, trade_id=event.trade_id, partition=off.partition, offset=off.offset)
                continue
            batch_keys.add(key)
            rows.append(TradeRow.from_event(event, off.partition, off.offset))
        return rows

    async def process_batch(self, batch: list[tuple[TradeEvent, BrokerOffset]]) -> int:
        """Dedup, write, then commit. Returns rows written. Raises SubscriberError without committing."""
        rows = self._dedup(batch)
        if rows:
            await self._write(rows)
            self.dedup.add_many([row.key for row in rows])
            now = self._now_ms()
            for row in rows:
                self.metrics.observe_ms("e2e_latency_ms", now - row.ingest_time)
        await self._commit()
        return len(rows)

    async def _write(self, rows: list[TradeRow]) -> None:
        attempt = 0
        while True:
            attempt += 1
            try:
                self.sink.write_batch(rows)
            except TransientStorageError as e:
                self.metrics.inc("storage_write_failures")
                if self.backoff.exhausted(attempt):
                    raise self._write_error(rows, attempt, e) from e
                delay = self.backoff.delay(attempt)
                log.warning("storage_retry", rows=len(rows), attempt=attempt, delay=round(delay, 3), error=str(e))
                await self._sleep(delay)
                continue
            except PermanentStorageError as e:
                self.metrics.inc("storage_write_failures")
                raise self._write_error(rows, attempt, e) from e
            self.metrics.inc("rows_written", len(rows))
            return

    def _write_error(self, rows: list[TradeRow], attempts: int, cause: Exception) -> SubscriberError:
        last = rows[-1]
        err = SubscriberError(
            f"batch of {len(rows)} rows not written: {cause}",
            pair=last.pair,
            partition=last.broker_partition,
            offset=last.broker_offset,
            attempts=attempts,
        )
        log.error("storage_write_gave_up", error=str(cause), **err.context())
        return err

    async def _commit(self) -> None:
        offsets: dict[TopicPartition, int] = {}
        for tp, last in list(self._inflight.items()):
            if tp not in self._assigned:
                del self._inflight[tp]
                continue
            nxt = last + 1
            if nxt > self._committed.get(tp, -1):
                offsets[tp] = nxt
            else:
                del self._inflight[tp]
        if not offsets:
            return
        try:
            with self.metrics.timer("commit_latency_ms"):
                await self.consumer.commit(offsets)
        except OffsetCommitError as e:
            for tp in offsets:
                self._inflight.pop(tp, None)
            self.metrics.inc("commit_failures")
            log.warning("commit_rejected", error=str(e), offsets={tp.partition: o for tp, o in offsets.items()})
            return
        except TransientBrokerError as e:
            # Rows are stored; the next batch's commit covers these offsets.
            self.metrics.inc("commit_failures")
            log.warning("commit_failed", error=str(e), offsets={tp.partition: o for tp, o in offsets.items()})
            return
        for tp, offset in offsets.items():
            self._committed[tp] = offset
            self._inflight.pop(tp, None)
            self.metrics.set_gauge(f"committed_offset[{tp.partition}]", offset)
            high = self.consumer.highwater(tp)
            if high is not None:
                self.metrics.set_gauge(f"consumer_lag[{tp.partition}]", max(0, high - offset))
        self.metrics.inc("batches_committed")
        log.info("batch_committed", offsets={tp.partition: o for tp, o in offsets.items()})

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Poll and process until stop; an in-flight batch is always written and committed first."""
        stop = stop_event or asyncio.Event()
        while not stop.is_set():
            batch = await self.poll()
            if batch or self._inflight:
                await self.process_batch(batch)
        log.info("subscriber_stopped", committed={tp.partition: o for tp, o in self._committed.items()})
