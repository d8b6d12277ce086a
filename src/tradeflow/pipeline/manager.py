"""Pipeline orchestrator - feed -> queue -> publisher -> broker -> subscriber -> store."""

from __future__ import annotations

import asyncio
import contextlib
import time
from decimal import Decimal
from typing import Any, Coroutine

import structlog

from tradeflow.backoff import ExponentialBackoff
from tradeflow.broker.base import BrokerConsumer, BrokerProducer, RecordMetadata
from tradeflow.broker.memory import InMemoryBroker
from tradeflow.config.settings import Settings
from tradeflow.ingestion.connector import FeedConnector
from tradeflow.ingestion.transport import FeedTransport, WebSocketTransport
from tradeflow.metrics.pipeline import PipelineMetrics
from tradeflow.models.trade import Side, TradeEvent
from tradeflow.pipeline.dedup import DedupWindow
from tradeflow.pipeline.publisher import Publisher
from tradeflow.pipeline.subscriber import Subscriber
from tradeflow.storage.sink import StorageSink

log = structlog.get_logger(__name__)

# Values of the sample trade published by `publish_sample`.
SAMPLE_EVENT_TIME = 1672515782136
SAMPLE_TRADE_TIME = 1672515782140


def _now_ms() -> int:
    return int(time.time() * 1000)


class PipelineManager:
    """Builds the pipeline components from Settings and runs them as asyncio tasks.

    Any component handle can be injected (tests, `api --with-pipeline`);
    missing ones are built from settings on first use. With the memory
    backend, producer and consumer share one InMemoryBroker.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: FeedTransport | None = None,
        broker: InMemoryBroker | None = None,
        producer: BrokerProducer | None = None,
        consumer: BrokerConsumer | None = None,
        sink: StorageSink | None = None,
        metrics: PipelineMetrics | None = None,
    ):
        self.settings = settings
        self.metrics = metrics or PipelineMetrics()
        self._transport = transport
        self._broker = broker
        self._producer = producer
        self._consumer = consumer
        self._sink = sink
        self.connector: FeedConnector | None = None
        self.publisher: Publisher | None = None
        self.subscriber: Subscriber | None = None
        self.running = False
        self.failure: BaseException | None = None
        self._start_ts: float | None = None

    @property
    def broker(self) -> InMemoryBroker:
        if self._broker is None:
            self._broker = InMemoryBroker(partitions=self.settings.partitions)
        return self._broker

    def _get_producer(self) -> BrokerProducer:
        if self._producer is None:
            if self.settings.broker_backend == "memory":
                self._producer = self.broker.producer()
            else:
                from tradeflow.broker.kafka import KafkaProducerClient

                self._producer = KafkaProducerClient(
                    self.settings.bootstrap_servers,
                    request_timeout_ms=self.settings.request_timeout_ms,
                )
        return self._producer

    def _get_consumer(self) -> BrokerConsumer:
        if self._consumer is None:
            if self.settings.broker_backend == "memory":
                self._consumer = self.broker.consumer(self.settings.group_id)
            else:
                from tradeflow.broker.kafka import KafkaConsumerClient

                self._consumer = KafkaConsumerClient(
                    self.settings.bootstrap_servers,
                    self.settings.group_id,
                    session_timeout_ms=self.settings.session_timeout_ms,
                )
        return self._consumer

    def _get_sink(self) -> StorageSink:
        if self._sink is None:
            self._sink = StorageSink(
                self.settings.db_path,
                max_batch_rows=self.settings.max_batch_rows,
                metrics=self.metrics,
            )
        return self._sink

    def build_connector(self) -> FeedConnector:
        s = self.settings
        transport = self._transport or WebSocketTransport(s.feed_url, open_timeout=s.open_timeout_sec)
        self.connector = FeedConnector(
            transport,
            s.pair,
            backoff=ExponentialBackoff(
                s.reconnect_base_delay_sec, s.reconnect_max_delay_sec, max_attempts=s.reconnect_max_attempts
            ),
            liveness_timeout_sec=s.liveness_timeout_sec,
            stable_after_sec=s.stable_after_sec,
            metrics=self.metrics,
        )
        return self.connector

    def build_publisher(self) -> Publisher:
        s = self.settings
        self.publisher = Publisher(
            self._get_producer(),
            s.topic,
            backoff=ExponentialBackoff(
                s.publish_base_delay_sec, s.publish_max_delay_sec, max_attempts=s.publish_max_attempts
            ),
            cooldown_sec=s.publish_cooldown_sec,
            max_rounds=s.publish_max_rounds,
            drain_grace_sec=s.drain_grace_sec,
            metrics=self.metrics,
        )
        return self.publisher

    def build_subscriber(self) -> Subscriber:
        s = self.settings
        self.subscriber = Subscriber(
            self._get_consumer(),
            self._get_sink(),
            s.topic,
            max_batch=s.max_batch,
            poll_timeout_ms=s.poll_timeout_ms,
            dedup=DedupWindow(s.dedup_window_size, s.dedup_window_ttl_sec),
            backoff=ExponentialBackoff(
                s.write_base_delay_sec, s.write_max_delay_sec, max_attempts=s.write_max_attempts
            ),
            metrics=self.metrics,
        )
        return self.subscriber

    async def _run_feed(self, connector: FeedConnector, queue: asyncio.Queue[TradeEvent], stop: asyncio.Event) -> None:
        """Move connector output into the queue; a full queue blocks the connector."""
        async with contextlib.aclosing(connector.stream(stop)) as events:
            async for event in events:
                if queue.full():
                    self.metrics.inc("backpressure_waits")
                    log.warning("queue_full", pair=event.pair, trade_id=event.trade_id, size=queue.maxsize)
                await queue.put(event)
                self.metrics.set_gauge("queue_depth", queue.qsize())

    async def _guard(self, name: str, coro: Coroutine[Any, Any, None], stop: asyncio.Event) -> None:
        """Run one component; the first failure is kept and stops the rest."""
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self.failure is None:
                self.failure = e
            context = e.context() if hasattr(e, "context") else {}
            log.error("pipeline_component_failed", component=name, error=str(e), error_type=type(e).__name__, **context)
            stop.set()

    async def _log_stats(self, stop: asyncio.Event) -> None:
        interval = self.settings.metrics_log_interval_sec
        if interval <= 0:
            return
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            snap = self.metrics.snapshot()
            log.info(
                "pipeline_stats",
                ingest_rate_per_sec=snap["ingest_rate_per_sec"],
                counters={k: v for k, v in snap["counters"].items() if v},
                gauges=snap["gauges"],
            )

    async def run(
        self,
        stop_event: asyncio.Event | None = None,
        *,
        fetch: bool = True,
        consume: bool = True,
    ) -> None:
        """Run the selected roles until stop_event is set or a component fails.

        On stop the feed task is cancelled, the publisher drains its queue and
        the subscriber finishes its in-flight batch. The first component
        failure is re-raised once everything has shut down.
        """
        stop = stop_event or asyncio.Event()
        self.failure = None
        self._start_ts = time.time()
        tasks: dict[str, asyncio.Task[None]] = {}
        producer = consumer = None
        try:
            if consume:
                subscriber = self.build_subscriber()
                self._get_sink().open()
                consumer = subscriber.consumer
                await subscriber.start()
            if fetch:
                producer = self._get_producer()
                await producer.start()
                connector = self.build_connector()
                publisher = self.build_publisher()
                queue: asyncio.Queue[TradeEvent] = asyncio.Queue(maxsize=self.settings.queue_size)
                tasks["feed"] = asyncio.create_task(self._guard("feed", self._run_feed(connector, queue, stop), stop))
                tasks["publisher"] = asyncio.create_task(self._guard("publisher", publisher.run(queue, stop), stop))
                log.info("fetcher_started", pair=connector.pair, topic=self.settings.topic)
            if consume:
                tasks["subscriber"] = asyncio.create_task(self._guard("subscriber", subscriber.run(stop), stop))
                log.info("consumer_started", topic=self.settings.topic, group_id=self.settings.group_id)
            self.running = True
            stats_task = asyncio.create_task(self._log_stats(stop))

            await stop.wait()
            log.info("pipeline_stopping", failed=self.failure is not None)
            if "feed" in tasks:
                tasks["feed"].cancel()
            await asyncio.gather(*tasks.values(), return_exceptions=True)
            stats_task.cancel()
            await asyncio.gather(stats_task, return_exceptions=True)
        except Exception as e:
            if self.failure is None:
                self.failure = e
            stop.set()
            for task in tasks.values():
                task.cancel()
            await asyncio.gather(*tasks.values(), return_exceptions=True)
        finally:
            self.running = False
            await self._shutdown(producer, consumer)
        if self.failure is not None:
            log.error("pipeline_failed", error=str(self.failure), error_type=type(self.failure).__name__)
            raise self.failure
        log.info("pipeline_stopped", **self.get_status())

    async def _shutdown(self, producer: BrokerProducer | None, consumer: BrokerConsumer | None) -> None:
        if producer is not None:
            try:
                await producer.stop()
            except Exception as e:
                log.warning("producer_stop_failed", error=str(e))
        if consumer is not None:
            try:
                await consumer.stop()
            except Exception as e:
                log.warning("consumer_stop_failed", error=str(e))

    async def publish_sample(
        self,
        *,
        pair: str | None = None,
        trade_id: int | None = None,
        price: Decimal = Decimal("30000.50"),
        quantity: Decimal = Decimal("0.001"),
    ) -> RecordMetadata:
        """Publish one synthetic trade, for checking broker connectivity end to end."""
        event = TradeEvent(
            pair=pair or self.settings.pair,
            trade_id=trade_id if trade_id is not None else _now_ms(),
            price=price,
            quantity=quantity,
            side=Side.BUYER_MAKER,
            event_time=SAMPLE_EVENT_TIME,
            trade_time=SAMPLE_TRADE_TIME,
            ingest_time=_now_ms(),
        )
        producer = self._get_producer()
        await producer.start()
        try:
            publisher = self.build_publisher()
            md = await publisher.publish(event)
        finally:
            await producer.stop()
        log.info("sample_published", pair=event.pair, trade_id=event.trade_id, partition=md.partition, offset=md.offset)
        return md

    def get_status(self) -> dict[str, Any]:
        """Return current status: running, feed state, elapsed_sec, events_per_sec, failure."""
        elapsed = (time.time() - self._start_ts) if self._start_ts else 0
        ingested = self.metrics.get("events_ingested")
        return {
            "running": self.running,
            "feed_state": self.connector.state.value if self.connector else None,
            "last_trade_id": self.connector.last_trade_id if self.connector else None,
            "events_ingested": ingested,
            "rows_written": self.metrics.get("rows_written"),
            "elapsed_sec": round(elapsed, 1),
            "events_per_sec": round(ingested / elapsed, 2) if elapsed > 0 else 0,
            "failure": str(self.failure) if self.failure else None,
        }

    def close(self) -> None:
        if self._sink is not None:
            self._sink.close()
