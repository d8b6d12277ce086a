"""Publisher - bounded queue of TradeEvents -> broker topic, keyed by pair."""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable

import structlog

from tradeflow.backoff import ExponentialBackoff
from tradeflow.broker.base import BrokerProducer, RecordMetadata
from tradeflow.errors import BrokerAuthError, PublishError, RecordRejectedError, TransientBrokerError
from tradeflow.metrics.pipeline import PipelineMetrics
from tradeflow.models.trade import TradeEvent
from tradeflow.pipeline.codec import encode_event, encode_key

log = structlog.get_logger(__name__)


class Publisher:
    """Sends events one at a time, in queue order, so per-pair order is the feed order.

    `publish()` retries transient broker errors with bounded backoff and raises
    PublishError once it gives up. `run()` is the queue-draining loop: it drops
    rejected records, and on exhausted retries keeps the event and pauses for
    `cooldown_sec` (the queue fills and the connector blocks) for at most
    `max_rounds` rounds before failing the pipeline.
    """

    def __init__(
        self,
        producer: BrokerProducer,
        topic: str,
        *,
        backoff: ExponentialBackoff | None = None,
        cooldown_sec: float = 5.0,
        max_rounds: int = 12,
        drain_grace_sec: float = 10.0,
        metrics: PipelineMetrics | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.producer = producer
        self.topic = topic
        self.backoff = backoff or ExponentialBackoff(0.2, 5.0, max_attempts=5)
        self.cooldown_sec = cooldown_sec
        self.max_rounds = max_rounds
        self.drain_grace_sec = drain_grace_sec
        self.metrics = metrics or PipelineMetrics()
        self._sleep = sleep
        self._clock = clock
        self.last_published: tuple[str, int] | None = None

    async def _pause(self, delay: float, stop: asyncio.Event | None) -> None:
        """Sleep for delay, returning early once stop is set."""
        if stop is None:
            await self._sleep(delay)
            return
        if stop.is_set():
            return
        sleep_task = asyncio.ensure_future(self._sleep(delay))
        stop_task = asyncio.ensure_future(stop.wait())
        try:
            await asyncio.wait({sleep_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleep_task.cancel()
            stop_task.cancel()

    async def publish(self, event: TradeEvent, stop: asyncio.Event | None = None) -> RecordMetadata:
        """Hand one event to the broker and wait for its acknowledgement.

        Retrying stops early, with an exhausted PublishError, once stop is set.
        """
        key = encode_key(event)
        value = encode_event(event)
        attempt = 0
        while True:
            attempt += 1
            try:
                with self.metrics.timer("produce_latency_ms"):
                    md = await self.producer.send(self.topic, key, value)
            except TransientBrokerError as e:
                stopping = stop is not None and stop.is_set()
                if stopping or self.backoff.exhausted(attempt):
                    self.metrics.inc("publish_failures")
                    log.error(
                        "publish_exhausted",
                        pair=event.pair,
                        trade_id=event.trade_id,
                        attempts=attempt,
                        stopping=stopping,
                        error=str(e),
                    )
                    raise PublishError(
                        f"broker unavailable after {attempt} attempts: {e}",
                        kind=PublishError.EXHAUSTED,
                        pair=event.pair,
                        trade_id=event.trade_id,
                        attempts=attempt,
                    ) from e
                self.metrics.inc("publish_retries")
                delay = self.backoff.delay(attempt)
                log.warning(
                    "publish_retry", pair=event.pair, trade_id=event.trade_id, attempt=attempt, delay=round(delay, 3), error=str(e)
                )
                await self._pause(delay, stop)
                continue
            except RecordRejectedError as e:
                self.metrics.inc("publish_failures")
                raise PublishError(
                    f"record rejected: {e}",
                    kind=PublishError.REJECTED,
                    pair=event.pair,
                    trade_id=event.trade_id,
                    attempts=attempt,
                ) from e
            except BrokerAuthError as e:
                self.metrics.inc("publish_failures")
                raise PublishError(
                    f"not authorized: {e}",
                    kind=PublishError.UNAUTHORIZED,
                    pair=event.pair,
                    trade_id=event.trade_id,
                    attempts=attempt,
                ) from e
            self.metrics.inc("events_published")
            self.last_published = event.key
            log.debug("published", pair=event.pair, trade_id=event.trade_id, partition=md.partition, offset=md.offset)
            return md

    async def deliver(self, event: TradeEvent, stop: asyncio.Event | None = None) -> bool:
        """Publish with the run-loop policy. True if sent, False if the broker rejected it.

        Once stop is set, an outage is no longer waited out: the exhausted
        PublishError propagates so the caller can hand the event to the drain.
        """
        rounds = 0
        while True:
            try:
                await self.publish(event, stop)
                return True
            except PublishError as e:
                if e.kind == PublishError.REJECTED:
                    self.metrics.inc("publish_rejected")
                    log.error("publish_rejected_dropped", error=str(e), **e.context())
                    return False
                if e.fatal:
                    log.error("publish_fatal", error=str(e), **e.context())
                    raise
                if stop is not None and stop.is_set():
                    raise
                rounds += 1
                if rounds >= self.max_rounds:
                    log.error("publish_gave_up", rounds=rounds, error=str(e), **e.context())
                    raise
                log.warning("publish_paused", cooldown_sec=self.cooldown_sec, round=rounds, **e.context())
                await self._pause(self.cooldown_sec, stop)

    async def _next(self, queue: asyncio.Queue[TradeEvent], stop: asyncio.Event) -> TradeEvent | None:
        """Next queued event, or None once stop is set."""
        if not queue.empty():
            return queue.get_nowait()
        get_task = asyncio.ensure_future(queue.get())
        stop_task = asyncio.ensure_future(stop.wait())
        try:
            done, _ = await asyncio.wait({get_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_task.cancel()
            if not get_task.done():
                get_task.cancel()
        if get_task in done and not get_task.cancelled():
            return get_task.result()
        return None

    async def run(self, queue: asyncio.Queue[TradeEvent], stop_event: asyncio.Event | None = None) -> None:
        """Publish queued events until stop, then drain for up to drain_grace_sec."""
        stop = stop_event or asyncio.Event()
        pending: TradeEvent | None = None
        while not stop.is_set():
            event = await self._next(queue, stop)
            if event is None:
                break
            try:
                await self.deliver(event, stop)
            except PublishError as e:
                if not (stop.is_set() and e.kind == PublishError.EXHAUSTED):
                    raise
                pending = event
            finally:
                queue.task_done()
            self.metrics.set_gauge("queue_depth", queue.qsize())
        await self._drain(queue, pending)

    async def _drain(self, queue: asyncio.Queue[TradeEvent], pending: TradeEvent | None = None) -> None:
        """Publish the interrupted event, then the queue, until drain_grace_sec runs out."""
        deadline = self._clock() + self.drain_grace_sec
        drained = 0
        abandoned = 0
        while pending is not None or not queue.empty():
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            from_queue = pending is None
            event = queue.get_nowait() if from_queue else pending
            pending = None
            try:
                await asyncio.wait_for(self.deliver(event), timeout=remaining)
                drained += 1
            except (asyncio.TimeoutError, PublishError) as e:
                abandoned += 1
                log.warning("publish_drain_interrupted", pair=event.pair, trade_id=event.trade_id, error=repr(e))
                break
            finally:
                if from_queue:
                    queue.task_done()
        if pending is not None:
            abandoned += 1
        while not queue.empty():
            queue.get_nowait()
            queue.task_done()
            abandoned += 1
        if abandoned:
            self.metrics.inc("events_abandoned", abandoned)
            log.warning("publish_drain_abandoned", abandoned=abandoned, drained=drained)
        log.info("publisher_stopped", drained=drained, last_published=self.last_published)
