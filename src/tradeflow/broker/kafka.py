"""Kafka broker adapters on aiokafka."""

from __future__ import annotations

import structlog
from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.abc import ConsumerRebalanceListener
from aiokafka.errors import (
    ClusterAuthorizationFailedError,
    CommitFailedError,
    GroupAuthorizationFailedError,
    KafkaError,
    MessageSizeTooLargeError,
    TopicAuthorizationFailedError,
)
from aiokafka.structs import TopicPartition as KafkaTopicPartition

from tradeflow.broker.base import BrokerRecord, PartitionsCallback, RecordMetadata, TopicPartition
from tradeflow.errors import (
    BrokerAuthError,
    BrokerError,
    OffsetCommitError,
    RecordRejectedError,
    TransientBrokerError,
)

log = structlog.get_logger(__name__)

_AUTH_ERRORS = (
    TopicAuthorizationFailedError,
    ClusterAuthorizationFailedError,
    GroupAuthorizationFailedError,
)


def map_kafka_error(exc: KafkaError) -> BrokerError:
    """Classify an aiokafka error. Unknown errors are treated as transient so they hit the retry bound."""
    if isinstance(exc, _AUTH_ERRORS):
        return BrokerAuthError(f"{type(exc).__name__}: {exc}")
    if isinstance(exc, MessageSizeTooLargeError):
        return RecordRejectedError(f"{type(exc).__name__}: {exc}")
    if isinstance(exc, CommitFailedError):
        return OffsetCommitError(f"{type(exc).__name__}: {exc}")
    return TransientBrokerError(f"{type(exc).__name__}: {exc}")


def _to_kafka(tp: TopicPartition) -> KafkaTopicPartition:
    return KafkaTopicPartition(tp.topic, tp.partition)


def _from_kafka(tp: KafkaTopicPartition) -> TopicPartition:
    return TopicPartition(tp.topic, tp.partition)


class KafkaProducerClient:
    """Idempotent producer (acks=all): broker-side retries do not duplicate or reorder."""

    def __init__(
        self,
        bootstrap_servers: str,
        *,
        request_timeout_ms: int = 5000,
        client_id: str = "tradeflow-publisher",
        producer: AIOKafkaProducer | None = None,
    ) -> None:
        self.bootstrap_servers = bootstrap_servers
        self._producer = producer or AIOKafkaProducer(
            bootstrap_servers=bootstrap_servers,
            client_id=client_id,
            acks="all",
            enable_idempotence=True,
            request_timeout_ms=request_timeout_ms,
        )

    async def start(self) -> None:
        try:
            await self._producer.start()
        except KafkaError as e:
            raise map_kafka_error(e) from e
        log.info("kafka_producer_started", bootstrap_servers=self.bootstrap_servers)

    async def stop(self) -> None:
        await self._producer.stop()

    async def send(self, topic: str, key: bytes, value: bytes) -> RecordMetadata:
        try:
            md = await self._producer.send_and_wait(topic, value=value, key=key)
        except KafkaError as e:
            raise map_kafka_error(e) from e
        return RecordMetadata(topic=md.topic, partition=md.partition, offset=md.offset)


class _Listener(ConsumerRebalanceListener):
    def __init__(self, on_revoked: PartitionsCallback, on_assigned: PartitionsCallback) -> None:
        self._on_revoked = on_revoked
        self._on_assigned = on_assigned

    async def on_partitions_revoked(self, revoked):
        await self._on_revoked({_from_kafka(tp) for tp in revoked})

    async def on_partitions_assigned(self, assigned):
        await self._on_assigned({_from_kafka(tp) for tp in assigned})


class KafkaConsumerClient:
    """Consumer-group member with auto-commit off; the subscriber commits after durable writes."""

    def __init__(
        self,
        bootstrap_servers: str,
        group_id: str,
        *,
        session_timeout_ms: int = 6000,
        auto_offset_reset: str = "earliest",
        client_id: str = "tradeflow-subscriber",
        consumer: AIOKafkaConsumer | None = None,
    ) -> None:
        self.bootstrap_servers = bootstrap_servers
        self.group_id = group_id
        self._consumer = consumer or AIOKafkaConsumer(
            bootstrap_servers=bootstrap_servers,
            group_id=group_id,
            client_id=client_id,
            enable_auto_commit=False,
            auto_offset_reset=auto_offset_reset,
            session_timeout_ms=session_timeout_ms,
        )

    def subscribe(self, topic: str, on_revoked: PartitionsCallback, on_assigned: PartitionsCallback) -> None:
        self._consumer.subscribe(topics=[topic], listener=_Listener(on_revoked, on_assigned))

    async def start(self) -> None:
        try:
            await self._consumer.start()
        except KafkaError as e:
            raise map_kafka_error(e) from e
        log.info("kafka_consumer_started", bootstrap_servers=self.bootstrap_servers, group_id=self.group_id)

    async def stop(self) -> None:
        await self._consumer.stop()

    async def getmany(self, timeout_ms: int, max_records: int) -> list[BrokerRecord]:
        try:
            batches = await self._consumer.getmany(timeout_ms=timeout_ms, max_records=max_records)
        except KafkaError as e:
            raise map_kafka_error(e) from e
        records: list[BrokerRecord] = []
        for tp in sorted(batches, key=lambda t: (t.topic, t.partition)):
            for msg in batches[tp]:
                records.append(
                    BrokerRecord(
                        topic=msg.topic,
                        partition=msg.partition,
                        offset=msg.offset,
                        key=msg.key,
                        value=msg.value,
                        timestamp=msg.timestamp,
                    )
                )
        return records

    async def commit(self, offsets: dict[TopicPartition, int]) -> None:
        try:
            await self._consumer.commit({_to_kafka(tp): off for tp, off in offsets.items()})
        except KafkaError as e:
            raise map_kafka_error(e) from e

    async def committed(self, tp: TopicPartition) -> int | None:
        try:
            return await self._consumer.committed(_to_kafka(tp))
        except KafkaError as e:
            raise map_kafka_error(e) from e

    def assignment(self) -> set[TopicPartition]:
        return {_from_kafka(tp) for tp in self._consumer.assignment()}

    def highwater(self, tp: TopicPartition) -> int | None:
        return self._consumer.highwater(_to_kafka(tp))
