"""Broker protocol - the narrow interface the publisher and subscriber depend on."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, NamedTuple, Protocol


class TopicPartition(NamedTuple):
    topic: str
    partition: int


@dataclass(frozen=True)
class RecordMetadata:
    """Where a produced record landed."""

    topic: str
    partition: int
    offset: int


@dataclass(frozen=True)
class BrokerRecord:
    """One consumed record."""

    topic: str
    partition: int
    offset: int
    key: bytes | None
    value: bytes
    timestamp: int | None = None  # ms epoch, broker/producer time

    @property
    def tp(self) -> TopicPartition:
        return TopicPartition(self.topic, self.partition)


PartitionsCallback = Callable[[set[TopicPartition]], Awaitable[None]]


class BrokerProducer(Protocol):
    """Sends keyed records; same key -> same partition."""

    async def start(self) -> None: ...
    async def stop(self) -> None: ...

    async def send(self, topic: str, key: bytes, value: bytes) -> RecordMetadata:
        """Send and wait for the broker acknowledgement.

        Raises TransientBrokerError, RecordRejectedError or BrokerAuthError.
        """
        ...


class BrokerConsumer(Protocol):
    """Consumer-group member with manual offset commits."""

    async def start(self) -> None: ...
    async def stop(self) -> None: ...

    def subscribe(
        self,
        topic: str,
        on_revoked: PartitionsCallback,
        on_assigned: PartitionsCallback,
    ) -> None: ...

    async def getmany(self, timeout_ms: int, max_records: int) -> list[BrokerRecord]:
        """Fetch up to max_records, ordered by partition then offset. Empty list on timeout."""
        ...

    async def commit(self, offsets: dict[TopicPartition, int]) -> None:
        """Commit next-offset-to-read per partition."""
        ...

    async def committed(self, tp: TopicPartition) -> int | None: ...

    def assignment(self) -> set[TopicPartition]: ...

    def highwater(self, tp: TopicPartition) -> int | None: ...
