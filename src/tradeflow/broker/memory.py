"""In-process broker with Kafka-like semantics: keyed partitions, consumer groups, committed offsets.

Used for local runs (`--broker memory`) and tests. Supports fault injection on
the producer and explicit rebalances, which reset each member's position to
the group's committed offset and therefore redeliver uncommitted records.
"""

from __future__ import annotations

import asyncio
import time
import zlib
from collections import deque

import structlog

from tradeflow.broker.base import BrokerRecord, PartitionsCallback, RecordMetadata, TopicPartition
from tradeflow.errors import BrokerError, OffsetCommitError, RecordRejectedError, TransientBrokerError

log = structlog.get_logger(__name__)


class InMemoryBroker:
    """Topics of N partitions, held in lists. One instance shared by producers and consumers."""

    def __init__(self, partitions: int = 1) -> None:
        if partitions < 1:
            raise ValueError("partitions must be >= 1")
        self.num_partitions = partitions
        self._topics: dict[str, list[list[BrokerRecord]]] = {}
        self._committed: dict[tuple[str, TopicPartition], int] = {}
        self._groups: dict[str, list[InMemoryConsumer]] = {}
        self._data_event = asyncio.Event()

    def partition_for(self, key: bytes) -> int:
        return zlib.crc32(key) % self.num_partitions

    def _partitions(self, topic: str) -> list[list[BrokerRecord]]:
        if topic not in self._topics:
            self._topics[topic] = [[] for _ in range(self.num_partitions)]
        return self._topics[topic]

    def append(self, topic: str, key: bytes, value: bytes) -> RecordMetadata:
        partition = self.partition_for(key)
        log_ = self._partitions(topic)[partition]
        record = BrokerRecord(
            topic=topic,
            partition=partition,
            offset=len(log_),
            key=key,
            value=value,
            timestamp=int(time.time() * 1000),
        )
        log_.append(record)
        event, self._data_event = self._data_event, asyncio.Event()
        event.set()
        return RecordMetadata(topic=topic, partition=partition, offset=record.offset)

    def records(self, topic: str, partition: int = 0) -> list[BrokerRecord]:
        return list(self._partitions(topic)[partition])

    def topic_partitions(self, topic: str) -> list[TopicPartition]:
        return [TopicPartition(topic, p) for p in range(len(self._partitions(topic)))]

    def end_offset(self, tp: TopicPartition) -> int:
        return len(self._partitions(tp.topic)[tp.partition])

    def committed(self, group_id: str, tp: TopicPartition) -> int | None:
        return self._committed.get((group_id, tp))

    def _commit(self, group_id: str, tp: TopicPartition, offset: int) -> None:
        self._committed[(group_id, tp)] = offset

    def producer(self) -> InMemoryProducer:
        return InMemoryProducer(self)

    def consumer(self, group_id: str) -> InMemoryConsumer:
        return InMemoryConsumer(self, group_id)

    async def rebalance(self, group_id: str) -> None:
        """Revoke everything from every member, then spread partitions round-robin and assign."""
        members = [m for m in self._groups.get(group_id, []) if m._topic is not None]
        for member in members:
            await member._revoke_all()
        if not members:
            return
        topic = members[0]._topic
        plan: dict[int, set[TopicPartition]] = {i: set() for i in range(len(members))}
        for i, tp in enumerate(self.topic_partitions(topic)):
            plan[i % len(members)].add(tp)
        for i, member in enumerate(members):
            await member._assign(plan[i])
        log.info("memory_rebalance", group_id=group_id, members=len(members))

    async def _join(self, member: InMemoryConsumer) -> None:
        self._groups.setdefault(member.group_id, []).append(member)
        await self.rebalance(member.group_id)

    async def _leave(self, member: InMemoryConsumer) -> None:
        group = self._groups.get(member.group_id, [])
        if member in group:
            group.remove(member)
        await member._revoke_all()
        await self.rebalance(member.group_id)

    async def wait_for_data(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._data_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass


class InMemoryProducer:
    """Producer over InMemoryBroker. `down` and `fail_next()` simulate broker trouble."""

    def __init__(self, broker: InMemoryBroker, *, max_record_bytes: int = 1_000_000) -> None:
        self.broker = broker
        self.max_record_bytes = max_record_bytes
        self.down = False
        self.sent = 0
        self._failures: deque[BrokerError] = deque()

    def fail_next(self, *errors: BrokerError) -> None:
        """Raise these errors, in order, from the next sends."""
        self._failures.extend(errors)

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    async def send(self, topic: str, key: bytes, value: bytes) -> RecordMetadata:
        await asyncio.sleep(0)
        if self.down:
            raise TransientBrokerError("broker unavailable")
        if self._failures:
            raise self._failures.popleft()
        if len(value) > self.max_record_bytes:
            raise RecordRejectedError(f"record of {len(value)} bytes exceeds {self.max_record_bytes}")
        self.sent += 1
        return self.broker.append(topic, key, value)


class InMemoryConsumer:
    """Consumer-group member over InMemoryBroker with manual commits."""

    def __init__(self, broker: InMemoryBroker, group_id: str) -> None:
        self.broker = broker
        self.group_id = group_id
        self._topic: str | None = None
        self._on_revoked: PartitionsCallback | None = None
        self._on_assigned: PartitionsCallback | None = None
        self._assignment: set[TopicPartition] = set()
        self._positions: dict[TopicPartition, int] = {}

    def subscribe(self, topic: str, on_revoked: PartitionsCallback, on_assigned: PartitionsCallback) -> None:
        self._topic = topic
        self._on_revoked = on_revoked
        self._on_assigned = on_assigned

    async def start(self) -> None:
        await self.broker._join(self)

    async def stop(self) -> None:
        await self.broker._leave(self)

    async def _revoke_all(self) -> None:
        revoked, self._assignment = self._assignment, set()
        self._positions.clear()
        if revoked and self._on_revoked is not None:
            await self._on_revoked(revoked)

    async def _assign(self, partitions: set[TopicPartition]) -> None:
        self._assignment = set(partitions)
        for tp in partitions:
            self._positions[tp] = self.broker.committed(self.group_id, tp) or 0
        if self._on_assigned is not None:
            await self._on_assigned(set(partitions))

    def _available(self, max_records: int) -> list[BrokerRecord]:
        out: list[BrokerRecord] = []
        for tp in sorted(self._assignment):
            pos = self._positions[tp]
            chunk = self.broker.records(tp.topic, tp.partition)[pos : pos + max_records - len(out)]
            if chunk:
                out.extend(chunk)
                self._positions[tp] = pos + len(chunk)
            if len(out) >= max_records:
                break
        return out

    async def getmany(self, timeout_ms: int, max_records: int) -> list[BrokerRecord]:
        records = self._available(max_records)
        if records:
            return records
        await self.broker.wait_for_data(timeout_ms / 1000.0)
        return self._available(max_records)

    async def commit(self, offsets: dict[TopicPartition, int]) -> None:
        await asyncio.sleep(0)
        for tp in offsets:
            if tp not in self._assignment:
                raise OffsetCommitError(f"{tp} is not assigned to this member")
        for tp, offset in offsets.items():
            self.broker._commit(self.group_id, tp, offset)

    async def committed(self, tp: TopicPartition) -> int | None:
        return self.broker.committed(self.group_id, tp)

    def assignment(self) -> set[TopicPartition]:
        return set(self._assignment)

    def highwater(self, tp: TopicPartition) -> int | None:
        return self.broker.end_offset(tp)
