"""Broker interface and adapters (Kafka via aiokafka, in-memory)."""

from tradeflow.broker.base import (
    BrokerConsumer,
    BrokerProducer,
    BrokerRecord,
    RecordMetadata,
    TopicPartition,
)

__all__ = [
    "BrokerConsumer",
    "BrokerProducer",
    "BrokerRecord",
    "RecordMetadata",
    "TopicPartition",
]
