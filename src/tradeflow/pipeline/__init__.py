"""Publisher, subscriber and the orchestrator that connects them through the broker."""

from tradeflow.pipeline.publisher import Publisher
from tradeflow.pipeline.subscriber import BrokerOffset, Subscriber

__all__ = ["BrokerOffset", "Publisher", "Subscriber"]
