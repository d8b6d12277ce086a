"""TradeEvent <-> broker record payload (JSON, decimals as strings)."""

from __future__ import annotations

from pydantic import ValidationError

from tradeflow.models.trade import TradeEvent


def encode_key(event: TradeEvent) -> bytes:
    """Partition key: every event of a pair lands in the same partition."""
    return event.pair.encode("utf-8")


def encode_event(event: TradeEvent) -> bytes:
    return event.model_dump_json().encode("utf-8")


def decode_event(value: bytes) -> TradeEvent | None:
    """None for payloads that are not a valid TradeEvent (poison records)."""
    try:
        return TradeEvent.model_validate_json(value)
    except ValidationError:
        return None
