"""Binance spot trade stream: frame parsing, subscription messages, trade decoding."""

from __future__ import annotations

import json
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import ValidationError

from tradeflow.models.trade import Side, TradeEvent, pair_to_symbol


@dataclass(frozen=True)
class DecodeFailure:
    """A frame or message that could not become a TradeEvent."""

    reason: str
    payload: Any = None


@dataclass(frozen=True)
class ControlMessage:
    """Subscription ack or error reply; not market data."""

    request_id: int | None
    error: str | None = None


def stream_name(pair: str) -> str:
    """'BTC-USDT' -> 'btcusdt@trade'."""
    return f"{pair_to_symbol(pair).lower()}@trade"


def subscribe_message(pair: str, request_id: int) -> str:
    return json.dumps({"method": "SUBSCRIBE", "params": [stream_name(pair)], "id": request_id})


def parse_frame(raw: str | bytes) -> dict[str, Any] | None:
    """Decode one text frame to a JSON object. None means the framing is broken."""
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return None
    try:
        msg = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return msg if isinstance(msg, dict) else None


def parse_control(payload: dict[str, Any]) -> ControlMessage | None:
    """Recognize {"result": null, "id": 1}, {"error": {...}, "id": 1} and {"code": 2, "msg": "..."}."""
    if "e" in payload:
        return None
    if "error" in payload:
        err = payload.get("error")
        if isinstance(err, dict):
            err = f"{err.get('code')}: {err.get('msg')}"
        return ControlMessage(request_id=payload.get("id"), error=str(err))
    if "code" in payload and "msg" in payload:
        return ControlMessage(request_id=payload.get("id"), error=f"{payload['code']}: {payload['msg']}")
    if "result" in payload and "id" in payload:
        return ControlMessage(request_id=payload.get("id"))
    return None


def _exact_decimal(value: Any) -> Decimal | None:
    """Decimal from a string or int. Floats are refused: they have already lost precision."""
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        return None
    try:
        d = Decimal(value)
    except (InvalidOperation, ValueError):
        return None
    return d if d.is_finite() else None


def _int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None


def decode_trade(payload: dict[str, Any], pair: str, ingest_time: int) -> TradeEvent | DecodeFailure:
    """Validate a Binance 'trade' message and build the TradeEvent, or say why not.

    Fields: e=event type, E=event time, s=symbol, t=trade id, p=price,
    q=quantity, T=trade time, m=buyer is maker.
    """
    if payload.get("e") != "trade":
        return DecodeFailure(f"unexpected event type {payload.get('e')!r}", payload)
    symbol = payload.get("s")
    if symbol != pair_to_symbol(pair):
        return DecodeFailure(f"symbol {symbol!r} does not match pair {pair}", payload)
    trade_id = _int(payload.get("t"))
    if trade_id is None:
        return DecodeFailure("missing or non-integer trade id 't'", payload)
    price = _exact_decimal(payload.get("p"))
    if price is None:
        return DecodeFailure("price 'p' must be a decimal string", payload)
    quantity = _exact_decimal(payload.get("q"))
    if quantity is None:
        return DecodeFailure("quantity 'q' must be a decimal string", payload)
    event_time = _int(payload.get("E"))
    if event_time is None:
        return DecodeFailure("missing or non-integer event time 'E'", payload)
    trade_time = _int(payload.get("T")) if payload.get("T") is not None else None
    maker = payload.get("m")
    if not isinstance(maker, bool):
        return DecodeFailure("maker flag 'm' must be a boolean", payload)
    try:
        return TradeEvent(
            pair=pair,
            trade_id=trade_id,
            price=price,
            quantity=quantity,
            side=Side.from_maker_flag(maker),
            event_time=event_time,
            trade_time=trade_time,
            ingest_time=ingest_time,
        )
    except ValidationError as e:
        return DecodeFailure(f"invalid trade: {e.errors()[0].get('msg')}", payload)
