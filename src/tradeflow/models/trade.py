"""TradeEvent - canonical trade flowing through the pipeline."""

from __future__ import annotations

import re
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

_PAIR_SPLIT = re.compile(r"[-/_:]")

# Bounds of the DECIMAL(38, 18) price and quantity columns: at most 20 integer digits, 18 fractional.
DECIMAL_MAX_DIGITS = 38
DECIMAL_PLACES = 18


class Side(str, Enum):
    """Which side of the trade was the resting (maker) order."""

    BUYER_MAKER = "buyer_maker"
    SELLER_MAKER = "seller_maker"

    @classmethod
    def from_maker_flag(cls, buyer_is_maker: bool) -> Side:
        return cls.BUYER_MAKER if buyer_is_maker else cls.SELLER_MAKER


def normalize_pair(pair: str) -> str:
    """'btc/usdt', 'BTC_USDT', 'btc-usdt' -> 'BTC-USDT'."""
    parts = [p for p in _PAIR_SPLIT.split((pair or "").strip().upper()) if p]
    if len(parts) != 2:
        raise ValueError(f"pair must look like BASE-QUOTE, got {pair!r}")
    return f"{parts[0]}-{parts[1]}"


def pair_to_symbol(pair: str) -> str:
    """'BTC-USDT' -> 'BTCUSDT' (exchange symbol)."""
    return normalize_pair(pair).replace("-", "")


class TradeEvent(BaseModel):
    """Executed trade, immutable once built by the feed connector."""

    model_config = ConfigDict(frozen=True)

    pair: str = Field(..., pattern=r"^[A-Z0-9]+-[A-Z0-9]+$")
    trade_id: int = Field(..., ge=0)
    price: Decimal = Field(..., gt=0, max_digits=DECIMAL_MAX_DIGITS, decimal_places=DECIMAL_PLACES)
    quantity: Decimal = Field(..., gt=0, max_digits=DECIMAL_MAX_DIGITS, decimal_places=DECIMAL_PLACES)
    side: Side
    event_time: int = Field(..., ge=0)  # ms epoch, feed clock
    trade_time: int | None = Field(None, ge=0)  # ms epoch, feed clock
    ingest_time: int = Field(..., ge=0)  # ms epoch, local clock

    @property
    def key(self) -> tuple[str, int]:
        """Idempotency key."""
        return (self.pair, self.trade_id)

    @property
    def symbol(self) -> str:
        return self.pair.replace("-", "")
