"""Canonical schema (Pydantic) - TradeEvent."""

from tradeflow.models.trade import Side, TradeEvent, normalize_pair, pair_to_symbol

__all__ = [
    "Side",
    "TradeEvent",
    "normalize_pair",
    "pair_to_symbol",
]
