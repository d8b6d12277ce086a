"""Pydantic schemas for API responses and OpenAPI docs."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


# --- Health ---
class HealthResponse(BaseModel):
    status: str = "ok"
    pipeline_running: bool = False
    feed_state: str | None = Field(None, description="Feed connector state when the pipeline runs in-process")
    last_trade_id: int | None = None
    failure: str | None = None


# --- Error (consistent shape for 4xx/5xx) ---
class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Human-readable message")
    code: str | None = Field(None, description="Machine-readable code, e.g. no_trades, storage_unavailable")


# --- Metrics ---
class MetricsResponse(BaseModel):
    uptime_sec: float
    ingest_rate_per_sec: float
    counters: dict[str, int]
    gauges: dict[str, Any]
    latency_ms: dict[str, dict[str, float | int | None]]


# --- Trades ---
class PairStats(BaseModel):
    pair: str
    count: int
    min_trade_id: int
    max_trade_id: int
    missing: int = Field(0, description="Trade ids absent between min and max")


class TradeStatsResponse(BaseModel):
    total_trades: int
    min_event_time: int | None
    max_event_time: int | None
    last_written_at: int | None
    by_pair: list[PairStats]


class TradeItem(BaseModel):
    pair: str
    trade_id: int
    price: str
    quantity: str
    side: str
    event_time: int
    trade_time: int | None = None
    ingest_time: int
    broker_partition: int | None = None
    broker_offset: int | None = None
    written_at: int
