"""FastAPI observability surface: health, pipeline metrics and stored trades."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from decimal import Decimal
from pathlib import Path
from typing import Any

import duckdb
import structlog
from fastapi import FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tradeflow.api.schemas import (
    ErrorResponse,
    HealthResponse,
    MetricsResponse,
    TradeItem,
    TradeStatsResponse,
)
from tradeflow.config import get_settings
from tradeflow.metrics.pipeline import PipelineMetrics
from tradeflow.storage.db import get_connection, init_schema
from tradeflow.storage.trades import recent_trades, trade_stats

log = structlog.get_logger(__name__)

# Set by run_api() so lifespan can start the pipeline in the same process.
_run_with_pipeline = False
_config_profile: str | None = None

# Shared with an in-process pipeline; standalone servers report an idle snapshot.
_metrics = PipelineMetrics()
_manager: Any = None


def _get_conn():
    settings = get_settings(_config_profile)
    # DuckDB requires one configuration for all connections to a file; with the pipeline in-process the sink writes.
    return get_connection(settings.db_path, read_only=not _run_with_pipeline)


def _store_exists(db_path) -> bool:
    return Path(db_path).exists()


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _manager
    settings = get_settings(_config_profile)
    # A standalone server only reads; a consumer in another process may hold the write lock.
    if _run_with_pipeline or not _store_exists(settings.db_path):
        conn = get_connection(settings.db_path, read_only=False)
        try:
            init_schema(conn)
        finally:
            conn.close()

    pipeline_task = None
    pipeline_stop = None
    if _run_with_pipeline:
        from tradeflow.pipeline.manager import PipelineManager

        _manager = PipelineManager(settings.validate(), metrics=_metrics)
        pipeline_stop = asyncio.Event()
        pipeline_task = asyncio.create_task(_manager.run(stop_event=pipeline_stop))

    yield

    if pipeline_task is not None and pipeline_stop is not None:
        pipeline_stop.set()
        try:
            await pipeline_task
        except Exception as e:
            log.error("api_pipeline_failed", error=str(e))
        _manager.close()


app = FastAPI(title="tradeflow API", version="0.1.0", lifespan=lifespan)
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])


def _error_json(code: str, message: str, status_code: int = 404) -> JSONResponse:
    """Return consistent error JSON: { detail, code }."""
    return JSONResponse(
        status_code=status_code,
        content={"detail": message, "code": code},
    )


def _trade_item(row: dict[str, Any]) -> TradeItem:
    # Normalize DECIMAL(38, 18) values so "30000.500000000000000000" reads as "30000.5".
    def fmt(d: Decimal) -> str:
        return format(d.normalize(), "f")

    return TradeItem(**{**row, "price": fmt(row["price"]), "quantity": fmt(row["quantity"])})


@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    if _manager is None:
        return HealthResponse(status="ok")
    status = _manager.get_status()
    return HealthResponse(
        status="failed" if status["failure"] else "ok",
        pipeline_running=status["running"],
        feed_state=status["feed_state"],
        last_trade_id=status["last_trade_id"],
        failure=status["failure"],
    )


@app.get("/metrics", response_model=MetricsResponse)
def metrics() -> MetricsResponse:
    return MetricsResponse(**_metrics.snapshot())


@app.get(
    "/trades/stats",
    response_model=TradeStatsResponse,
    responses={503: {"description": "Store not readable", "model": ErrorResponse}},
)
def trades_stats():
    try:
        conn = _get_conn()
    except duckdb.Error as e:
        return _error_json("storage_unavailable", str(e), status_code=503)
    try:
        return TradeStatsResponse(**trade_stats(conn))
    except duckdb.Error as e:
        return _error_json("storage_unavailable", str(e), status_code=503)
    finally:
        conn.close()


@app.get(
    "/trades/recent",
    response_model=list[TradeItem],
    responses={503: {"description": "Store not readable", "model": ErrorResponse}},
)
def trades_recent(
    limit: int = Query(20, ge=1, le=500),
    pair: str | None = Query(None, description="Filter by pair, e.g. BTC-USDT"),
):
    """Latest stored trades, newest first."""
    try:
        conn = _get_conn()
    except duckdb.Error as e:
        return _error_json("storage_unavailable", str(e), status_code=503)
    try:
        return [_trade_item(r) for r in recent_trades(conn, limit=limit, pair=pair)]
    except duckdb.Error as e:
        return _error_json("storage_unavailable", str(e), status_code=503)
    finally:
        conn.close()


def run_api(
    host: str = "127.0.0.1",
    port: int = 8000,
    with_pipeline: bool = False,
    profile: str | None = None,
) -> None:
    global _run_with_pipeline, _config_profile
    _run_with_pipeline = with_pipeline
    _config_profile = profile
    import uvicorn

    uvicorn.run("tradeflow.api.main:app", host=host, port=port, reload=False)
