"""Pipeline observability."""

from tradeflow.metrics.pipeline import PipelineMetrics

__all__ = ["PipelineMetrics"]
