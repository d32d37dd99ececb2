"""
Observability module: Metrics and structured logging.
"""

from reliastore.observability.metrics import (
    MetricsCollector,
    EngineMetrics,
    Counter,
    Gauge,
    Histogram,
)
from reliastore.observability.logging import (
    StructuredLogger,
    JsonFormatter,
    LogLevel,
    setup_logging,
)

__all__ = [
    "MetricsCollector",
    "EngineMetrics",
    "Counter",
    "Gauge",
    "Histogram",
    "StructuredLogger",
    "JsonFormatter",
    "LogLevel",
    "setup_logging",
]
