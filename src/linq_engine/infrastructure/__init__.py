"""Infrastructure layer - cross-cutting concerns."""

from linq_engine.infrastructure.config import Config, get_config
from linq_engine.infrastructure.logging import setup_logging, get_logger, logged_query
from linq_engine.infrastructure.metrics import setup_metrics, get_metrics, MetricsRegistry
from linq_engine.infrastructure.tracing import setup_tracing, get_tracer, trace_span

__all__ = [
    "Config",
    "get_config",
    "setup_logging",
    "get_logger",
    "logged_query",
    "setup_metrics",
    "get_metrics",
    "MetricsRegistry",
    "setup_tracing",
    "get_tracer",
    "trace_span",
]
