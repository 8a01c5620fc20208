"""Prometheus metrics for the query engine."""

from __future__ import annotations

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    start_http_server,
    REGISTRY,
    CollectorRegistry,
)


class MetricsRegistry:
    """Registry of all query engine metrics."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        """Initialize metrics registry."""
        self._registry = registry or REGISTRY

        # Query metrics
        self.queries_total = Counter(
            "linq_queries_total",
            "Total number of query executions",
            ["backend", "status"],  # status: completed, failed, cancelled, closed
            registry=self._registry,
        )

        self.query_latency_seconds = Histogram(
            "linq_query_latency_seconds",
            "Time from first pull to the end of iteration",
            ["backend"],
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
            registry=self._registry,
        )

        self.rows_returned_total = Counter(
            "linq_rows_returned_total",
            "Total result rows yielded to callers",
            ["backend"],
            registry=self._registry,
        )

        # Planning metrics
        self.plan_validation_errors_total = Counter(
            "linq_plan_validation_errors_total",
            "Total defects reported by plan validation",
            registry=self._registry,
        )

        self.adapter_fallbacks_total = Counter(
            "linq_adapter_fallbacks_total",
            "Plans the target adapter declined and that ran in-process instead",
            registry=self._registry,
        )

        # Connection metrics
        self.open_connections = Gauge(
            "linq_open_connections",
            "Data source connections currently held by result iterators",
            registry=self._registry,
        )

        self.info = Info(
            "linq_engine",
            "Query engine information",
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry


# Global metrics registry
_metrics: MetricsRegistry | None = None


def setup_metrics(port: int = 8001, registry: CollectorRegistry | None = None) -> MetricsRegistry:
    """
    Set up Prometheus metrics server.

    Args:
        port: Port for the metrics HTTP server
        registry: Optional custom registry

    Returns:
        The metrics registry
    """
    global _metrics
    _metrics = MetricsRegistry(registry)

    from linq_engine import __version__
    _metrics.info.info({
        "version": __version__,
    })

    start_http_server(port, registry=registry or REGISTRY)

    return _metrics


def get_metrics() -> MetricsRegistry:
    """Get the global metrics registry."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsRegistry()
    return _metrics
