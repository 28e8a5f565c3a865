"""
Shared metrics configuration for the ChatRoom services.
"""

from typing import Dict, Any, Optional

from prometheus_client import Counter, Histogram, Info, CollectorRegistry


class MetricsCollector:
    """Centralized metrics collector for services.

    Each collector owns its registry unless one is supplied, so several
    service instances (e.g. in tests) never collide on metric names.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        if self.service_name == "stickers":
            self._setup_sticker_metrics()

    def _setup_sticker_metrics(self):
        """Set up sticker-entitlement metrics."""
        self._metrics["sticker_cache_reads_total"] = Counter(
            "sticker_cache_reads_total",
            "Sticker entitlement cache reads",
            ["result"],
            registry=self.registry
        )

        self._metrics["background_tasks_total"] = Counter(
            "background_tasks_total",
            "Detached background tasks by outcome",
            ["outcome"],
            registry=self.registry
        )

        self._metrics["sticker_cache_write_failures_total"] = Counter(
            "sticker_cache_write_failures_total",
            "Swallowed sticker cache write failures",
            ["operation"],
            registry=self.registry
        )

        self._metrics["sticker_purchases_total"] = Counter(
            "sticker_purchases_total",
            "Sticker set purchase attempts",
            ["outcome"],
            registry=self.registry
        )

        self._metrics["wallet_charges_total"] = Counter(
            "wallet_charges_total",
            "Wallet charge attempts",
            ["outcome"],
            registry=self.registry
        )

        self._metrics["stickers_stripped_total"] = Counter(
            "stickers_stripped_total",
            "Unowned sticker references removed from messages",
            registry=self.registry
        )

        self._metrics["entitlement_read_duration_seconds"] = Histogram(
            "entitlement_read_duration_seconds",
            "Entitlement read path duration in seconds",
            ["source"],
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def increment_counter(self, metric_name: str, amount: float = 1, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            metric = self._metrics[metric_name]
            if labels:
                metric = metric.labels(**labels)
            metric.inc(amount)

    def get_sample_value(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Read the current value of a sample from this collector's registry."""
        return self.registry.get_sample_value(name, labels or {})


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
