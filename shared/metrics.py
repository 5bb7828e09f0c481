"""
Prometheus metrics for the cached requestor.
"""

import time
from contextlib import contextmanager
from typing import Dict, Any, Optional

from prometheus_client import Counter, Histogram, CollectorRegistry, start_http_server


class MetricsCollector:
    """Metrics collector for one requestor instance.

    Each collector owns its own registry unless one is passed in, so several
    requestor instances (and test cases) can coexist in a process.
    """

    def __init__(self, service_name: str = "requestor", registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up pipeline metrics."""
        self._metrics["requests_total"] = Counter(
            "requestor_requests_total",
            "Total outbound requests received by the pipeline",
            ["method"],
            registry=self.registry
        )

        self._metrics["request_duration_seconds"] = Histogram(
            "requestor_request_duration_seconds",
            "Outbound request pipeline duration in seconds",
            ["method"],
            registry=self.registry
        )

        self._metrics["cache_hits_total"] = Counter(
            "requestor_cache_hits_total",
            "Total responses served from cache",
            registry=self.registry
        )

        self._metrics["cache_misses_total"] = Counter(
            "requestor_cache_misses_total",
            "Total cache lookups that missed",
            registry=self.registry
        )

        self._metrics["rate_limited_total"] = Counter(
            "requestor_rate_limited_total",
            "Total requests rejected by a host bucket",
            ["host"],
            registry=self.registry
        )

        self._metrics["lock_waits_total"] = Counter(
            "requestor_lock_waits_total",
            "Total lock waits by outcome",
            ["outcome"],
            registry=self.registry
        )

        self._metrics["upstream_errors_total"] = Counter(
            "requestor_upstream_errors_total",
            "Total transport errors",
            registry=self.registry
        )

    def get_value(self, sample_name: str, **labels) -> float:
        """Read a sample value back from the registry."""
        value = self.registry.get_sample_value(sample_name, labels or None)
        return value or 0.0

    def start_metrics_server(self, port: int = 9090):
        """Start the Prometheus metrics server."""
        start_http_server(port, registry=self.registry)

    @contextmanager
    def time_operation(self, operation_name: str, **labels):
        """Context manager to time an operation."""
        start_time = time.time()
        try:
            yield
        finally:
            duration = time.time() - start_time
            if operation_name in self._metrics:
                self._metrics[operation_name].labels(**labels).observe(duration)

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        if metric_name not in self._metrics:
            return
        metric = self._metrics[metric_name]
        if labels:
            metric = metric.labels(**labels)
        metric.inc()
