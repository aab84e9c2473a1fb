"""
Shared metrics configuration for the 254Carbon Authorization Service.
"""

from prometheus_client import Counter, Histogram, Info, CollectorRegistry
from typing import Dict, Any, Optional


class MetricsCollector:
    """Centralized metrics collector for services."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        # Each collector owns its registry so several engines can coexist in one process
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        # Service info
        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # Error metrics
        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        self._setup_authorization_metrics()

    def _setup_authorization_metrics(self):
        """Set up authorization-specific metrics."""
        self._metrics["authorization_decisions_total"] = Counter(
            "authorization_decisions_total",
            "Total authorization decisions",
            ["decision", "source"],
            registry=self.registry
        )

        self._metrics["authorization_duration_seconds"] = Histogram(
            "authorization_duration_seconds",
            "Authorization decision duration in seconds",
            registry=self.registry
        )

        self._metrics["permission_cache_total"] = Counter(
            "permission_cache_total",
            "Effective permission cache lookups",
            ["result"],
            registry=self.registry
        )

        self._metrics["audit_events_total"] = Counter(
            "audit_events_total",
            "Total audit events emitted",
            ["event_type"],
            registry=self.registry
        )

        self._metrics["audit_failures_total"] = Counter(
            "audit_failures_total",
            "Audit sink deliveries that raised",
            registry=self.registry
        )

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def record_decision(self, allowed: bool, source: str, duration_seconds: float):
        """Record an authorization decision and its latency."""
        decision = "allowed" if allowed else "denied"
        self._metrics["authorization_decisions_total"].labels(decision=decision, source=source).inc()
        self._metrics["authorization_duration_seconds"].observe(duration_seconds)

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            metric = self._metrics[metric_name]
            (metric.labels(**labels) if labels else metric).inc()

    def sample(self, name: str, **labels) -> float:
        """Read back a sample value from the collector's registry."""
        value = self.registry.get_sample_value(name, labels or None)
        return value or 0.0
