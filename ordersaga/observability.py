"""Observability sink shared by the orchestrator and the services.

Business code never talks to a logger or a metrics client directly. It
reports through an ``ObservabilitySink``:

- ``event(name, level, **attributes)`` for structured log records and span
  attributes (order id, amounts, item counts, status, durations).
- ``metric(name, value, **labels)`` for counter increments and histogram
  observations.

``TelemetrySink`` forwards events to a JSON logger and samples to a
``PrometheusMetrics`` collector. ``NullSink`` drops everything.
"""

import logging
from typing import Any, Optional, Protocol

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, Histogram, generate_latest


class ObservabilitySink(Protocol):
    """Port for telemetry emitted by business code."""

    def event(self, name: str, level: int = logging.INFO, **attributes: Any) -> None: ...

    def metric(self, name: str, value: float = 1.0, **labels: Any) -> None: ...


class NullSink:
    """Sink that discards events and samples."""

    def event(self, name: str, level: int = logging.INFO, **attributes: Any) -> None:
        return None

    def metric(self, name: str, value: float = 1.0, **labels: Any) -> None:
        return None


def amount_range(amount: float) -> str:
    """Bucket a payment amount into the ``amount_range`` metric label."""
    if amount < 50:
        return "small"
    if amount < 200:
        return "medium"
    return "large"


class PrometheusMetrics:
    """Prometheus collectors for checkout, payments and inventory.

    Each instance owns its own ``CollectorRegistry`` so several apps (or
    tests) can live in one process without duplicate registration errors.

    Exposes:
        - orders_total{status,payment_method}: finished sagas
        - checkout_duration_seconds{status}: saga durations
        - payments_total{status,method,amount_range}: authorization outcomes
        - inventory_available{product_id}: units offerable per product
        - compensations_total{step,outcome}: compensating actions
        - errors_total{type,service}: failures by kind
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self._counters = {
            "orders_total": Counter(
                "orders_total", "Total number of orders placed", ["status", "payment_method"], registry=self.registry
            ),
            "payments_total": Counter(
                "payments_total",
                "Total number of payment attempts",
                ["status", "method", "amount_range"],
                registry=self.registry,
            ),
            "compensations_total": Counter(
                "compensations_total", "Compensating actions by step", ["step", "outcome"], registry=self.registry
            ),
            "errors_total": Counter(
                "errors_total", "Total number of errors by type", ["type", "service"], registry=self.registry
            ),
        }
        self._histograms = {
            "checkout_duration_seconds": Histogram(
                "checkout_duration_seconds",
                "Duration of the checkout saga in seconds",
                ["status"],
                buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
                registry=self.registry,
            ),
        }
        self._gauges = {
            "inventory_available": Gauge(
                "inventory_available", "Units available for new orders", ["product_id"], registry=self.registry
            ),
        }

    def record(self, name: str, value: float, labels: dict[str, Any]) -> None:
        """Apply one sample. Unknown metric names are ignored."""
        str_labels = {k: str(v) for k, v in labels.items()}
        if name in self._counters:
            self._counters[name].labels(**str_labels).inc(value)
        elif name in self._histograms:
            self._histograms[name].labels(**str_labels).observe(value)
        elif name in self._gauges:
            self._gauges[name].labels(**str_labels).set(value)

    def sample(self, name: str, labels: dict[str, Any]) -> Optional[float]:
        """Current value of a counter or gauge sample (handy in tests)."""
        return self.registry.get_sample_value(name, {k: str(v) for k, v in labels.items()})

    def render(self) -> tuple[bytes, str]:
        """Prometheus text exposition and its content type."""
        return generate_latest(self.registry), CONTENT_TYPE_LATEST


class TelemetrySink:
    """Sink writing events to a logger and samples to Prometheus collectors."""

    def __init__(self, logger: logging.Logger, metrics: Optional[PrometheusMetrics] = None):
        self.logger = logger
        self.metrics = metrics

    def event(self, name: str, level: int = logging.INFO, **attributes: Any) -> None:
        self.logger.log(level, name, extra=attributes)

    def metric(self, name: str, value: float = 1.0, **labels: Any) -> None:
        if self.metrics is None:
            return
        try:
            self.metrics.record(name, value, labels)
        except ValueError:
            # label mismatch; telemetry must never break a saga
            self.logger.warning("metric rejected", extra={"metric": name, "labels": labels})
