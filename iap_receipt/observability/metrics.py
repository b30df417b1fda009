"""
Metrics Collection with Prometheus.

Exposes receipt validation and entitlement metrics for monitoring.
"""

import time
from enum import Enum
from typing import Callable

from prometheus_client import Counter, Histogram, Info

from iap_receipt.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    OUTCOME = "outcome"
    CHANGED = "changed"


class ReceiptMetrics:
    """
    Centralized metrics for the receipt verifier.

    Minimum viable metrics covering:
    - Validation runs (rate, duration, outcome by error kind)
    - Entitlement reconciliations (rate, changed/unchanged)
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "iap_receipt_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.version,
                "service_name": settings.service_name,
                "environment": settings.environment,
            }
        )

        # ====================================================================
        # Validation Metrics
        # ====================================================================
        self.validations_total = Counter(
            "iap_receipt_validations_total",
            "Total receipt validation runs",
            [MetricLabels.OUTCOME.value],
        )

        self.validation_duration_seconds = Histogram(
            "iap_receipt_validation_duration_seconds",
            "Receipt validation duration in seconds",
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
        )

        # ====================================================================
        # Entitlement Metrics
        # ====================================================================
        self.reconciliations_total = Counter(
            "iap_entitlement_reconciliations_total",
            "Total entitlement reconciliations",
            [MetricLabels.CHANGED.value],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_validation(self, outcome: str, duration: float) -> None:
        """Record a validation run; outcome is "success" or the error class name."""
        if not settings.metrics_enabled:
            return
        self.validations_total.labels(outcome=outcome).inc()
        self.validation_duration_seconds.observe(duration)

    def record_reconciliation(self, changed: bool) -> None:
        """Record whether a reconciliation touched persisted state."""
        if not settings.metrics_enabled:
            return
        self.reconciliations_total.labels(changed=str(changed)).inc()


# Global metrics instance
metrics = ReceiptMetrics()


class track_validation:
    """
    Context manager for tracking a validation run.

    Usage:
        with track_validation():
            validator.validate()

    The outcome is the raised exception's class name, or "success".
    """

    def __init__(self) -> None:
        self.start_time: float = 0.0

    def __enter__(self) -> "track_validation":
        """Start tracking."""
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception, exc_tb: object) -> None:
        """Record metrics."""
        duration = time.perf_counter() - self.start_time
        outcome = exc_type.__name__ if exc_type is not None else "success"
        metrics.record_validation(outcome, duration)


def get_metrics_handler() -> Callable[[], bytes]:
    """
    Get a Prometheus exposition callable for the host application.

    Usage:
        handler = get_metrics_handler()
        body = handler()
    """
    from prometheus_client import REGISTRY, generate_latest

    def metrics_endpoint() -> bytes:
        return generate_latest(REGISTRY)

    return metrics_endpoint
