"""
Observability module - Logging and Metrics.
"""

from iap_receipt.observability.logging import get_logger, log_context, setup_logging
from iap_receipt.observability.metrics import metrics, track_validation

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "track_validation",
]
