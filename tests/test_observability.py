"""
Tests for logging and metrics helpers.
"""

import pytest
import structlog
from prometheus_client import REGISTRY

from iap_receipt.config import settings
from iap_receipt.exceptions import SignatureInvalidError
from iap_receipt.observability.logging import add_app_context, log_context, setup_logging
from iap_receipt.observability.metrics import get_metrics_handler, metrics, track_validation


def validation_count(outcome: str) -> float:
    value = REGISTRY.get_sample_value("iap_receipt_validations_total", {"outcome": outcome})
    return value or 0.0


def reconciliation_count(changed: bool) -> float:
    value = REGISTRY.get_sample_value(
        "iap_entitlement_reconciliations_total", {"changed": str(changed)}
    )
    return value or 0.0


class TestLogging:
    """Tests for structured logging helpers."""

    def test_app_context(self):
        """Service identity is added to every event."""
        event = add_app_context(None, "info", {"event": "receipt_load_success"})

        assert event["service"] == "iap-receipt"
        assert event["environment"] == "debug"
        assert "version" in event

    def test_log_context_binds_and_unbinds(self):
        """Context variables are bound only inside the block."""
        with log_context(run_id="run-123"):
            assert structlog.contextvars.get_contextvars()["run_id"] == "run-123"

        assert "run_id" not in structlog.contextvars.get_contextvars()

    def test_setup_logging(self):
        """Logging can be configured and used."""
        setup_logging()
        structlog.get_logger("tests").info("receipt_test_event", value=1)


class TestMetrics:
    """Tests for Prometheus metrics helpers."""

    def test_track_validation_success(self):
        """A clean run is counted as success."""
        before = validation_count("success")

        with track_validation():
            pass

        assert validation_count("success") == before + 1

    def test_track_validation_failure(self):
        """A failing run is counted under the error class name."""
        before = validation_count("SignatureInvalidError")

        with pytest.raises(SignatureInvalidError):
            with track_validation():
                raise SignatureInvalidError("signature does not verify")

        assert validation_count("SignatureInvalidError") == before + 1

    def test_record_reconciliation(self):
        """Reconciliations are counted by whether anything changed."""
        before = reconciliation_count(True)
        metrics.record_reconciliation(changed=True)

        assert reconciliation_count(True) == before + 1

    def test_disabled(self, monkeypatch):
        """Nothing is recorded when metrics are disabled."""
        monkeypatch.setattr(settings, "metrics_enabled", False)
        before = validation_count("success")

        metrics.record_validation("success", 0.01)

        assert validation_count("success") == before

    def test_metrics_handler(self):
        """The exposition handler renders the registered metrics."""
        body = get_metrics_handler()()

        assert b"iap_receipt_validations_total" in body
