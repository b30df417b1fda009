"""
End-to-end tests for the local validation pipeline.

Each test feeds signed receipt bytes through
Loader -> Signature Verifier -> Attribute Walker -> Identity Validator.
"""

from datetime import UTC, datetime, timedelta

import pytest
from receipt_builder import StaticReceiptSource, build_payload, sign_payload

from iap_receipt.exceptions import (
    ContainerUnreadableError,
    IdentityMismatchError,
    MalformedFieldError,
    ReceiptExpiredError,
    ReceiptUnreachableError,
    SignatureInvalidError,
)
from iap_receipt.services.receipt import ReceiptValidator


class TestReadRawReceipt:
    """Tests for reaching the receipt."""

    def test_missing(self, app_identity, debug_policy):
        """A missing receipt is unreachable."""
        validator = ReceiptValidator(StaticReceiptSource(None), app_identity, debug_policy)

        with pytest.raises(ReceiptUnreachableError) as exc_info:
            validator.read_raw_receipt()

        assert exc_info.value.location == "memory://receipt"

    def test_empty(self, app_identity, debug_policy):
        """An empty receipt is unreachable."""
        validator = ReceiptValidator(StaticReceiptSource(b""), app_identity, debug_policy)

        with pytest.raises(ReceiptUnreachableError, match="empty"):
            validator.validate()

    def test_reread_every_run(self, test_receipt, app_identity, debug_policy):
        """Nothing is cached between runs."""
        source = StaticReceiptSource(test_receipt)
        validator = ReceiptValidator(source, app_identity, debug_policy)

        validator.validate()
        validator.validate()

        assert source.reads == 2


class TestValidate:
    """Tests for the full pipeline."""

    def test_debug_receipt(self, debug_validator):
        """A StoreKit test receipt validates with chain checks disabled."""
        receipt = debug_validator.validate()

        assert receipt.product_ids == frozenset({"com.testapp.month", "com.testapp.year"})
        assert receipt.bundle_id == "com.example.app"
        assert receipt.bundle_version == "1.0"
        assert receipt.original_app_version == "1.0"
        assert len(receipt.in_app_purchases) == 2

    def test_production_receipt(self, production_receipt, app_identity, production_policy):
        """A chained receipt validates in production."""
        validator = ReceiptValidator(
            StaticReceiptSource(production_receipt), app_identity, production_policy
        )

        assert validator.validate().product_ids == frozenset(
            {"com.testapp.month", "com.testapp.year"}
        )

    def test_test_receipt_in_production(self, test_receipt, app_identity, production_policy):
        """A StoreKit test receipt never validates in production."""
        validator = ReceiptValidator(
            StaticReceiptSource(test_receipt), app_identity, production_policy
        )

        with pytest.raises(SignatureInvalidError):
            validator.validate()

    def test_garbage(self, app_identity, debug_policy):
        """Bytes that are not an envelope are unreadable."""
        validator = ReceiptValidator(StaticReceiptSource(b"garbage"), app_identity, debug_policy)

        with pytest.raises(ContainerUnreadableError):
            validator.validate()

    def test_other_app(self, test_certificate, app_identity, debug_policy):
        """A correctly signed receipt for another app fails identity."""
        raw = sign_payload(build_payload(bundle_id="com.example.other"), test_certificate)
        validator = ReceiptValidator(StaticReceiptSource(raw), app_identity, debug_policy)

        with pytest.raises(IdentityMismatchError) as exc_info:
            validator.validate()

        assert exc_info.value.field == "bundle_id"

    def test_other_device(self, test_receipt, app_identity, debug_policy):
        """A receipt copied from another device fails the hash."""
        source = StaticReceiptSource(test_receipt, device_identifier=bytes(16))
        validator = ReceiptValidator(source, app_identity, debug_policy)

        with pytest.raises(IdentityMismatchError) as exc_info:
            validator.validate()

        assert exc_info.value.field == "sha1_hash"

    def test_expired(self, test_certificate, app_identity, debug_policy):
        """An expired receipt fails after the signature checks pass."""
        payload = build_payload(expiration_date="2024-01-01T00:00:00Z")
        raw = sign_payload(payload, test_certificate)
        validator = ReceiptValidator(StaticReceiptSource(raw), app_identity, debug_policy)

        with pytest.raises(ReceiptExpiredError):
            validator.validate(now=datetime(2024, 1, 1, 0, 0, 1, tzinfo=UTC))

        receipt = validator.validate(now=datetime(2024, 1, 1, tzinfo=UTC))
        assert receipt.expiration_date == datetime(2024, 1, 1, tzinfo=UTC)

    def test_malformed_signed_payload(self, test_certificate, app_identity, debug_policy):
        """A correctly signed but undecodable payload fails in the walker."""
        raw = sign_payload(b"\x31\x05\x30\x03\x02", test_certificate)
        validator = ReceiptValidator(StaticReceiptSource(raw), app_identity, debug_policy)

        with pytest.raises(MalformedFieldError):
            validator.validate()

    def test_certificate_expired_in_production(
        self, production_receipt, app_identity, production_policy
    ):
        """Production checks certificate validity at the reference time."""
        validator = ReceiptValidator(
            StaticReceiptSource(production_receipt), app_identity, production_policy
        )

        with pytest.raises(SignatureInvalidError):
            validator.validate(now=datetime.now(UTC) + timedelta(days=3650))
