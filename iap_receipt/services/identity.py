"""
Receipt identity validation.

Binds a decoded receipt to this app and this device:
- bundle id and bundle version must match the running app
- SHA-1(device identifier + opaque value + bundle id bytes) must equal the
  hash stored in the receipt
- an expiration date, when present, must not be in the past
"""

import hashlib
import hmac
from dataclasses import dataclass
from datetime import UTC, datetime

from structlog import get_logger

from iap_receipt.config import Settings
from iap_receipt.exceptions import (
    IdentityMismatchError,
    IncompleteReceiptError,
    ReceiptExpiredError,
)
from iap_receipt.models.receipt import ReceiptFields

logger = get_logger(__name__)

DEVICE_IDENTIFIER_LENGTH = 16


@dataclass(frozen=True)
class AppIdentity:
    """Bundle identifier and build version of the running app."""

    bundle_id: str
    bundle_version: str

    def __post_init__(self) -> None:
        """Validate identity fields."""
        if not self.bundle_id:
            raise ValueError("bundle_id cannot be empty")
        if not self.bundle_version:
            raise ValueError("bundle_version cannot be empty")

    @classmethod
    def from_settings(cls, settings: Settings) -> "AppIdentity":
        return cls(bundle_id=settings.bundle_id, bundle_version=settings.bundle_version)


def compute_receipt_hash(
    device_identifier: bytes,
    opaque_value: bytes,
    bundle_id_data: bytes,
) -> bytes:
    """SHA-1 over device identifier, opaque value and raw bundle id bytes, in that order."""
    digest = hashlib.sha1()
    digest.update(device_identifier)
    digest.update(opaque_value)
    digest.update(bundle_id_data)
    return digest.digest()


def validate_identity(
    fields: ReceiptFields,
    app: AppIdentity,
    device_identifier: bytes,
    now: datetime | None = None,
) -> None:
    """
    Check a decoded receipt against the running app and device.

    Args:
        fields: Attributes decoded from the receipt payload
        app: Identity of the running app
        device_identifier: 16-byte per-install identifier
        now: Reference time for the expiration check (defaults to current UTC)

    Raises:
        IncompleteReceiptError: A required attribute is missing
        IdentityMismatchError: Bundle id, bundle version or hash does not match
        ReceiptExpiredError: The receipt expiration date is in the past
    """
    missing = fields.missing_required()
    if missing:
        logger.warning("receipt_validation_failure", reason="incomplete", missing=missing)
        raise IncompleteReceiptError(missing)

    if fields.bundle_id != app.bundle_id:
        logger.warning(
            "receipt_validation_failure",
            reason="bundle_id_mismatch",
            receipt_bundle_id=fields.bundle_id,
            app_bundle_id=app.bundle_id,
        )
        raise IdentityMismatchError("bundle_id")

    if fields.bundle_version != app.bundle_version:
        logger.warning(
            "receipt_validation_failure",
            reason="bundle_version_mismatch",
            receipt_bundle_version=fields.bundle_version,
            app_bundle_version=app.bundle_version,
        )
        raise IdentityMismatchError("bundle_version")

    if len(device_identifier) != DEVICE_IDENTIFIER_LENGTH:
        logger.warning("receipt_validation_failure", reason="device_identifier_length")
        raise IdentityMismatchError("device_identifier")

    expected = compute_receipt_hash(
        device_identifier,
        fields.opaque_value or b"",
        fields.bundle_id_data or b"",
    )
    if not hmac.compare_digest(expected, fields.sha1_hash or b""):
        logger.warning("receipt_validation_failure", reason="hash_mismatch")
        raise IdentityMismatchError("sha1_hash")

    # A receipt without an expiration date never expires
    if fields.expiration_date is not None:
        current = now or datetime.now(UTC)
        if fields.expiration_date < current:
            logger.warning(
                "receipt_validation_failure",
                reason="expired",
                expiration_date=fields.expiration_date.isoformat(),
            )
            raise ReceiptExpiredError(fields.expiration_date)

    logger.info("receipt_validation_success", bundle_id=fields.bundle_id)
