"""
Local receipt validation pipeline.

Loader -> Signature Verifier -> Attribute Walker -> Identity Validator.
Each stage gates the next; the first failure ends the run with its
ReceiptError. Nothing is cached between runs: the receipt is re-read from the
platform every time.
"""

from datetime import datetime

from structlog import get_logger

from iap_receipt.exceptions import ReceiptUnreachableError
from iap_receipt.models.receipt import ValidatedReceipt
from iap_receipt.services.attributes import read_receipt
from iap_receipt.services.container import load_container
from iap_receipt.services.identity import AppIdentity, validate_identity
from iap_receipt.services.platform import ReceiptSource
from iap_receipt.services.signature import SignatureVerifier, TrustPolicy

logger = get_logger(__name__)


class ReceiptValidator:
    """
    Validates the app receipt offline.

    Usage:
        validator = ReceiptValidator(source, AppIdentity.from_settings(settings),
                                     TrustPolicy.from_settings(settings))
        receipt = validator.validate()
        receipt.product_ids  # frozenset of proven product ids
    """

    def __init__(self, source: ReceiptSource, app: AppIdentity, policy: TrustPolicy) -> None:
        self.source = source
        self.app = app
        self.policy = policy
        self.verifier = SignatureVerifier(policy)

    def read_raw_receipt(self) -> bytes:
        """
        Read the receipt bytes from the platform.

        Raises:
            ReceiptUnreachableError: Missing, unreadable or empty receipt
        """
        location = self.source.location
        try:
            raw = self.source.read_receipt()
        except OSError as exc:
            logger.warning("receipt_unreachable", location=location, error=str(exc))
            raise ReceiptUnreachableError(location, str(exc)) from exc
        if not raw:
            logger.warning("receipt_unreachable", location=location, error="empty")
            raise ReceiptUnreachableError(location, "empty receipt")
        logger.info("receipt_reachable", location=location, size=len(raw))
        return raw

    def validate(self, now: datetime | None = None) -> ValidatedReceipt:
        """
        Run the full pipeline.

        Args:
            now: Reference time for certificate and expiration checks

        Returns:
            The validated receipt with its proven product ids

        Raises:
            ReceiptError: The specific stage failure
        """
        logger.info(
            "receipt_validation_started",
            chain_verification_required=self.policy.chain_verification_required,
        )

        raw = self.read_raw_receipt()
        container = load_container(raw)
        self.verifier.verify(container, now=now)
        fields = read_receipt(container.payload)
        validate_identity(fields, self.app, self.source.device_identifier(), now=now)

        return ValidatedReceipt(
            product_ids=fields.product_ids,
            bundle_id=self.app.bundle_id,
            bundle_version=self.app.bundle_version,
            receipt_creation_date=fields.receipt_creation_date,
            expiration_date=fields.expiration_date,
            original_app_version=fields.original_app_version,
            in_app_purchases=tuple(fields.in_app_purchases),
        )
