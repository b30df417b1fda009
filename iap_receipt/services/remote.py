"""
Remote receipt validation contract.

When local validation is disabled the manager hands the receipt to a
RemoteReceiptValidator (the App Store verifyReceipt endpoint behind the
host's own HTTP client). This module only defines that contract and how its
responses are interpreted: anything but status 0 proves no purchase.
"""

from typing import Any, Protocol

from structlog import get_logger

from iap_receipt.models.receipt import RemoteReceiptStatus, RemoteValidationResult

logger = get_logger(__name__)

PRODUCTION_VERIFY_RECEIPT_URL = "https://buy.itunes.apple.com/verifyReceipt"
SANDBOX_VERIFY_RECEIPT_URL = "https://sandbox.itunes.apple.com/verifyReceipt"


class RemoteReceiptValidator(Protocol):
    """Collaborator that validates receipt bytes with the App Store."""

    def validate(self, receipt: bytes, sandbox: bool) -> RemoteValidationResult: ...


def verify_receipt_url(sandbox: bool) -> str:
    """Endpoint for the receipt environment."""
    return SANDBOX_VERIFY_RECEIPT_URL if sandbox else PRODUCTION_VERIFY_RECEIPT_URL


def interpret_response(body: Any) -> RemoteValidationResult:
    """
    Map a decoded verifyReceipt JSON body to a RemoteValidationResult.

    Product ids are collected from ``receipt.in_app`` and
    ``latest_receipt_info`` only when the status is 0.
    """
    if not isinstance(body, dict):
        logger.warning("remote_receipt_response_invalid", body_type=type(body).__name__)
        return RemoteValidationResult(status=RemoteReceiptStatus.UNKNOWN)

    raw_status = body.get("status")
    if raw_status is not None and not isinstance(raw_status, int):
        status = RemoteReceiptStatus.UNKNOWN
    else:
        status = RemoteReceiptStatus.from_code(raw_status)

    if not status.is_valid:
        logger.warning("remote_receipt_not_valid", status=status.name, code=raw_status)
        return RemoteValidationResult(status=status)

    entries: list[Any] = []
    receipt = body.get("receipt")
    if isinstance(receipt, dict) and isinstance(receipt.get("in_app"), list):
        entries.extend(receipt["in_app"])
    if isinstance(body.get("latest_receipt_info"), list):
        entries.extend(body["latest_receipt_info"])

    product_ids = frozenset(
        entry["product_id"]
        for entry in entries
        if isinstance(entry, dict) and isinstance(entry.get("product_id"), str)
    )
    logger.info("remote_receipt_valid", product_ids=sorted(product_ids))
    return RemoteValidationResult(status=status, product_ids=product_ids)
