"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Every error kind is terminal for the current validation run. Callers treat
any ReceiptError as "no purchase proven".
"""

from datetime import datetime


class ReceiptError(Exception):
    """Base exception for all receipt validation errors."""

    pass


class ReceiptUnreachableError(ReceiptError):
    """Raised when the receipt bytes cannot be read from the platform."""

    def __init__(self, location: str, reason: str) -> None:
        self.location = location
        self.reason = reason
        super().__init__(f"Receipt unreachable at {location}: {reason}")


class ContainerUnreadableError(ReceiptError):
    """Raised when the bytes are not a parsable signed-data envelope."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Receipt container unreadable: {message}")


class ContainerTypeMismatchError(ReceiptError):
    """Raised when the envelope or its content has the wrong content type."""

    def __init__(self, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Container type mismatch. Expected: {expected}, Actual: {actual}")


class SignatureInvalidError(ReceiptError):
    """Raised when the envelope signature or signer chain does not verify."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Receipt signature invalid: {message}")


class MalformedPayloadError(ReceiptError):
    """Raised when the attribute set does not have the expected structure."""

    def __init__(self, message: str, offset: int | None = None) -> None:
        self.message = message
        self.offset = offset
        where = f" at offset {offset}" if offset is not None else ""
        super().__init__(f"Malformed receipt payload{where}: {message}")


class MalformedFieldError(ReceiptError):
    """Raised when a single TLV field cannot be decoded."""

    def __init__(self, message: str, offset: int | None = None) -> None:
        self.message = message
        self.offset = offset
        where = f" at offset {offset}" if offset is not None else ""
        super().__init__(f"Malformed receipt field{where}: {message}")


class IncompleteReceiptError(ReceiptError):
    """Raised when required receipt attributes are missing."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(f"Receipt incomplete, missing: {', '.join(missing)}")


class IdentityMismatchError(ReceiptError):
    """Raised when the receipt does not belong to this app or device."""

    def __init__(self, field: str) -> None:
        self.field = field
        super().__init__(f"Receipt identity mismatch: {field}")


class ReceiptExpiredError(ReceiptError):
    """Raised when the receipt expiration date is in the past."""

    def __init__(self, expiration_date: datetime) -> None:
        self.expiration_date = expiration_date
        super().__init__(f"Receipt expired at {expiration_date.isoformat()}")


class EntitlementStoreError(Exception):
    """Raised when reconciled entitlements cannot be persisted."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Entitlement store write failed: {reason}")
