"""
Receipt domain models - Dataclasses for local receipt validation.

NO DICTIONARIES - All data uses strongly typed models.

The App Store receipt is a PKCS#7 signed-data envelope whose payload is a
SET of attribute records:

    ReceiptAttribute ::= SEQUENCE {
        type    INTEGER,
        version INTEGER,
        value   OCTET STRING
    }
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum


class ReceiptAttributeType(IntEnum):
    """Top-level receipt attribute types handled by the walker."""

    BUNDLE_ID = 2
    BUNDLE_VERSION = 3
    OPAQUE_VALUE = 4
    SHA1_HASH = 5
    RECEIPT_CREATION_DATE = 12
    IN_APP_PURCHASE = 17
    ORIGINAL_APP_VERSION = 19
    EXPIRATION_DATE = 21


class InAppAttributeType(IntEnum):
    """Attribute types inside a nested in-app purchase record."""

    QUANTITY = 1701
    PRODUCT_ID = 1702
    TRANSACTION_ID = 1703
    PURCHASE_DATE = 1704
    ORIGINAL_TRANSACTION_ID = 1705
    ORIGINAL_PURCHASE_DATE = 1706
    SUBSCRIPTION_EXPIRATION_DATE = 1708
    WEB_ORDER_LINE_ITEM_ID = 1711
    CANCELLATION_DATE = 1712
    IS_TRIAL_PERIOD = 1713
    IS_IN_INTRO_OFFER_PERIOD = 1719


@dataclass(frozen=True)
class AttributeRecord:
    """One decoded attribute triplet; value is the OCTET STRING content."""

    attribute_type: int
    version: int
    value: bytes
    offset: int  # offset of the value within the walked buffer


@dataclass
class InAppPurchaseRecord:
    """A nested in-app purchase record (attribute type 17)."""

    product_id: str | None = None
    quantity: int | None = None
    transaction_id: str | None = None
    original_transaction_id: str | None = None
    purchase_date: datetime | None = None
    original_purchase_date: datetime | None = None
    subscription_expiration_date: datetime | None = None
    cancellation_date: datetime | None = None
    web_order_line_item_id: int | None = None
    is_trial_period: bool = False
    is_in_intro_offer_period: bool = False

    def is_cancelled(self) -> bool:
        """Check if the purchase was refunded or cancelled by support."""
        return self.cancellation_date is not None


@dataclass
class ReceiptFields:
    """Accumulator populated while walking the receipt attributes."""

    bundle_id: str | None = None
    bundle_id_data: bytes | None = None  # raw DER of the bundle id string, hashed as-is
    bundle_version: str | None = None
    opaque_value: bytes | None = None
    sha1_hash: bytes | None = None
    receipt_creation_date: datetime | None = None
    expiration_date: datetime | None = None
    original_app_version: str | None = None
    in_app_purchases: list[InAppPurchaseRecord] = field(default_factory=list)

    def missing_required(self) -> list[str]:
        """Names of required attributes that are absent or empty."""
        required = {
            "bundle_id": self.bundle_id,
            "bundle_version": self.bundle_version,
            "opaque_value": self.opaque_value,
            "sha1_hash": self.sha1_hash,
        }
        return [name for name, value in required.items() if not value]

    @property
    def product_ids(self) -> frozenset[str]:
        """Unique product identifiers over every in-app purchase record."""
        return frozenset(
            record.product_id for record in self.in_app_purchases if record.product_id
        )


@dataclass(frozen=True)
class ValidatedReceipt:
    """Outcome of a successful validation run."""

    product_ids: frozenset[str]
    bundle_id: str
    bundle_version: str
    receipt_creation_date: datetime | None = None
    expiration_date: datetime | None = None
    original_app_version: str | None = None
    in_app_purchases: tuple[InAppPurchaseRecord, ...] = ()


class RemoteReceiptStatus(Enum):
    """Status codes returned by the remote verifyReceipt endpoint."""

    UNKNOWN = -2  # Not decodable status
    NONE = -1  # No status returned
    VALID = 0
    JSON_NOT_READABLE = 21000
    MALFORMED_OR_MISSING_DATA = 21002
    RECEIPT_NOT_AUTHENTICATED = 21003
    SECRET_NOT_MATCHING = 21004
    SERVER_UNAVAILABLE = 21005
    SUBSCRIPTION_EXPIRED = 21006
    TEST_RECEIPT = 21007  # Sandbox receipt sent to production
    PRODUCTION_RECEIPT = 21008  # Production receipt sent to sandbox

    @classmethod
    def from_code(cls, code: int | None) -> "RemoteReceiptStatus":
        """Map a raw status code, treating unknown codes as UNKNOWN."""
        if code is None:
            return cls.NONE
        if code < 0:
            return cls.UNKNOWN
        try:
            return cls(code)
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_valid(self) -> bool:
        return self is RemoteReceiptStatus.VALID


@dataclass(frozen=True)
class RemoteValidationResult:
    """Result reported by the remote validation collaborator."""

    status: RemoteReceiptStatus
    product_ids: frozenset[str] = frozenset()

    @property
    def proven_product_ids(self) -> frozenset[str]:
        """Product ids that count as purchased; none unless status is VALID."""
        if not self.status.is_valid:
            return frozenset()
        return self.product_ids
