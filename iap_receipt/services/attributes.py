"""
Receipt attribute walker.

The receipt payload and every nested in-app purchase record share one layout:

    Payload ::= SET OF ReceiptAttribute
    ReceiptAttribute ::= SEQUENCE {
        type    INTEGER,
        version INTEGER,
        value   OCTET STRING }

walk_attributes() iterates that layout over any byte range; read_receipt()
and read_in_app_purchase() dispatch the records into typed fields.
Unknown attribute types are skipped so newer receipts keep validating.
"""

from collections.abc import Callable, Iterator
from datetime import datetime
from typing import TypeVar

from structlog import get_logger

from iap_receipt.exceptions import MalformedFieldError, MalformedPayloadError
from iap_receipt.models.receipt import (
    AttributeRecord,
    InAppAttributeType,
    InAppPurchaseRecord,
    ReceiptAttributeType,
    ReceiptFields,
)
from iap_receipt.services.asn1 import (
    TAG_OCTET_STRING,
    TAG_SEQUENCE,
    TAG_SET,
    Cursor,
    decode_date,
    decode_integer,
    decode_octets,
    decode_string,
)

logger = get_logger(__name__)

T = TypeVar("T")


def walk_attributes(payload: bytes) -> Iterator[AttributeRecord]:
    """
    Yield every attribute record of a SET-encoded attribute payload.

    Raises:
        MalformedPayloadError: The SET / SEQUENCE / OCTET STRING layout is broken
        MalformedFieldError: A type or version INTEGER cannot be decoded
    """
    cursor = Cursor(payload)
    header = cursor.read_header()
    if not (header.is_universal(TAG_SET) and header.constructed):
        raise MalformedPayloadError("payload is not a SET", header.header_start)
    end = cursor.content_end(header)
    body = cursor.sub_cursor(header.content_start, end)

    while not body.at_end():
        try:
            record = body.read_header()
        except MalformedFieldError as exc:
            raise MalformedPayloadError(
                f"attribute crosses the set bound: {exc.message}", exc.offset
            ) from exc
        if not (record.is_universal(TAG_SEQUENCE) and record.constructed):
            raise MalformedPayloadError("attribute is not a SEQUENCE", record.header_start)
        record_end = body.content_end(record)
        fields = body.sub_cursor(record.content_start, record_end)

        attribute_type = decode_integer(fields)
        version = decode_integer(fields)

        value = fields.read_header()
        if not value.is_universal(TAG_OCTET_STRING) or value.constructed:
            raise MalformedPayloadError(
                "attribute value is not an OCTET STRING", value.header_start
            )

        yield AttributeRecord(
            attribute_type=attribute_type,
            version=version,
            value=decode_octets(fields, fields.content_end(value) - value.content_start),
            offset=value.content_start,
        )

        body.seek(record_end)


def _value_cursor(record: AttributeRecord) -> Cursor:
    return Cursor(record.value)


def _soft_date(record: AttributeRecord) -> datetime | None:
    """Dates are optional: an unparsable one is logged and treated as absent."""
    try:
        return decode_date(_value_cursor(record))
    except MalformedFieldError as exc:
        logger.warning(
            "receipt_date_unparsable",
            attribute_type=record.attribute_type,
            error=exc.message,
        )
        return None


def _decode(record: AttributeRecord, decode: Callable[[Cursor], T]) -> T:
    """Run a decoder over the record value, reporting offsets in payload terms."""
    try:
        return decode(_value_cursor(record))
    except MalformedFieldError as exc:
        offset = record.offset + (exc.offset or 0)
        raise MalformedFieldError(
            f"attribute {record.attribute_type}: {exc.message}", offset
        ) from exc


def read_in_app_purchase(payload: bytes) -> InAppPurchaseRecord:
    """Decode a nested in-app purchase record (value of attribute type 17)."""
    purchase = InAppPurchaseRecord()

    for record in walk_attributes(payload):
        attribute_type = record.attribute_type
        if attribute_type == InAppAttributeType.PRODUCT_ID:
            purchase.product_id = _decode(record, decode_string)
        elif attribute_type == InAppAttributeType.QUANTITY:
            purchase.quantity = _decode(record, decode_integer)
        elif attribute_type == InAppAttributeType.TRANSACTION_ID:
            purchase.transaction_id = _decode(record, decode_string)
        elif attribute_type == InAppAttributeType.ORIGINAL_TRANSACTION_ID:
            purchase.original_transaction_id = _decode(record, decode_string)
        elif attribute_type == InAppAttributeType.PURCHASE_DATE:
            purchase.purchase_date = _soft_date(record)
        elif attribute_type == InAppAttributeType.ORIGINAL_PURCHASE_DATE:
            purchase.original_purchase_date = _soft_date(record)
        elif attribute_type == InAppAttributeType.SUBSCRIPTION_EXPIRATION_DATE:
            purchase.subscription_expiration_date = _soft_date(record)
        elif attribute_type == InAppAttributeType.CANCELLATION_DATE:
            purchase.cancellation_date = _soft_date(record)
        elif attribute_type == InAppAttributeType.WEB_ORDER_LINE_ITEM_ID:
            purchase.web_order_line_item_id = _decode(record, decode_integer)
        elif attribute_type == InAppAttributeType.IS_TRIAL_PERIOD:
            purchase.is_trial_period = bool(_decode(record, decode_integer))
        elif attribute_type == InAppAttributeType.IS_IN_INTRO_OFFER_PERIOD:
            purchase.is_in_intro_offer_period = bool(_decode(record, decode_integer))

    return purchase


def read_receipt(payload: bytes) -> ReceiptFields:
    """
    Decode the top-level receipt attributes.

    Raises:
        MalformedPayloadError: Structural failure in the attribute set
        MalformedFieldError: A dispatched attribute value cannot be decoded
    """
    fields = ReceiptFields()

    for record in walk_attributes(payload):
        attribute_type = record.attribute_type
        if attribute_type == ReceiptAttributeType.BUNDLE_ID:
            fields.bundle_id = _decode(record, decode_string)
            fields.bundle_id_data = record.value
        elif attribute_type == ReceiptAttributeType.BUNDLE_VERSION:
            fields.bundle_version = _decode(record, decode_string)
        elif attribute_type == ReceiptAttributeType.OPAQUE_VALUE:
            fields.opaque_value = record.value
        elif attribute_type == ReceiptAttributeType.SHA1_HASH:
            fields.sha1_hash = record.value
        elif attribute_type == ReceiptAttributeType.RECEIPT_CREATION_DATE:
            fields.receipt_creation_date = _soft_date(record)
        elif attribute_type == ReceiptAttributeType.IN_APP_PURCHASE:
            try:
                purchase = read_in_app_purchase(record.value)
            except MalformedPayloadError as exc:
                raise MalformedFieldError(
                    f"in-app purchase record: {exc.message}",
                    record.offset + (exc.offset or 0),
                ) from exc
            fields.in_app_purchases.append(purchase)
        elif attribute_type == ReceiptAttributeType.ORIGINAL_APP_VERSION:
            fields.original_app_version = _decode(record, decode_string)
        elif attribute_type == ReceiptAttributeType.EXPIRATION_DATE:
            fields.expiration_date = _soft_date(record)
        else:
            logger.debug("receipt_attribute_skipped", attribute_type=record.attribute_type)

    logger.info(
        "receipt_read_success",
        bundle_id=fields.bundle_id,
        in_app_purchases=len(fields.in_app_purchases),
        product_ids=sorted(fields.product_ids),
    )
    return fields
