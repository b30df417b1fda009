"""
Signed-container loader.

Parses the outer PKCS#7 / CMS envelope of an App Store receipt:

    ContentInfo ::= SEQUENCE {
        contentType  OBJECT IDENTIFIER,          -- must be signedData
        content      [0] EXPLICIT SignedData }

    SignedData ::= SEQUENCE {
        version           INTEGER,
        digestAlgorithms  SET OF AlgorithmIdentifier,
        encapContentInfo  SEQUENCE { eContentType OID, -- must be data
                                     eContent [0] EXPLICIT OCTET STRING },
        certificates      [0] IMPLICIT SET OF Certificate OPTIONAL,
        crls              [1] IMPLICIT ... OPTIONAL,
        signerInfos       SET OF SignerInfo }

Receipts produced by the App Store use BER indefinite lengths on the outer
layers, so those layers accept them; signer infos and certificates must be DER.
"""

from dataclasses import dataclass

from structlog import get_logger

from iap_receipt.exceptions import (
    ContainerTypeMismatchError,
    ContainerUnreadableError,
    MalformedFieldError,
)
from iap_receipt.services.asn1 import (
    TAG_OCTET_STRING,
    TAG_SEQUENCE,
    TAG_SET,
    Cursor,
    TLVHeader,
    decode_integer,
    decode_oid,
)

logger = get_logger(__name__)

OID_PKCS7_DATA = "1.2.840.113549.1.7.1"
OID_PKCS7_SIGNED_DATA = "1.2.840.113549.1.7.2"


@dataclass(frozen=True)
class SignedAttribute:
    """One CMS signed attribute; values are raw DER elements."""

    oid: str
    values: tuple[bytes, ...]


@dataclass(frozen=True)
class SignerInfo:
    """Signer of the envelope, identified by issuer + serial or key identifier."""

    issuer: bytes | None  # DER-encoded Name
    serial_number: int | None
    subject_key_identifier: bytes | None
    digest_algorithm: str
    signature_algorithm: str
    signed_attributes_der: bytes | None  # raw [0] IMPLICIT element
    signed_attributes: tuple[SignedAttribute, ...]
    signature: bytes

    def attribute(self, oid: str) -> SignedAttribute | None:
        for attr in self.signed_attributes:
            if attr.oid == oid:
                return attr
        return None


@dataclass(frozen=True)
class SignedContainer:
    """Parsed signed-data envelope; owned by a single validation run."""

    digest_algorithms: tuple[str, ...]
    payload: bytes
    certificates: tuple[bytes, ...]
    signer_infos: tuple[SignerInfo, ...]


def _expect(cursor: Cursor, tag_number: int, name: str, indefinite: bool = False) -> TLVHeader:
    header = cursor.read_header(allow_indefinite=indefinite)
    if not header.is_universal(tag_number):
        raise MalformedFieldError(f"expected {name}", header.header_start)
    return header


def _expect_context(cursor: Cursor, tag_number: int, indefinite: bool = False) -> TLVHeader:
    header = cursor.read_header(allow_indefinite=indefinite)
    if not (header.is_context(tag_number) and header.constructed):
        raise MalformedFieldError(f"expected [{tag_number}]", header.header_start)
    return header


def _peek(cursor: Cursor) -> TLVHeader | None:
    """Header of the next element without consuming it, or None at the end."""
    if cursor.at_end():
        return None
    start = cursor.position
    header = cursor.read_header(allow_indefinite=True)
    cursor.position = start
    return header


def _inner(cursor: Cursor, header: TLVHeader) -> Cursor:
    return cursor.sub_cursor(header.content_start, cursor.content_end(header))


def _read_algorithm(cursor: Cursor) -> str:
    header = _expect(cursor, TAG_SEQUENCE, "AlgorithmIdentifier")
    inner = _inner(cursor, header)
    oid = decode_oid(inner)
    cursor.skip_element(header)
    return oid


def _read_octet_string(cursor: Cursor, depth: int = 0) -> bytes:
    """OCTET STRING content; constructed (chunked) encodings are concatenated."""
    header = _expect(cursor, TAG_OCTET_STRING, "OCTET STRING", indefinite=True)
    if not header.constructed:
        data = bytes(cursor.buffer[header.content_start : cursor.content_end(header)])
        cursor.skip_element(header)
        return data
    if depth > 8:
        raise MalformedFieldError("OCTET STRING nested too deep", header.header_start)
    inner = _inner(cursor, header)
    chunks = []
    while not inner.at_end():
        chunks.append(_read_octet_string(inner, depth + 1))
    cursor.skip_element(header)
    return b"".join(chunks)


def _read_signed_attributes(raw: bytes) -> tuple[SignedAttribute, ...]:
    cursor = Cursor(raw)
    outer = cursor.read_header()
    inner = _inner(cursor, outer)
    attributes = []
    while not inner.at_end():
        seq = _expect(inner, TAG_SEQUENCE, "Attribute")
        attr = _inner(inner, seq)
        oid = decode_oid(attr)
        value_set = _expect(attr, TAG_SET, "AttributeValues")
        values_cursor = _inner(attr, value_set)
        values = []
        while not values_cursor.at_end():
            _, element = values_cursor.read_element()
            values.append(element)
        attributes.append(SignedAttribute(oid=oid, values=tuple(values)))
        inner.skip_element(seq)
    return tuple(attributes)


def _read_signer_info(cursor: Cursor) -> SignerInfo:
    header = _expect(cursor, TAG_SEQUENCE, "SignerInfo")
    inner = _inner(cursor, header)

    decode_integer(inner)  # version

    issuer: bytes | None = None
    serial_number: int | None = None
    subject_key_identifier: bytes | None = None
    sid = inner.read_header()
    if sid.is_universal(TAG_SEQUENCE):
        sid_inner = _inner(inner, sid)
        _, issuer = sid_inner.read_element()
        serial_number = decode_integer(sid_inner)
    elif sid.is_context(0) and not sid.constructed:
        subject_key_identifier = bytes(inner.buffer[sid.content_start : inner.content_end(sid)])
    else:
        raise MalformedFieldError("unsupported signer identifier", sid.header_start)
    inner.skip_element(sid)

    digest_algorithm = _read_algorithm(inner)

    signed_attributes_der: bytes | None = None
    signed_attributes: tuple[SignedAttribute, ...] = ()
    next_header = _peek(inner)
    if next_header is not None and next_header.is_context(0):
        _, signed_attributes_der = inner.read_element()
        signed_attributes = _read_signed_attributes(signed_attributes_der)

    signature_algorithm = _read_algorithm(inner)
    signature = _read_octet_string(inner)
    # unsignedAttrs [1] are not used
    cursor.skip_element(header)

    return SignerInfo(
        issuer=issuer,
        serial_number=serial_number,
        subject_key_identifier=subject_key_identifier,
        digest_algorithm=digest_algorithm,
        signature_algorithm=signature_algorithm,
        signed_attributes_der=signed_attributes_der,
        signed_attributes=signed_attributes,
        signature=signature,
    )


def _read_signed_data(cursor: Cursor) -> SignedContainer:
    header = _expect(cursor, TAG_SEQUENCE, "SignedData", indefinite=True)
    inner = _inner(cursor, header)

    decode_integer(inner)  # version

    algorithms_header = _expect(inner, TAG_SET, "digestAlgorithms", indefinite=True)
    algorithms_cursor = _inner(inner, algorithms_header)
    digest_algorithms = []
    while not algorithms_cursor.at_end():
        digest_algorithms.append(_read_algorithm(algorithms_cursor))
    inner.skip_element(algorithms_header)

    encap_header = _expect(inner, TAG_SEQUENCE, "encapContentInfo", indefinite=True)
    encap = _inner(inner, encap_header)
    content_type = decode_oid(encap)
    if content_type != OID_PKCS7_DATA:
        raise ContainerTypeMismatchError(expected=OID_PKCS7_DATA, actual=content_type)
    if encap.at_end():
        raise ContainerUnreadableError("no embedded content")
    explicit = _expect_context(encap, 0, indefinite=True)
    payload = _read_octet_string(_inner(encap, explicit))
    inner.skip_element(encap_header)

    certificates: list[bytes] = []
    next_header = _peek(inner)
    if next_header is not None and next_header.is_context(0):
        certs_header = inner.read_header(allow_indefinite=True)
        certs_cursor = _inner(inner, certs_header)
        while not certs_cursor.at_end():
            _, certificate = certs_cursor.read_element()
            certificates.append(certificate)
        inner.skip_element(certs_header)
        next_header = _peek(inner)
    if next_header is not None and next_header.is_context(1):
        inner.skip_element(inner.read_header(allow_indefinite=True))

    signers_header = _expect(inner, TAG_SET, "signerInfos", indefinite=True)
    signers_cursor = _inner(inner, signers_header)
    signer_infos = []
    while not signers_cursor.at_end():
        signer_infos.append(_read_signer_info(signers_cursor))
    inner.skip_element(signers_header)

    return SignedContainer(
        digest_algorithms=tuple(digest_algorithms),
        payload=payload,
        certificates=tuple(certificates),
        signer_infos=tuple(signer_infos),
    )


def load_container(raw: bytes) -> SignedContainer:
    """
    Parse receipt bytes into a SignedContainer.

    Raises:
        ContainerUnreadableError: The bytes are not a signed-data envelope
        ContainerTypeMismatchError: Outer type is not signedData or inner type is not data
    """
    if not raw:
        logger.warning("receipt_load_failure", reason="empty")
        raise ContainerUnreadableError("empty receipt")

    try:
        cursor = Cursor(raw)
        outer = _expect(cursor, TAG_SEQUENCE, "ContentInfo", indefinite=True)
        content_info = _inner(cursor, outer)
        content_type = decode_oid(content_info)
        if content_type != OID_PKCS7_SIGNED_DATA:
            raise ContainerTypeMismatchError(expected=OID_PKCS7_SIGNED_DATA, actual=content_type)

        explicit = _expect_context(content_info, 0, indefinite=True)
        container = _read_signed_data(_inner(content_info, explicit))
    except ContainerTypeMismatchError as exc:
        logger.warning("receipt_load_failure", reason="type_mismatch", actual=exc.actual)
        raise
    except MalformedFieldError as exc:
        logger.warning("receipt_load_failure", reason="unreadable", error=exc.message)
        raise ContainerUnreadableError(exc.message) from exc
    except ContainerUnreadableError as exc:
        logger.warning("receipt_load_failure", reason="unreadable", error=exc.message)
        raise

    logger.info(
        "receipt_load_success",
        payload_bytes=len(container.payload),
        certificates=len(container.certificates),
        signers=len(container.signer_infos),
    )
    return container

