"""
ASN.1 TLV decoder for receipt containers and receipt attributes.

Decodes BER/DER tag-length-value records through an explicit Cursor
(position + upper bound). Every read is checked against the cursor's bound,
so a truncated or hostile buffer produces MalformedFieldError instead of an
out-of-range read.

Only the subset needed by the receipt format is supported:
INTEGER, OCTET STRING, OBJECT IDENTIFIER, UTF8String, IA5String and the
constructed SEQUENCE / SET / context-specific wrappers.
"""

import re
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta, timezone

from iap_receipt.exceptions import MalformedFieldError

# Tag classes
CLASS_UNIVERSAL = 0
CLASS_APPLICATION = 1
CLASS_CONTEXT = 2
CLASS_PRIVATE = 3

# Universal tag numbers
TAG_EOC = 0
TAG_INTEGER = 2
TAG_OCTET_STRING = 4
TAG_NULL = 5
TAG_OID = 6
TAG_UTF8STRING = 12
TAG_SEQUENCE = 16
TAG_SET = 17
TAG_IA5STRING = 22

_MAX_LENGTH_OCTETS = 4
_MAX_NESTING = 32

# yyyy-MM-dd'T'HH:mm:ssZZZZZ (RFC 3339, en_US_POSIX), e.g. 2013-08-01T07:00:00Z
_DATE_PATTERN = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})T(\d{2}):(\d{2}):(\d{2})(Z|[+-]\d{2}:\d{2})",
    re.ASCII,
)


@dataclass(frozen=True)
class TLVHeader:
    """Identifier and length octets of one TLV record."""

    tag_class: int
    constructed: bool
    tag_number: int
    length: int | None  # None for BER indefinite length
    header_start: int
    content_start: int

    @property
    def is_indefinite(self) -> bool:
        return self.length is None

    def is_universal(self, tag_number: int) -> bool:
        return self.tag_class == CLASS_UNIVERSAL and self.tag_number == tag_number

    def is_context(self, tag_number: int) -> bool:
        return self.tag_class == CLASS_CONTEXT and self.tag_number == tag_number


class Cursor:
    """
    Read position over a byte buffer, bounded by ``end``.

    read_header() advances past the identifier and length octets only; the
    caller decides whether to descend into the content or skip over it.
    """

    def __init__(self, buffer: bytes, position: int = 0, end: int | None = None) -> None:
        if end is None:
            end = len(buffer)
        if not 0 <= position <= end <= len(buffer):
            raise ValueError(f"Invalid cursor bounds: {position}..{end} of {len(buffer)}")
        self.buffer = buffer
        self.position = position
        self.end = end

    def __repr__(self) -> str:
        return f"Cursor(position={self.position}, end={self.end})"

    @property
    def remaining(self) -> int:
        return self.end - self.position

    def at_end(self) -> bool:
        return self.position >= self.end

    def sub_cursor(self, start: int, end: int) -> "Cursor":
        """Cursor over [start, end), which must lie inside this cursor's window."""
        if start < self.position or end > self.end or start > end:
            raise MalformedFieldError(f"range {start}..{end} outside {self.position}..{self.end}")
        return Cursor(self.buffer, start, end)

    def skip(self, length: int) -> None:
        """Advance by ``length`` bytes without reading them."""
        if length < 0 or self.position + length > self.end:
            raise MalformedFieldError(f"cannot skip {length} bytes", self.position)
        self.position += length

    def seek(self, position: int) -> None:
        if not self.position <= position <= self.end:
            raise MalformedFieldError(f"cannot seek to {position}", self.position)
        self.position = position

    def _next_byte(self, what: str) -> int:
        if self.position >= self.end:
            raise MalformedFieldError(f"truncated {what}", self.position)
        value = self.buffer[self.position]
        self.position += 1
        return value

    def read_header(self, allow_indefinite: bool = False) -> TLVHeader:
        """Decode identifier and length octets; the content must fit in the bound."""
        header_start = self.position
        try:
            first = self._next_byte("identifier")
            tag_class = first >> 6
            constructed = bool(first & 0x20)
            tag_number = first & 0x1F

            if tag_number == 0x1F:
                # High tag number form, base-128
                tag_number = 0
                while True:
                    octet = self._next_byte("identifier")
                    tag_number = (tag_number << 7) | (octet & 0x7F)
                    if tag_number > 0xFFFFFF:
                        raise MalformedFieldError("tag number too large", header_start)
                    if not octet & 0x80:
                        break

            first_length = self._next_byte("length")
            length: int | None
            if first_length < 0x80:
                length = first_length
            elif first_length == 0x80:
                if not (allow_indefinite and constructed):
                    raise MalformedFieldError("indefinite length not allowed", header_start)
                length = None
            else:
                count = first_length & 0x7F
                if count > _MAX_LENGTH_OCTETS:
                    raise MalformedFieldError(f"{count} length octets", header_start)
                if self.position + count > self.end:
                    raise MalformedFieldError("truncated length", header_start)
                length = int.from_bytes(self.buffer[self.position : self.position + count], "big")
                self.position += count

            if length is not None and self.position + length > self.end:
                raise MalformedFieldError(
                    f"declared length {length} exceeds bound {self.end}", header_start
                )
        except MalformedFieldError:
            self.position = header_start
            raise

        return TLVHeader(
            tag_class=tag_class,
            constructed=constructed,
            tag_number=tag_number,
            length=length,
            header_start=header_start,
            content_start=self.position,
        )

    def content_end(self, header: TLVHeader, _depth: int = 0) -> int:
        """Offset just past the content (before the end-of-contents octets, if any)."""
        if header.length is not None:
            return header.content_start + header.length
        return self._find_end_of_contents(header, _depth) - 2

    def element_end(self, header: TLVHeader, _depth: int = 0) -> int:
        """Offset just past the whole element, including end-of-contents octets."""
        if header.length is not None:
            return header.content_start + header.length
        return self._find_end_of_contents(header, _depth)

    def _find_end_of_contents(self, header: TLVHeader, depth: int) -> int:
        if depth > _MAX_NESTING:
            raise MalformedFieldError("nesting too deep", header.header_start)
        inner = Cursor(self.buffer, header.content_start, self.end)
        while True:
            marker = inner.buffer[inner.position : inner.position + 2]
            if inner.remaining >= 2 and marker == b"\x00\x00":
                return inner.position + 2
            child = inner.read_header(allow_indefinite=True)
            inner.position = inner.element_end(child, depth + 1)

    def skip_element(self, header: TLVHeader) -> None:
        """Move past the element whose header was just read."""
        self.seek(self.element_end(header))

    def read_element(self, allow_indefinite: bool = False) -> tuple[TLVHeader, bytes]:
        """Read one whole element; returns its header and its raw encoding."""
        header = self.read_header(allow_indefinite=allow_indefinite)
        end = self.element_end(header)
        raw = bytes(self.buffer[header.header_start : end])
        self.position = end
        return header, raw


def _expect_primitive(cursor: Cursor, tag_numbers: tuple[int, ...], name: str) -> TLVHeader:
    header = cursor.read_header()
    if header.tag_class != CLASS_UNIVERSAL or header.tag_number not in tag_numbers:
        cursor.position = header.header_start
        raise MalformedFieldError(
            f"expected {name}, got tag {header.tag_class}/{header.tag_number}",
            header.header_start,
        )
    if header.constructed:
        cursor.position = header.header_start
        raise MalformedFieldError(f"{name} must be primitive", header.header_start)
    return header


def _content(cursor: Cursor, header: TLVHeader) -> bytes:
    end = cursor.content_end(header)
    data = bytes(cursor.buffer[header.content_start : end])
    cursor.position = end
    return data


def decode_integer(cursor: Cursor) -> int:
    """Decode an INTEGER element and advance past it."""
    header = _expect_primitive(cursor, (TAG_INTEGER,), "INTEGER")
    if header.length == 0:
        cursor.position = header.header_start
        raise MalformedFieldError("empty INTEGER", header.header_start)
    return int.from_bytes(_content(cursor, header), "big", signed=True)


def decode_string(cursor: Cursor) -> str:
    """Decode a UTF8String or IA5String element and advance past it."""
    header = _expect_primitive(cursor, (TAG_UTF8STRING, TAG_IA5STRING), "UTF8String/IA5String")
    encoding = "utf-8" if header.tag_number == TAG_UTF8STRING else "ascii"
    data = _content(cursor, header)
    try:
        return data.decode(encoding)
    except UnicodeDecodeError as exc:
        raise MalformedFieldError(f"invalid {encoding} string", header.header_start) from exc


def decode_octets(cursor: Cursor, length: int) -> bytes:
    """Copy ``length`` bytes at the cursor verbatim; the cursor is not advanced."""
    if length < 0 or cursor.position + length > cursor.end:
        raise MalformedFieldError(f"{length} octets exceed bound", cursor.position)
    return bytes(cursor.buffer[cursor.position : cursor.position + length])


def parse_receipt_date(text: str) -> datetime:
    """Parse ``YYYY-MM-DDTHH:MM:SS±HH:MM`` (or ``Z``) into an aware UTC datetime."""
    match = _DATE_PATTERN.fullmatch(text)
    if match is None:
        raise ValueError(f"Unparsable receipt date: {text!r}")
    year, month, day, hour, minute, second = (int(part) for part in match.groups()[:6])
    zone = match.group(7)
    if zone == "Z":
        tz = UTC
    else:
        sign = -1 if zone[0] == "-" else 1
        hours, minutes = int(zone[1:3]), int(zone[4:6])
        if hours > 23 or minutes > 59:
            raise ValueError(f"Invalid UTC offset: {zone}")
        tz = timezone(sign * timedelta(hours=hours, minutes=minutes))
    try:
        return datetime(year, month, day, hour, minute, second, tzinfo=tz).astimezone(UTC)
    except OverflowError as exc:
        raise ValueError(f"Receipt date out of range: {text!r}") from exc


def decode_date(cursor: Cursor) -> datetime:
    """Decode an IA5String timestamp element and advance past it."""
    header = _expect_primitive(cursor, (TAG_IA5STRING,), "IA5String")
    data = _content(cursor, header)
    try:
        return parse_receipt_date(data.decode("ascii"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedFieldError(str(exc), header.header_start) from exc


def decode_oid(cursor: Cursor) -> str:
    """Decode an OBJECT IDENTIFIER element into dotted form and advance past it."""
    header = _expect_primitive(cursor, (TAG_OID,), "OBJECT IDENTIFIER")
    data = _content(cursor, header)
    if not data or data[-1] & 0x80:
        raise MalformedFieldError("truncated OBJECT IDENTIFIER", header.header_start)

    arcs: list[int] = []
    value = 0
    for octet in data:
        value = (value << 7) | (octet & 0x7F)
        if not octet & 0x80:
            arcs.append(value)
            value = 0

    first = arcs[0]
    if first < 40:
        head = [0, first]
    elif first < 80:
        head = [1, first - 40]
    else:
        head = [2, first - 80]
    return ".".join(str(arc) for arc in head + arcs[1:])
