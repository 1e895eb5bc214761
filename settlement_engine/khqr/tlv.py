"""
Tag-Length-Value codec for EMV-style merchant-presented QR payloads.

Every field is ``tag`` (2 digits) + ``length`` (2 digits, zero padded) +
``value``. The length is the byte length of the value, so a single value can
never exceed 99 bytes. Callers must truncate free text *before* encoding.
"""
from typing import Iterable, List, Tuple

from settlement_engine.errors import InvalidPayloadField

MAX_VALUE_LENGTH = 99

Field = Tuple[str, str]


def _ascii_length(tag: str, value: str) -> int:
    try:
        return len(value.encode("ascii"))
    except UnicodeEncodeError:
        raise InvalidPayloadField(f"Tag {tag}: value must be ASCII")


def encode(tag: str, value: str) -> str:
    if len(tag) != 2 or not tag.isdigit():
        raise InvalidPayloadField(f"Invalid tag {tag!r}: must be two digits")
    length = _ascii_length(tag, value)
    if length > MAX_VALUE_LENGTH:
        raise InvalidPayloadField(
            f"Tag {tag}: value is {length} bytes (max {MAX_VALUE_LENGTH})"
        )
    return f"{tag}{length:02d}{value}"


def encode_fields(fields: Iterable[Field]) -> str:
    return "".join(encode(tag, value) for tag, value in fields)


def encode_composite(tag: str, fields: Iterable[Field]) -> str:
    """Wrap already-ordered sub-fields under an outer tag (e.g. tag 29, 62)."""
    return encode(tag, encode_fields(fields))


def decode(payload: str) -> List[Field]:
    """
    Split a payload into ordered (tag, value) pairs.

    Nested blocks are returned as raw strings; call decode() again on the
    value to walk into them.
    """
    fields = []
    pos = 0
    while pos < len(payload):
        header = payload[pos:pos + 4]
        if len(header) < 4 or not header.isdigit():
            raise InvalidPayloadField(f"Malformed TLV header at offset {pos}")
        tag, length = header[:2], int(header[2:])
        value = payload[pos + 4:pos + 4 + length]
        if len(value) != length:
            raise InvalidPayloadField(f"Tag {tag}: truncated value at offset {pos}")
        fields.append((tag, value))
        pos += 4 + length
    return fields
