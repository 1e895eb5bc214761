"""
CRC16-CCITT checksum and payload fingerprint.

The CRC is computed over everything up to and including the ``6304`` header
of the checksum field; the four hex digits are then appended.
"""
import hashlib

CRC_TAG_HEADER = "6304"


def crc16_ccitt(data: str) -> str:
    """CRC-16/CCITT-FALSE: poly 0x1021, init 0xFFFF, MSB first, no final XOR."""
    crc = 0xFFFF
    for byte in data.encode("ascii"):
        crc ^= byte << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = (crc << 1) ^ 0x1021
            else:
                crc <<= 1
            crc &= 0xFFFF
    return f"{crc:04X}"


def append_crc(payload_without_crc: str) -> str:
    body = payload_without_crc + CRC_TAG_HEADER
    return body + crc16_ccitt(body)


def verify_crc(payload: str) -> bool:
    if len(payload) < 8 or payload[-8:-4] != CRC_TAG_HEADER:
        return False
    return crc16_ccitt(payload[:-4]) == payload[-4:].upper()


def fingerprint(payload: str) -> str:
    """MD5 of the full payload. A dedup key only, not a security boundary."""
    return hashlib.md5(payload.encode("ascii")).hexdigest()
