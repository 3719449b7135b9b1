"""
Byte and text encoding helpers.

All key material crosses module and wire boundaries as base64 text; DH
values are fixed-width big-endian integers.
"""

import base64
import re

_NON_BASE64 = re.compile(r"[^A-Za-z0-9+/=]")
_NON_HEX = re.compile(r"[^a-fA-F0-9]")


def utf8_to_bytes(value: str) -> bytes:
    return value.encode("utf-8")


def bytes_to_utf8(data: bytes) -> str:
    return data.decode("utf-8")


def concat_bytes(*parts: bytes) -> bytes:
    return b"".join(parts)


def bytes_to_base64(data: bytes) -> str:
    """Encode bytes as standard padded base64 text"""
    return base64.b64encode(data).decode("ascii")


def base64_to_bytes(value: str) -> bytes:
    """
    Decode base64 text leniently.

    Characters outside the base64 alphabet are dropped and missing padding
    is restored before decoding.

    Raises:
        ValueError: If the remaining text is not valid base64
    """
    sanitized = _NON_BASE64.sub("", value or "").rstrip("=")
    sanitized += "=" * (-len(sanitized) % 4)
    return base64.b64decode(sanitized)


def bytes_to_hex(data: bytes) -> str:
    return data.hex()


def hex_to_bytes(value: str) -> bytes:
    return bytes.fromhex(_NON_HEX.sub("", value))


def int_to_bytes(value: int, length: int) -> bytes:
    """
    Pack a non-negative integer into exactly ``length`` big-endian bytes.

    Higher-order bytes that do not fit are discarded, so callers must only
    pass values already reduced below ``256 ** length``.
    """
    return (value % (1 << (8 * length))).to_bytes(length, "big")


def bytes_to_int(data: bytes) -> int:
    return int.from_bytes(data, "big")
