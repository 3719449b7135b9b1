"""
Randomness source for key and nonce generation.

Uses the operating system CSPRNG. Platforms without an entropy source fall
back to the ``random`` module, which is NOT cryptographically secure; the
fallback is logged once.
"""

import logging
import os
import random

logger = logging.getLogger(__name__)

_ID_ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"
_fallback_warned = False


def _fallback_bytes(length: int) -> bytes:
    global _fallback_warned
    if not _fallback_warned:
        logger.warning("No OS entropy source available; using non-cryptographic randomness")
        _fallback_warned = True
    return bytes(random.getrandbits(8) for _ in range(length))


def random_bytes(length: int) -> bytes:
    """
    Generate ``length`` random bytes.

    Args:
        length: Number of bytes

    Returns:
        Random bytes from the OS CSPRNG (or the logged fallback)
    """
    try:
        return os.urandom(length)
    except NotImplementedError:
        return _fallback_bytes(length)


def random_id(length: int = 16) -> str:
    """Random lowercase alphanumeric identifier"""
    data = random_bytes(length)
    return "".join(_ID_ALPHABET[b % len(_ID_ALPHABET)] for b in data)
