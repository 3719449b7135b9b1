"""
Finite-field Diffie-Hellman key agreement.

Fixed group: P = 2**256 - 189, g = 5. These constants are part of the wire
contract and must not change. All values travel as base64 text of 32-byte
big-endian integers.

This is not a standard named group and ``pow`` is not constant time.
"""

from dataclasses import dataclass
from typing import Tuple

from .encoding import base64_to_bytes, bytes_to_base64, bytes_to_int, int_to_bytes
from .errors import InvalidPublicKey
from .rng import random_bytes

PRIME = (1 << 256) - 189
GENERATOR = 5
KEY_LENGTH = 32


@dataclass
class DhKeyPair:
    """Base64-encoded DH keypair"""
    public_key: str
    private_key: str


@dataclass
class EphemeralResult:
    """
    Sender side of a one-shot exchange.

    Attributes:
        shared: 32-byte shared secret
        ephemeral_public: Public value to send to the peer (base64)
        ephemeral_secret: Ephemeral private scalar (base64), discard after use
    """
    shared: bytes
    ephemeral_public: str
    ephemeral_secret: str


def _random_scalar() -> int:
    # Reduce into [2, P-2]
    value = bytes_to_int(random_bytes(KEY_LENGTH))
    return value % (PRIME - 3) + 2


def _encode(value: int) -> str:
    return bytes_to_base64(int_to_bytes(value, KEY_LENGTH))


def _decode_public(public_b64: str) -> int:
    try:
        value = bytes_to_int(base64_to_bytes(public_b64))
    except ValueError as e:
        raise InvalidPublicKey("DH public value is not base64") from e
    if not 2 <= value <= PRIME - 2:
        raise InvalidPublicKey("DH public value out of range")
    return value


def _decode_private(private_b64: str) -> int:
    return bytes_to_int(base64_to_bytes(private_b64))


def _exchange(public: int, private: int) -> bytes:
    return int_to_bytes(pow(public, private, PRIME), KEY_LENGTH)


def _keypair() -> Tuple[int, int]:
    private = _random_scalar()
    return private, pow(GENERATOR, private, PRIME)


def generate_dh_keypair() -> DhKeyPair:
    """
    Generate a long-lived DH keypair.

    Returns:
        DhKeyPair with base64 32-byte big-endian public and private values
    """
    private, public = _keypair()
    return DhKeyPair(public_key=_encode(public), private_key=_encode(private))


def derive_shared_secret(private_key_b64: str, public_key_b64: str) -> bytes:
    """Static-static agreement: pub ** priv mod P, 32 bytes"""
    return _exchange(_decode_public(public_key_b64), _decode_private(private_key_b64))


def derive_ephemeral(public_key_b64: str) -> EphemeralResult:
    """
    Sender side of a one-shot exchange against a peer prekey.

    Args:
        public_key_b64: Peer's prekey public value

    Returns:
        EphemeralResult with the shared secret and the ephemeral public value
    """
    target = _decode_public(public_key_b64)
    secret, public = _keypair()
    return EphemeralResult(
        shared=_exchange(target, secret),
        ephemeral_public=_encode(public),
        ephemeral_secret=_encode(secret),
    )


def compute_from_ephemeral(private_key_b64: str, ephemeral_public_b64: str) -> bytes:
    """Receiver side: ephemeralPub ** myPriv mod P, 32 bytes"""
    return _exchange(_decode_public(ephemeral_public_b64), _decode_private(private_key_b64))
