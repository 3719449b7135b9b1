"""
Cryptographic Primitives for End-to-End Encryption

This module provides the foundational operations used by the session
protocol: Ed25519 identity keys that bind a signed prekey to a device,
SHA-256 hashing and constant-time comparison.
"""

import hmac
import hashlib
from dataclasses import dataclass

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from .errors import CryptoError
from .rng import random_bytes

SEED_LENGTH = 32
PUBLIC_KEY_LENGTH = 32
SIGNATURE_LENGTH = 64


@dataclass
class Ed25519KeyPair:
    """
    Ed25519 identity keypair.

    Attributes:
        public_key: Raw 32-byte public key
        private_key: 32-byte seed (the only private material stored)
    """
    public_key: bytes
    private_key: bytes


def _private_key_from_seed(seed: bytes) -> Ed25519PrivateKey:
    if len(seed) != SEED_LENGTH:
        raise CryptoError("Private key must be a 32-byte seed")
    return Ed25519PrivateKey.from_private_bytes(seed)


def serialize_identity_public_key(public_key: Ed25519PublicKey) -> bytes:
    """Serialize Ed25519 public key to raw bytes"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def generate_identity_keypair() -> Ed25519KeyPair:
    """
    Generate an Ed25519 keypair for digital signatures (identity keys).

    Returns:
        Ed25519KeyPair derived from a fresh 32-byte random seed
    """
    seed = random_bytes(SEED_LENGTH)
    return Ed25519KeyPair(public_key=get_public_key(seed), private_key=seed)


def get_public_key(seed: bytes) -> bytes:
    """Derive the raw public key from a 32-byte seed"""
    return serialize_identity_public_key(_private_key_from_seed(seed).public_key())


def sign(message: bytes, seed: bytes) -> bytes:
    """
    Sign a message with Ed25519.

    Args:
        message: Data to sign
        seed: 32-byte private seed

    Returns:
        64-byte detached signature
    """
    return _private_key_from_seed(seed).sign(message)


def verify(message: bytes, signature: bytes, public_key: bytes) -> bool:
    """
    Verify a detached Ed25519 signature.

    Wrong-sized signatures or keys, malformed keys and bad signatures all
    yield False; this function never raises.
    """
    if len(signature) != SIGNATURE_LENGTH or len(public_key) != PUBLIC_KEY_LENGTH:
        return False
    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(signature, message)
        return True
    except (InvalidSignature, ValueError):
        return False


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def constant_time_compare(a: bytes, b: bytes) -> bool:
    """
    Constant-time comparison to prevent timing attacks.

    Args:
        a: First byte string
        b: Second byte string

    Returns:
        True if equal, False otherwise
    """
    return hmac.compare_digest(a, b)
