"""
Cryptographic module for end-to-end encrypted chat.

Implements the device session primitives:
- Ed25519 identity keys binding signed prekeys to a device
- Finite-field Diffie-Hellman one-shot key agreement
- SHA-256 stream envelope cipher with an authentication tag
"""

from .dh import (
    compute_from_ephemeral,
    derive_ephemeral,
    derive_shared_secret,
    generate_dh_keypair,
)
from .envelope import Envelope, EncryptResult, decrypt_payload, encrypt_payload
from .errors import CryptoError
from .primitives import generate_identity_keypair, sign, verify

__all__ = [
    'generate_dh_keypair',
    'derive_shared_secret',
    'derive_ephemeral',
    'compute_from_ephemeral',
    'generate_identity_keypair',
    'sign',
    'verify',
    'Envelope',
    'EncryptResult',
    'encrypt_payload',
    'decrypt_payload',
    'CryptoError'
]
