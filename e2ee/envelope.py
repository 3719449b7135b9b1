"""
Envelope cipher: SHA-256 counter-mode keystream with a SHA-256 tag.

    keystream = SHA256(secret || nonce || ctr_be32) for ctr = 0, 1, ...
    tag       = SHA256(secret || nonce || ciphertext || base_aad)

``base_aad`` is the compact JSON ``{"e":<ephemeral>}``; the transmitted AAD
is ``{"e":<ephemeral>,"t":<tag>}``. The JSON is serialized without
whitespace so it matches other clients byte for byte.
"""

import json
import struct
from dataclasses import dataclass
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from .encoding import base64_to_bytes, bytes_to_base64, bytes_to_utf8, concat_bytes, utf8_to_bytes
from .errors import InvalidMetadata, TagMismatch, TagVerificationFailed
from .primitives import constant_time_compare, sha256
from .rng import random_bytes

E2EE_VERSION = 1
ALGORITHM = "DH-SHA256-STREAM"
NONCE_LENGTH = 16
BLOCK_SIZE = 32
ONE_TIME_PREKEY_REF = "otk:"
SIGNED_PREKEY_REF = "spk"


class Envelope(BaseModel):
    """
    Encrypted message unit as carried by the transport.

    ``message_id`` is not part of the wire format; the transport attaches it
    when handing an envelope back for decryption.
    """
    model_config = ConfigDict(populate_by_name=True)

    e2ee_ver: int = Field(E2EE_VERSION, alias="e2eeVer")
    algo: str = ALGORITHM
    aad: str = ""
    iv: str = ""
    ciphertext: str = ""
    key_ref: str = Field("", alias="keyRef")
    message_id: Optional[str] = Field(None, alias="messageId")

    def to_wire(self) -> Dict:
        """Wire JSON object (camelCase, without messageId)"""
        return self.model_dump(by_alias=True, exclude={"message_id"})

    def uses_one_time_prekey(self) -> bool:
        return self.key_ref.startswith(ONE_TIME_PREKEY_REF)

    def one_time_prekey(self) -> Optional[str]:
        """Public key referenced by an ``otk:`` keyRef"""
        if not self.uses_one_time_prekey():
            return None
        return self.key_ref[len(ONE_TIME_PREKEY_REF):]


@dataclass
class EncryptResult:
    """
    Output of envelope encryption.

    Attributes:
        envelope: The envelope to transmit
        shared_key: Base64 shared secret, kept by the sender for local echo
    """
    envelope: Envelope
    shared_key: str


def one_time_key_ref(public_key: str) -> str:
    return f"{ONE_TIME_PREKEY_REF}{public_key}"


def derive_keystream(shared_key: bytes, nonce: bytes, length: int) -> bytes:
    """Concatenate SHA256(key || nonce || counter) blocks, truncated to length"""
    blocks = -(-length // BLOCK_SIZE)
    prefix = shared_key + nonce
    stream = b"".join(sha256(prefix + struct.pack(">I", counter)) for counter in range(blocks))
    return stream[:length]


def _xor(data: bytes, keystream: bytes) -> bytes:
    return bytes(a ^ b for a, b in zip(data, keystream))


def compute_tag(shared_key: bytes, nonce: bytes, ciphertext: bytes, aad: bytes) -> bytes:
    return sha256(concat_bytes(shared_key, nonce, ciphertext, aad))


def encode_meta(ephemeral: str, tag_b64: Optional[str] = None) -> bytes:
    """Compact JSON AAD; the tag-less form is what the tag covers"""
    meta = {"e": ephemeral}
    if tag_b64:
        meta["t"] = tag_b64
    return utf8_to_bytes(json.dumps(meta, separators=(",", ":")))


def parse_meta(aad_b64: str) -> Dict:
    """
    Decode the envelope AAD into its JSON object.

    Raises:
        InvalidMetadata: If the AAD is not base64 JSON describing an object
    """
    try:
        meta = json.loads(bytes_to_utf8(base64_to_bytes(aad_b64 or "")))
    except ValueError as e:
        raise InvalidMetadata("Invalid metadata") from e
    if not isinstance(meta, dict):
        raise InvalidMetadata("Invalid metadata")
    return meta


def verify_tag(expected: bytes, actual: bytes) -> bool:
    return len(expected) == len(actual) and constant_time_compare(expected, actual)


def encrypt_payload(shared_key: bytes, plaintext: str, key_ref: str, ephemeral: str) -> EncryptResult:
    """
    Encrypt plaintext under a shared secret.

    Args:
        shared_key: 32-byte shared secret
        plaintext: Message text
        key_ref: Which recipient prekey the secret was derived from
        ephemeral: Sender's ephemeral public value (base64)

    Returns:
        EncryptResult with the envelope and the base64 shared secret
    """
    nonce = random_bytes(NONCE_LENGTH)
    plain = utf8_to_bytes(plaintext)
    cipher = _xor(plain, derive_keystream(shared_key, nonce, len(plain)))
    tag = compute_tag(shared_key, nonce, cipher, encode_meta(ephemeral))
    envelope = Envelope(
        e2ee_ver=E2EE_VERSION,
        algo=ALGORITHM,
        aad=bytes_to_base64(encode_meta(ephemeral, bytes_to_base64(tag))),
        iv=bytes_to_base64(nonce),
        ciphertext=bytes_to_base64(cipher),
        key_ref=key_ref,
    )
    return EncryptResult(envelope=envelope, shared_key=bytes_to_base64(shared_key))


def decrypt_payload(shared_key: bytes, envelope: Envelope) -> str:
    """
    Authenticate and decrypt an envelope.

    The tag is checked before any plaintext is produced.

    Raises:
        InvalidMetadata: Unparsable AAD, IV or ciphertext
        TagMismatch: Tag length differs
        TagVerificationFailed: Tag content differs
    """
    meta = parse_meta(envelope.aad)
    if not isinstance(meta.get("e"), str) or not isinstance(meta.get("t"), str):
        raise InvalidMetadata("Malformed metadata")
    try:
        nonce = base64_to_bytes(envelope.iv)
        cipher = base64_to_bytes(envelope.ciphertext)
        expected = base64_to_bytes(meta["t"])
    except ValueError as e:
        raise InvalidMetadata("Invalid envelope encoding") from e

    actual = compute_tag(shared_key, nonce, cipher, encode_meta(meta["e"]))
    if len(expected) != len(actual):
        raise TagMismatch("Tag mismatch")
    if not verify_tag(expected, actual):
        raise TagVerificationFailed("Tag verification failed")

    try:
        return bytes_to_utf8(_xor(cipher, derive_keystream(shared_key, nonce, len(cipher))))
    except UnicodeDecodeError as e:
        raise InvalidMetadata("Plaintext is not valid UTF-8") from e
