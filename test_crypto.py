#!/usr/bin/env python3
"""
Tests for cryptographic primitives and the envelope cipher.
Runs under pytest or directly as a script.
"""

import json
import sys

from e2ee.dh import (
    GENERATOR,
    PRIME,
    compute_from_ephemeral,
    derive_ephemeral,
    derive_shared_secret,
    generate_dh_keypair,
)
from e2ee.encoding import base64_to_bytes, bytes_to_base64, bytes_to_hex, bytes_to_utf8, hex_to_bytes, int_to_bytes
from e2ee.envelope import (
    ALGORITHM,
    E2EE_VERSION,
    Envelope,
    decrypt_payload,
    derive_keystream,
    encrypt_payload,
    one_time_key_ref,
    parse_meta,
)
from e2ee.errors import (
    CryptoError,
    InvalidMetadata,
    InvalidPublicKey,
    TagMismatch,
    TagVerificationFailed,
)
from e2ee.primitives import generate_identity_keypair, sign, verify


def _flip_first_byte(value_b64: str) -> str:
    data = bytearray(base64_to_bytes(value_b64))
    data[0] ^= 0x01
    return bytes_to_base64(bytes(data))


def _sealed(plaintext: str = "Hello, World!"):
    recipient = generate_dh_keypair()
    exchange = derive_ephemeral(recipient.public_key)
    result = encrypt_payload(exchange.shared, plaintext, one_time_key_ref(recipient.public_key), exchange.ephemeral_public)
    return recipient, exchange, result


def test_dh_exchange():
    """Test static Diffie-Hellman agreement"""
    print("Testing DH exchange...")

    alice = generate_dh_keypair()
    bob = generate_dh_keypair()

    alice_shared = derive_shared_secret(alice.private_key, bob.public_key)
    bob_shared = derive_shared_secret(bob.private_key, alice.public_key)

    assert alice_shared == bob_shared, "DH exchange failed"
    assert len(alice_shared) == 32, "Wrong shared secret length"
    assert len(base64_to_bytes(alice.public_key)) == 32, "Public value is not 32 bytes"

    print("✓ DH exchange works")


def test_ephemeral_exchange():
    """Test one-shot agreement against a prekey"""
    print("Testing ephemeral exchange...")

    prekey = generate_dh_keypair()
    sender = derive_ephemeral(prekey.public_key)
    receiver = compute_from_ephemeral(prekey.private_key, sender.ephemeral_public)

    assert sender.shared == receiver, "Ephemeral exchange failed"
    assert sender.ephemeral_public != prekey.public_key

    print("✓ Ephemeral exchange works")


def test_dh_group_constants():
    """Generator arithmetic matches the fixed group"""
    assert PRIME == 2 ** 256 - 189
    assert GENERATOR == 5
    expected = bytes_to_base64(int_to_bytes(pow(5, 2, PRIME), 32))
    assert derive_shared_secret(bytes_to_base64(int_to_bytes(2, 32)), bytes_to_base64(int_to_bytes(5, 32))) \
        == base64_to_bytes(expected)


def test_dh_rejects_degenerate_public_values():
    """Public values 0, 1 and P-1 are refused"""
    keypair = generate_dh_keypair()
    for value in (0, 1, PRIME - 1):
        try:
            derive_shared_secret(keypair.private_key, bytes_to_base64(int_to_bytes(value, 32)))
            assert False, "Should have raised InvalidPublicKey"
        except InvalidPublicKey:
            pass


def test_encryption():
    """Test envelope encryption round trip"""
    print("Testing encryption...")

    recipient, exchange, result = _sealed("héllo wörld ✓")
    envelope = result.envelope

    assert envelope.e2ee_ver == E2EE_VERSION
    assert envelope.algo == ALGORITHM
    assert len(base64_to_bytes(envelope.iv)) == 16, "Wrong nonce length"
    assert envelope.key_ref == f"otk:{recipient.public_key}"
    assert base64_to_bytes(result.shared_key) == exchange.shared

    shared = compute_from_ephemeral(recipient.private_key, exchange.ephemeral_public)
    assert decrypt_payload(shared, envelope) == "héllo wörld ✓", "Decryption failed"

    print("✓ Encryption/decryption works")


def test_wire_format():
    """AAD is compact JSON with ephemeral and tag; wire keys are camelCase"""
    _, exchange, result = _sealed()
    envelope = result.envelope

    aad = bytes_to_utf8(base64_to_bytes(envelope.aad))
    assert aad.startswith('{"e":"'), aad
    assert " " not in aad
    meta = json.loads(aad)
    assert meta["e"] == exchange.ephemeral_public
    assert len(base64_to_bytes(meta["t"])) == 32

    wire = envelope.to_wire()
    assert set(wire) == {"e2eeVer", "algo", "aad", "iv", "ciphertext", "keyRef"}
    assert Envelope.model_validate(wire) == envelope


def test_keystream_blocks():
    """Keystream is consecutive counter blocks"""
    key = b"k" * 32
    nonce = b"n" * 16
    long = derive_keystream(key, nonce, 70)
    assert len(long) == 70
    assert derive_keystream(key, nonce, 32) == long[:32]
    assert derive_keystream(key, nonce, 0) == b""


def test_tamper_detection():
    """Any modified ciphertext, IV or tag is rejected"""
    print("Testing tamper detection...")

    recipient, exchange, result = _sealed()
    shared = exchange.shared
    envelope = result.envelope

    for field in ("ciphertext", "iv"):
        tampered = envelope.model_copy(update={field: _flip_first_byte(getattr(envelope, field))})
        try:
            decrypt_payload(shared, tampered)
            assert False, f"Tampered {field} was accepted"
        except TagVerificationFailed:
            pass

    meta = parse_meta(envelope.aad)
    bad_tag = dict(meta, t=_flip_first_byte(meta["t"]))
    tampered = envelope.model_copy(update={"aad": bytes_to_base64(json.dumps(bad_tag).encode())})
    try:
        decrypt_payload(shared, tampered)
        assert False, "Tampered tag was accepted"
    except TagVerificationFailed:
        pass

    short_tag = dict(meta, t=bytes_to_base64(b"short"))
    tampered = envelope.model_copy(update={"aad": bytes_to_base64(json.dumps(short_tag).encode())})
    try:
        decrypt_payload(shared, tampered)
        assert False, "Short tag was accepted"
    except TagMismatch:
        pass

    try:
        decrypt_payload(b"\x00" * 32, envelope)
        assert False, "Wrong key was accepted"
    except TagVerificationFailed:
        pass

    print("✓ Tamper detection works")


def test_malformed_metadata():
    """Unparsable or incomplete AAD is reported as invalid metadata"""
    _, exchange, result = _sealed()

    for aad in ("", "not base64 json", bytes_to_base64(b"[1, 2]"), bytes_to_base64(b'{"e":"abc"}')):
        try:
            decrypt_payload(exchange.shared, result.envelope.model_copy(update={"aad": aad}))
            assert False, f"Accepted AAD {aad!r}"
        except InvalidMetadata:
            pass

    assert issubclass(InvalidMetadata, CryptoError)


def test_signatures():
    """Test Ed25519 signing of a prekey"""
    print("Testing signatures...")

    identity = generate_identity_keypair()
    other = generate_identity_keypair()
    prekey = base64_to_bytes(generate_dh_keypair().public_key)

    signature = sign(prekey, identity.private_key)
    assert len(signature) == 64
    assert verify(prekey, signature, identity.public_key), "Valid signature rejected"
    assert not verify(prekey, signature, other.public_key), "Signature verified under wrong key"
    assert not verify(prekey[:-1] + bytes([prekey[-1] ^ 1]), signature, identity.public_key)
    assert not verify(prekey, signature[:10], identity.public_key)
    assert not verify(prekey, signature, b"short")

    print("✓ Signatures work")


def test_lenient_base64():
    """Whitespace and missing padding are tolerated"""
    assert base64_to_bytes("aGVsbG8") == b"hello"
    assert base64_to_bytes(" aGVs\nbG8= ") == b"hello"
    assert base64_to_bytes("") == b""
    assert hex_to_bytes(bytes_to_hex(b"\x00\xffab")) == b"\x00\xffab"
    assert hex_to_bytes("00:FF") == b"\x00\xff"


def run_all_tests():
    """Run all tests"""
    print("\n" + "="*50)
    print("Running Cryptographic Tests")
    print("="*50 + "\n")

    try:
        test_dh_exchange()
        test_ephemeral_exchange()
        test_dh_group_constants()
        test_dh_rejects_degenerate_public_values()
        test_encryption()
        test_wire_format()
        test_keystream_blocks()
        test_tamper_detection()
        test_malformed_metadata()
        test_signatures()
        test_lenient_base64()

        print("\n" + "="*50)
        print("✓ All tests passed!")
        print("="*50 + "\n")
        return 0

    except AssertionError as e:
        print(f"\n✗ Test failed: {e}")
        return 1
    except Exception as e:
        print(f"\n✗ Unexpected error: {e}")
        import traceback
        traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(run_all_tests())
