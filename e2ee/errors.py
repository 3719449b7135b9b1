"""
Exception hierarchy for the E2EE session protocol.

Primitive failures (bad tag, malformed metadata) and protocol failures
(unknown prekey, device swap) share one base so callers can catch
``CryptoError`` at the UI boundary.
"""


class CryptoError(Exception):
    """Base exception for cryptographic errors"""

    recoverable = False


class InvalidMetadata(CryptoError):
    """Envelope AAD could not be parsed or lacks required fields"""
    pass


class MissingEphemeralKey(InvalidMetadata):
    """Envelope AAD carries no ephemeral public key"""
    pass


class TagMismatch(CryptoError):
    """Authentication tag has the wrong length"""
    pass


class TagVerificationFailed(CryptoError):
    """Authentication tag does not match the recomputed tag"""
    pass


class InvalidPublicKey(CryptoError):
    """Diffie-Hellman public value outside the accepted range"""
    pass


class SessionError(CryptoError):
    """Protocol-level failure raised by the session engine"""
    pass


class MissingCredential(SessionError):
    """No local user secret available for key derivation"""
    pass


class MissingLocalKey(SessionError):
    """Self-sent envelope with no cached message key"""
    pass


class UnknownPrekey(SessionError):
    """Referenced one-time prekey is not held by this device"""

    recoverable = True


class DeviceFingerprintMismatch(SessionError):
    """Sender device differs from the cached fingerprint"""

    recoverable = True


class NoUsableDeviceBundle(SessionError):
    """Peer has no published (or acceptable) key bundle"""
    pass
