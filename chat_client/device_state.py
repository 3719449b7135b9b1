"""
Local device state for the E2EE session.

Holds the device identity, signed prekey, one-time prekeys, the cache of
keys used for locally sent messages and the per-peer fingerprint cache. The
whole state is persisted as one JSON blob; helpers in this module never
mutate their input and always return a new ``DeviceState``.
"""

import copy
import json
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from e2ee.dh import generate_dh_keypair
from e2ee.encoding import base64_to_bytes, bytes_to_base64
from e2ee.errors import CryptoError
from e2ee.primitives import PUBLIC_KEY_LENGTH, SIGNATURE_LENGTH, generate_identity_keypair, sign, verify
from e2ee.rng import random_id

from .config import SessionConfig
from .storage import IntegrityStorage

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class KeyPairRecord:
    public_key: str
    private_key: str


@dataclass
class SignedPrekey:
    public_key: str
    private_key: str
    signature: Optional[str] = None


@dataclass
class StoredPrekey:
    """One-time prekey held by this device"""
    public_key: str
    private_key: str
    uploaded: bool = False
    created_at: int = 0
    prekey_id: Optional[int] = None
    consumed: bool = False
    consumed_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'publicKey': self.public_key,
            'privateKey': self.private_key,
            'uploaded': self.uploaded,
            'createdAt': self.created_at,
        }
        if self.prekey_id is not None:
            data['prekeyId'] = self.prekey_id
        if self.consumed:
            data['consumed'] = True
            data['consumedAt'] = self.consumed_at
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StoredPrekey':
        return cls(
            public_key=data['publicKey'],
            private_key=data['privateKey'],
            uploaded=bool(data.get('uploaded', False)),
            created_at=data.get('createdAt', 0),
            prekey_id=data.get('prekeyId'),
            consumed=bool(data.get('consumed', False)),
            consumed_at=data.get('consumedAt'),
        )


@dataclass
class SentMessageKey:
    message_id: str
    key: str
    created_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {'messageId': self.message_id, 'key': self.key, 'createdAt': self.created_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SentMessageKey':
        return cls(message_id=data['messageId'], key=data['key'], created_at=data.get('createdAt', 0))


@dataclass
class PeerFingerprint:
    """Last seen identity/prekey pair of a remote user's device"""
    device_id: str
    identity_key: str
    signed_prekey: str
    updated_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'deviceId': self.device_id,
            'identityKey': self.identity_key,
            'signedPrekey': self.signed_prekey,
            'updatedAt': self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PeerFingerprint':
        return cls(
            device_id=data['deviceId'],
            identity_key=data['identityKey'],
            signed_prekey=data['signedPrekey'],
            updated_at=data.get('updatedAt', 0),
        )


@dataclass
class DeviceState:
    """
    Aggregate root of everything this device knows.

    Attributes:
        version: Schema version; a mismatch regenerates the device
        device_id: Directory identifier of this device
        identity: Ed25519 identity (base64 public key and seed)
        signed_prekey: DH prekey with its identity signature
        one_time_prekeys: Single-use DH prekeys
        sent_message_keys: Newest-first cache of keys for sent messages
        last_registered_at: Registration time in ms, None until registered
        peer_fingerprints: Fingerprint per remote user id (string keys)
    """
    version: int
    device_id: str
    identity: KeyPairRecord
    signed_prekey: SignedPrekey
    one_time_prekeys: List[StoredPrekey] = field(default_factory=list)
    sent_message_keys: List[SentMessageKey] = field(default_factory=list)
    last_registered_at: Optional[int] = None
    peer_fingerprints: Dict[str, PeerFingerprint] = field(default_factory=dict)

    def copy(self) -> 'DeviceState':
        return copy.deepcopy(self)

    def find_prekey(self, public_key: str) -> Optional[StoredPrekey]:
        return next((pk for pk in self.one_time_prekeys if pk.public_key == public_key), None)

    def find_sent_key(self, message_id: Optional[str]) -> Optional[SentMessageKey]:
        if message_id is None:
            return None
        return next((item for item in self.sent_message_keys if item.message_id == message_id), None)

    def pending_prekeys(self) -> List[StoredPrekey]:
        return [pk for pk in self.one_time_prekeys if not pk.uploaded]

    def fingerprint_for(self, user_id) -> Optional[PeerFingerprint]:
        if user_id is None:
            return None
        return self.peer_fingerprints.get(str(user_id))

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'version': self.version,
            'deviceId': self.device_id,
            'identity': {
                'publicKey': self.identity.public_key,
                'privateKey': self.identity.private_key,
            },
            'signedPrekey': {
                'publicKey': self.signed_prekey.public_key,
                'privateKey': self.signed_prekey.private_key,
                'signature': self.signed_prekey.signature,
            },
            'oneTimePrekeys': [pk.to_dict() for pk in self.one_time_prekeys],
            'sentMessageKeys': [item.to_dict() for item in self.sent_message_keys],
            'peerFingerprints': {uid: fp.to_dict() for uid, fp in self.peer_fingerprints.items()},
        }
        if self.last_registered_at is not None:
            data['lastRegisteredAt'] = self.last_registered_at
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DeviceState':
        identity = data['identity']
        spk = data['signedPrekey']
        fingerprints = data.get('peerFingerprints')
        if not isinstance(fingerprints, dict):
            fingerprints = {}
        return cls(
            version=data['version'],
            device_id=data['deviceId'],
            identity=KeyPairRecord(identity['publicKey'], identity['privateKey']),
            signed_prekey=SignedPrekey(spk['publicKey'], spk['privateKey'], spk.get('signature')),
            one_time_prekeys=[StoredPrekey.from_dict(pk) for pk in data.get('oneTimePrekeys') or []],
            sent_message_keys=[SentMessageKey.from_dict(item) for item in data.get('sentMessageKeys') or []],
            last_registered_at=data.get('lastRegisteredAt'),
            peer_fingerprints={
                str(uid): PeerFingerprint.from_dict(fp)
                for uid, fp in fingerprints.items()
            },
        )


# State transitions

def ensure_prekeys_available(state: DeviceState, count: int) -> DeviceState:
    """Append ``count`` freshly generated, not yet uploaded one-time prekeys"""
    created = now_ms()
    fresh = []
    for _ in range(count):
        kp = generate_dh_keypair()
        fresh.append(StoredPrekey(public_key=kp.public_key, private_key=kp.private_key, created_at=created))
    return replace(state, one_time_prekeys=[*state.one_time_prekeys, *fresh])


def remember_sent_key(state: DeviceState, entry: SentMessageKey, capacity: int = 200) -> DeviceState:
    existing = [item for item in state.sent_message_keys if item.message_id != entry.message_id]
    return replace(state, sent_message_keys=[entry, *existing][:capacity])


def purge_consumed_prekeys(state: DeviceState, retention_ms: int, now: Optional[int] = None) -> DeviceState:
    """Drop consumed prekeys whose grace window has elapsed"""
    cutoff = (now if now is not None else now_ms()) - retention_ms
    kept = [pk for pk in state.one_time_prekeys if pk.consumed_at is None or pk.consumed_at >= cutoff]
    return replace(state, one_time_prekeys=kept)


def mark_prekey_consumed(state: DeviceState, public_key: str, retention_ms: int) -> DeviceState:
    """
    Flag a one-time prekey consumed, then purge expired consumed keys.

    The first consumption time is kept when a key is consumed again by a
    retried decryption.
    """
    now = now_ms()
    updated = [
        replace(pk, consumed=True, consumed_at=pk.consumed_at or now) if pk.public_key == public_key else pk
        for pk in state.one_time_prekeys
    ]
    return purge_consumed_prekeys(replace(state, one_time_prekeys=updated), retention_ms, now)


def merge_prekeys(current: List[StoredPrekey], incoming: List[StoredPrekey]) -> List[StoredPrekey]:
    """
    Fold an older or concurrently produced prekey list into the live one.

    Flags only ever move forward: a key uploaded or consumed on either side
    stays so, with the earliest consumption time. Keys only ``incoming``
    knows are appended unless already consumed, since the live list has
    purged those.
    """
    by_key = {pk.public_key: pk for pk in incoming}
    merged = []
    for pk in current:
        other = by_key.get(pk.public_key)
        if other is not None:
            stamps = [ts for ts in (pk.consumed_at, other.consumed_at) if ts is not None]
            pk = replace(
                pk,
                uploaded=pk.uploaded or other.uploaded,
                consumed=pk.consumed or other.consumed,
                consumed_at=min(stamps) if stamps else None,
            )
        merged.append(pk)
    known = {pk.public_key for pk in current}
    merged.extend(pk for pk in incoming if pk.public_key not in known and not pk.consumed)
    return merged


def mark_uploaded(state: DeviceState, public_keys) -> DeviceState:
    keys = set(public_keys)
    return replace(
        state,
        one_time_prekeys=[replace(pk, uploaded=True) if pk.public_key in keys else pk for pk in state.one_time_prekeys],
    )


def set_fingerprint(state: DeviceState, user_id, fingerprint: PeerFingerprint) -> DeviceState:
    return replace(state, peer_fingerprints={**state.peer_fingerprints, str(user_id): fingerprint})


def build_fingerprint(bundle, timestamp: int) -> PeerFingerprint:
    return PeerFingerprint(
        device_id=bundle.device_id,
        identity_key=bundle.identity_key_pub,
        signed_prekey=bundle.signed_prekey_pub,
        updated_at=timestamp,
    )


def fingerprints_match(bundle, cached: Optional[PeerFingerprint]) -> bool:
    return bool(
        cached
        and cached.device_id == bundle.device_id
        and cached.identity_key == bundle.identity_key_pub
        and cached.signed_prekey == bundle.signed_prekey_pub
    )


def is_fingerprint_fresh(cached: Optional[PeerFingerprint], ttl_ms: int, now: Optional[int] = None) -> bool:
    if cached is None:
        return False
    return cached.updated_at >= (now if now is not None else now_ms()) - ttl_ms


def has_valid_prekey_signature(identity_pub_b64: str, prekey_pub_b64: str, sig_b64: Optional[str]) -> bool:
    """Check that the identity key signed the raw prekey bytes; never raises"""
    if not sig_b64 or not identity_pub_b64 or not prekey_pub_b64:
        return False
    try:
        signature = base64_to_bytes(sig_b64)
        identity = base64_to_bytes(identity_pub_b64)
        message = base64_to_bytes(prekey_pub_b64)
    except ValueError:
        return False
    if len(signature) != SIGNATURE_LENGTH or len(identity) != PUBLIC_KEY_LENGTH:
        return False
    return verify(message, signature, identity)


def sign_prekey(identity_priv_b64: str, prekey_pub_b64: str) -> str:
    return bytes_to_base64(sign(base64_to_bytes(prekey_pub_b64), base64_to_bytes(identity_priv_b64)))


class DeviceStateStore:
    """
    Load, create, validate and persist the device state.

    Args:
        storage: Integrity-checked key/value store
        config: Session configuration, defaults to ``SessionConfig.from_env()``
    """

    def __init__(self, storage: IntegrityStorage, config: Optional[SessionConfig] = None):
        self.storage = storage
        self.config = config or SessionConfig.from_env()

    async def load(self) -> Optional[DeviceState]:
        """
        Read the persisted state.

        A value found only under the legacy key is migrated to the current
        key. Unparsable values are removed and reported as absent.
        """
        raw = await self.storage.get_item(self.config.storage_key)
        if raw is None:
            raw = await self.storage.get_item(self.config.legacy_storage_key)
            if raw is None:
                return None
            logger.info("Migrating device state from legacy storage key")
            await self.storage.set_item(self.config.storage_key, raw)
            await self.storage.remove_item(self.config.legacy_storage_key)

        try:
            parsed = json.loads(raw)
            if not isinstance(parsed, dict):
                raise ValueError("device state is not an object")
            return DeviceState.from_dict(parsed)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Discarding unreadable device state: %s", e)
            await self.storage.remove_item(self.config.storage_key)
            return None

    async def save(self, state: DeviceState) -> None:
        await self.storage.set_item(self.config.storage_key, json.dumps(state.to_dict()))

    async def create_device_state(self) -> DeviceState:
        """Generate a new device: identity, signed prekey and initial prekey batch"""
        identity = generate_identity_keypair()
        signed = generate_dh_keypair()
        base = DeviceState(
            version=self.config.device_version,
            device_id=f"dev-{random_id(20)}",
            identity=KeyPairRecord(
                public_key=bytes_to_base64(identity.public_key),
                private_key=bytes_to_base64(identity.private_key),
            ),
            signed_prekey=SignedPrekey(public_key=signed.public_key, private_key=signed.private_key),
        )
        state = ensure_prekeys_available(base, self.config.initial_prekey_batch)
        signature = sign_prekey(state.identity.private_key, state.signed_prekey.public_key)
        state = replace(state, signed_prekey=replace(state.signed_prekey, signature=signature))
        await self.save(state)
        return state

    def ensure_signed_prekey_signature(self, state: DeviceState) -> DeviceState:
        """Re-sign the signed prekey if its signature does not verify"""
        spk = state.signed_prekey
        if has_valid_prekey_signature(state.identity.public_key, spk.public_key, spk.signature):
            return state
        try:
            signature = sign_prekey(state.identity.private_key, spk.public_key)
        except (ValueError, CryptoError) as e:
            logger.warning("[E2EE] Failed to (re)sign signedPrekey: %s", e)
            return state
        logger.info("[E2EE] Repaired signedPrekey signature")
        return replace(state, signed_prekey=replace(spk, signature=signature))

    async def ensure_device_state(self) -> DeviceState:
        """
        Load the device state, creating a new device when absent or when the
        schema version differs.
        """
        current = await self.load()
        if current is None or current.version != self.config.device_version:
            if current is None:
                logger.warning("[E2EE] Missing device state; generating a new device identity.")
            else:
                logger.warning(
                    "[E2EE] Device state version %s != %s; regenerating device",
                    current.version, self.config.device_version,
                )
            return await self.create_device_state()
        state = self.ensure_signed_prekey_signature(current)
        return purge_consumed_prekeys(state, self.config.consumed_prekey_retention_ms)
