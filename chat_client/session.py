"""
E2EE session engine.

Bootstraps the local device with the directory, encrypts messages for a
remote user with a one-shot DH exchange against one of their prekeys, and
decrypts incoming envelopes with a single rebuild-and-retry on recoverable
failures.

All device state changes go through ``E2EESession._with_state``, which runs
updates one at a time in submission order and persists each result.
"""

import asyncio
import enum
import inspect
import logging
import sqlite3
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, List, Optional, Union

from e2ee.dh import compute_from_ephemeral, derive_ephemeral
from e2ee.encoding import base64_to_bytes
from e2ee.envelope import (
    SIGNED_PREKEY_REF,
    EncryptResult,
    Envelope,
    decrypt_payload,
    encrypt_payload,
    one_time_key_ref,
    parse_meta,
)
from e2ee.errors import (
    CryptoError,
    DeviceFingerprintMismatch,
    InvalidPublicKey,
    MissingEphemeralKey,
    MissingLocalKey,
    NoUsableDeviceBundle,
    UnknownPrekey,
)

from .api import DeviceBundle, Directory, DirectoryError, OneTimePrekeyPayload, RegisterPayload
from .config import SessionConfig
from .device_state import (
    DeviceState,
    DeviceStateStore,
    SentMessageKey,
    StoredPrekey,
    build_fingerprint,
    ensure_prekeys_available,
    fingerprints_match,
    has_valid_prekey_signature,
    is_fingerprint_fresh,
    mark_prekey_consumed,
    mark_uploaded,
    merge_prekeys,
    now_ms,
    remember_sent_key,
    set_fingerprint,
)
from .storage import StorageError

logger = logging.getLogger(__name__)

StateUpdate = Callable[[DeviceState], Union[DeviceState, Awaitable[DeviceState]]]


@dataclass
class DecryptContext:
    """Transport metadata that accompanies an incoming envelope"""
    sender_id: Optional[int] = None
    sender_device_id: Optional[str] = None
    session_id: Optional[str] = None


class _Attempt(enum.Enum):
    FIRST = "first"
    RETRYING = "retrying"


def _bundle_is_valid(bundle: DeviceBundle) -> bool:
    return has_valid_prekey_signature(bundle.identity_key_pub, bundle.signed_prekey_pub, bundle.signed_prekey_sig)


def _adopt_refreshed(current: DeviceState, refreshed: DeviceState) -> DeviceState:
    """Apply a state refreshed outside the update queue onto the live state"""
    if current.device_id != refreshed.device_id:
        # Regenerated device: nothing of the old prekey set applies
        return replace(
            refreshed,
            sent_message_keys=current.sent_message_keys,
            peer_fingerprints={**refreshed.peer_fingerprints, **current.peer_fingerprints},
        )
    return replace(
        current,
        signed_prekey=refreshed.signed_prekey,
        one_time_prekeys=merge_prekeys(current.one_time_prekeys, refreshed.one_time_prekeys),
        last_registered_at=current.last_registered_at or refreshed.last_registered_at,
    )


def _to_uploadable(prekeys: List[StoredPrekey]) -> List[OneTimePrekeyPayload]:
    return [OneTimePrekeyPayload(prekey_id=pk.prekey_id, prekey_pub=pk.public_key) for pk in prekeys]


async def register_if_needed(state: DeviceState, directory: Directory, config: SessionConfig) -> DeviceState:
    """
    Register the device on first run, otherwise upload pending prekeys.

    Returns:
        State with the sent prekeys flagged uploaded (and the registration
        time set on first registration)

    Raises:
        DirectoryError: If the directory rejects the request
    """
    pending = state.pending_prekeys()
    if state.last_registered_at:
        if not pending:
            return state
        try:
            await directory.upload_prekeys(state.device_id, _to_uploadable(pending))
        except DirectoryError:
            logger.warning("[E2EE] Failed to upload prekeys", exc_info=True)
            raise
        return mark_uploaded(state, [pk.public_key for pk in pending])

    payload = RegisterPayload(
        device_id=state.device_id,
        name=config.device_name,
        platform=config.platform,
        identity_key_pub=state.identity.public_key,
        signed_prekey_pub=state.signed_prekey.public_key,
        signed_prekey_sig=state.signed_prekey.signature,
        one_time_prekeys=_to_uploadable(pending),
    )
    try:
        await directory.register_device(payload)
    except DirectoryError:
        logger.warning("[E2EE] Failed to register device", exc_info=True)
        raise
    registered = mark_uploaded(state, [pk.public_key for pk in state.one_time_prekeys])
    return replace(registered, last_registered_at=now_ms())


async def replenish_prekeys(state: DeviceState, directory: Directory, config: SessionConfig) -> DeviceState:
    """Top the directory's one-time prekey stock back up to the floor"""
    stock = await directory.get_prekey_stock(state.device_id)
    if stock >= config.min_server_stock:
        return state

    needed = config.min_server_stock - stock
    available = len(state.pending_prekeys())
    if available < needed:
        state = ensure_prekeys_available(state, needed - available)
    to_send = state.pending_prekeys()[:needed]
    if not to_send:
        return state
    await directory.upload_prekeys(state.device_id, _to_uploadable(to_send))
    logger.info("[E2EE] Replenished %d one-time prekeys (server stock was %d)", len(to_send), stock)
    return mark_uploaded(state, [pk.public_key for pk in to_send])


class E2EESession:
    """
    Encrypted session endpoint for one local device.

    Build it with ``E2EESession.bootstrap`` so the device is registered and
    stocked with prekeys before use.
    """

    def __init__(
        self,
        state: DeviceState,
        store: DeviceStateStore,
        directory: Directory,
        config: Optional[SessionConfig] = None,
    ):
        self._state = state
        self.store = store
        self.directory = directory
        self.config = config or store.config
        self._lock = asyncio.Lock()

    @classmethod
    async def bootstrap(
        cls,
        store: DeviceStateStore,
        directory: Directory,
        config: Optional[SessionConfig] = None,
    ) -> 'E2EESession':
        """
        Prepare the local device and return a ready session.

        Loads or creates the device state, registers it (or uploads pending
        prekeys), replenishes the directory stock and persists the result.
        """
        config = config or store.config
        state = await store.ensure_device_state()
        state = await register_if_needed(state, directory, config)
        state = await replenish_prekeys(state, directory, config)
        await store.save(state)
        return cls(state, store, directory, config)

    @property
    def device_id(self) -> str:
        return self._state.device_id

    @property
    def state(self) -> DeviceState:
        """Snapshot of the current device state"""
        return self._state.copy()

    def _log_event(self, event: str, **details) -> None:
        logger.info("[E2EE] %s %s", event, details)

    async def _with_state(self, update: StateUpdate) -> None:
        async with self._lock:
            result = update(self._state)
            if inspect.isawaitable(result):
                result = await result
            self._state = result
            try:
                await self.store.save(result)
            except (StorageError, sqlite3.Error, OSError):
                logger.warning("[E2EE] Failed to persist device state", exc_info=True)

    async def rebuild_session(self, user_id: Optional[int] = None, expected_device_id: Optional[str] = None) -> bool:
        """
        Refresh local registration and, for a remote user, their fingerprint.

        Safe to call repeatedly.

        Returns:
            True if the session was rebuilt, False otherwise
        """
        try:
            refreshed = await self.store.ensure_device_state()
            registered = await register_if_needed(refreshed, self.directory, self.config)
            replenished = await replenish_prekeys(registered, self.directory, self.config)
            await self._with_state(lambda current: _adopt_refreshed(current, replenished))

            if user_id is None:
                return True

            bundles = await self.directory.list_device_bundles(user_id)
            candidates = [bundle for bundle in bundles if _bundle_is_valid(bundle)]
            if not candidates:
                return False

            target = candidates[0]
            if expected_device_id:
                target = next((b for b in candidates if b.device_id == expected_device_id), target)
            bundle = await self.directory.claim_prekey(user_id, target.device_id)
            if not _bundle_is_valid(bundle):
                return False

            fingerprint = build_fingerprint(bundle, now_ms())
            await self._with_state(lambda current: set_fingerprint(current, user_id, fingerprint))
            self._log_event("session-rebuilt", sender_id=user_id, device_id=fingerprint.device_id)
            return True
        except (DirectoryError, CryptoError, StorageError):
            logger.warning(
                "[E2EE] Failed to rebuild session (user=%s, device=%s)",
                user_id, expected_device_id, exc_info=True,
            )
            return False

    async def encrypt_for_user(self, target_user_id: int, message_id: str, plaintext: str) -> Optional[EncryptResult]:
        """
        Encrypt a message for one device of a remote user.

        Args:
            target_user_id: Recipient user id
            message_id: Local message id, remembered for local echo
            plaintext: Message text

        Returns:
            EncryptResult, or None if the recipient has no usable device
        """
        if not plaintext:
            return None
        try:
            return await self._encrypt_for_user(target_user_id, message_id, plaintext)
        except NoUsableDeviceBundle as e:
            logger.warning("[E2EE] Cannot encrypt for user %s: %s", target_user_id, e)
            return None

    async def _encrypt_for_user(self, target_user_id: int, message_id: str, plaintext: str) -> EncryptResult:
        devices = await self.directory.list_device_bundles(target_user_id)
        if not devices:
            raise NoUsableDeviceBundle("No published device bundles")

        validated = [device for device in devices if _bundle_is_valid(device)]
        if validated:
            usable = validated
        elif self.config.allow_unverified_fallback:
            logger.warning(
                "[E2EE] No verified device signatures for user %s; falling back to unsigned bundle",
                target_user_id,
            )
            usable = devices
        else:
            raise NoUsableDeviceBundle("No device bundle carries a valid signature")

        cached = self._state.fingerprint_for(target_user_id)
        if not is_fingerprint_fresh(cached, self.config.fingerprint_ttl_ms):
            cached = None
        preferred = next((b for b in usable if fingerprints_match(b, cached)), None) if cached else None
        target = preferred or usable[0]

        bundle = await self.directory.claim_prekey(target_user_id, target.device_id)
        if not _bundle_is_valid(bundle):
            if not self.config.allow_unverified_fallback:
                raise NoUsableDeviceBundle("Claimed bundle signature is invalid")
            logger.warning("[E2EE] Proceeding with claimed bundle despite missing/invalid signature")

        now = now_ms()
        fingerprint = build_fingerprint(bundle, now)
        if cached and not fingerprints_match(bundle, cached):
            logger.warning("[E2EE] Detected changed device fingerprint for user %s", target_user_id)

        prekey = bundle.one_time_prekey_pub or bundle.signed_prekey_pub
        if not prekey:
            raise NoUsableDeviceBundle("Claimed bundle carries no prekey")
        try:
            exchange = derive_ephemeral(prekey)
        except (InvalidPublicKey, ValueError) as e:
            raise NoUsableDeviceBundle("Claimed prekey is not a valid public value") from e

        key_ref = one_time_key_ref(bundle.one_time_prekey_pub) if bundle.one_time_prekey_pub else SIGNED_PREKEY_REF
        result = encrypt_payload(exchange.shared, plaintext, key_ref, exchange.ephemeral_public)
        result.envelope.message_id = message_id

        entry = SentMessageKey(message_id=message_id, key=result.shared_key, created_at=now)
        await self._with_state(lambda current: set_fingerprint(
            remember_sent_key(current, entry, self.config.sent_key_capacity),
            target_user_id,
            fingerprint,
        ))
        return result

    async def decrypt_envelope(
        self,
        envelope: Envelope,
        from_self: bool = False,
        context: Optional[DecryptContext] = None,
    ) -> str:
        """
        Authenticate and decrypt an envelope.

        A recoverable failure on the first attempt (unknown prekey, device
        fingerprint mismatch) triggers one session rebuild and one retry.

        Raises:
            CryptoError: Terminal failure for this message
        """
        context = context or DecryptContext()
        for attempt in _Attempt:
            retrying = attempt is _Attempt.RETRYING
            try:
                return await self._attempt_decrypt(envelope, from_self, context, retrying)
            except CryptoError as err:
                self._log_event(
                    "decrypt-failed",
                    sender_id=context.sender_id,
                    sender_device_id=context.sender_device_id,
                    session_id=context.session_id or envelope.key_ref or "unknown",
                    retrying=retrying,
                    reason=type(err).__name__,
                )
                if from_self or retrying or not err.recoverable:
                    raise
                if not await self.rebuild_session(context.sender_id, context.sender_device_id):
                    raise

    async def _attempt_decrypt(
        self,
        envelope: Envelope,
        from_self: bool,
        context: DecryptContext,
        retrying: bool,
    ) -> str:
        ids = {
            "sender_id": context.sender_id,
            "sender_device_id": context.sender_device_id,
            "session_id": context.session_id or envelope.key_ref or "unknown",
        }

        local = self._state.find_sent_key(envelope.message_id)
        if local:
            self._log_event("decrypt-self", **ids, retrying=retrying, inferred=not from_self)
            return decrypt_payload(base64_to_bytes(local.key), envelope)
        if from_self:
            raise MissingLocalKey("Missing local key")

        meta = parse_meta(envelope.aad)
        ephemeral = meta.get("e")
        if not isinstance(ephemeral, str):
            raise MissingEphemeralKey("Missing ephemeral key")

        cached = self._state.fingerprint_for(context.sender_id)
        if cached and not is_fingerprint_fresh(cached, self.config.fingerprint_ttl_ms):
            self._log_event("stale-session", **ids, cached_device_id=cached.device_id)
            await self.rebuild_session(context.sender_id, context.sender_device_id or cached.device_id)
            cached = self._state.fingerprint_for(context.sender_id)

        if (
            context.sender_device_id
            and cached
            and cached.device_id != context.sender_device_id
            and not retrying
        ):
            self._log_event(
                "duplicate-device",
                sender_id=context.sender_id,
                expected_device=context.sender_device_id,
                cached_device=cached.device_id,
                session_id=ids["session_id"],
            )
            raise DeviceFingerprintMismatch("Device fingerprint mismatch")

        prekey_pub = envelope.one_time_prekey()
        if prekey_pub is not None:
            record = self._state.find_prekey(prekey_pub)
            self._log_event("lookup-prekey", **ids, found=record is not None)
            if record is None:
                record = await self._reload_prekey(prekey_pub)
            if record is None:
                raise UnknownPrekey("Unknown prekey")
            shared = compute_from_ephemeral(record.private_key, ephemeral)
            await self._with_state(lambda current: self._consume_prekey(current, prekey_pub))
        else:
            self._log_event("decrypt-with-session", **ids)
            shared = compute_from_ephemeral(self._state.signed_prekey.private_key, ephemeral)

        return decrypt_payload(shared, envelope)

    async def _reload_prekey(self, public_key: str) -> Optional[StoredPrekey]:
        persisted = await self.store.load()
        if persisted is None or persisted.device_id != self._state.device_id:
            return None
        record = persisted.find_prekey(public_key)
        if record is not None:
            await self._with_state(lambda current: replace(
                current, one_time_prekeys=merge_prekeys(current.one_time_prekeys, persisted.one_time_prekeys)
            ))
        return record

    async def _consume_prekey(self, state: DeviceState, public_key: str) -> DeviceState:
        marked = mark_prekey_consumed(state, public_key, self.config.consumed_prekey_retention_ms)
        try:
            return await replenish_prekeys(marked, self.directory, self.config)
        except DirectoryError:
            logger.warning("[E2EE] Failed to replenish prekeys after consumption", exc_info=True)
            return marked
