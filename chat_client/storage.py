"""
Integrity-checked local key/value storage for the chat client.

``IntegrityStorage`` keeps a ``<key>-meta`` record (length, SHA-256 digest,
chunk count) next to every value and splits large values into numbered
parts. Any mismatch on read deletes the entry and reports it as absent.

Values are held by a driver: ``MemoryDriver`` for tests and ephemeral use,
or ``EncryptedStorage`` which keeps them AES-GCM encrypted in SQLite under a
key derived from the user's secret.
"""

import hashlib
import json
import logging
import os
import re
import sqlite3
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from e2ee.errors import MissingCredential

logger = logging.getLogger(__name__)

CHUNK_PREFIX = "__chunked__:"
DEFAULT_CHUNK_SIZE = 1800
PBKDF2_ITERATIONS = 150_000
_INVALID_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class StorageError(Exception):
    """Base exception for storage operations"""
    pass


class StorageDriver(Protocol):
    async def get_item(self, key: str) -> Optional[str]: ...

    async def set_item(self, key: str, value: str) -> None: ...

    async def delete_item(self, key: str) -> None: ...


def normalize_secure_store_key(key: str) -> str:
    """
    Map a key onto the ``[A-Za-z0-9._-]`` alphabet accepted by secure stores.

    Raises:
        StorageError: If nothing is left after trimming
    """
    normalized = _INVALID_KEY_CHARS.sub("_", key.strip())
    if not normalized:
        raise StorageError("Invalid storage key: key is empty after normalization")
    return normalized


class MemoryDriver:
    """Dictionary-backed driver"""

    def __init__(self, items: Optional[Dict[str, str]] = None):
        self.items: Dict[str, str] = dict(items or {})

    async def get_item(self, key: str) -> Optional[str]:
        return self.items.get(key)

    async def set_item(self, key: str, value: str) -> None:
        self.items[key] = value

    async def delete_item(self, key: str) -> None:
        self.items.pop(key, None)


class EncryptedStorage:
    """
    SQLite driver with every value encrypted on disk.

    The encryption key is derived from the user's secret with PBKDF2; the
    salt lives next to the database.
    """

    def __init__(self, username: str, storage_dir: str = "client_data"):
        """
        Initialize encrypted storage.

        Args:
            username: Username for this storage
            storage_dir: Directory to store encrypted data
        """
        self.username = username
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

        self.db_path = self.storage_dir / f"{username}.db"
        self.salt_path = self.storage_dir / f"{username}.salt"
        self.encryption_key: Optional[bytes] = None
        self.db: Optional[sqlite3.Connection] = None

    def derive_key(self, secret: str, salt: bytes) -> bytes:
        """
        Derive encryption key from the user secret using PBKDF2.

        Returns:
            32-byte encryption key
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=PBKDF2_ITERATIONS,
        )
        return kdf.derive(secret.encode())

    def unlock(self, secret: str) -> None:
        """
        Unlock storage with the user secret, creating it on first use.

        Raises:
            MissingCredential: If no secret is available
        """
        if not secret:
            raise MissingCredential("Missing user credential for key derivation")

        if self.salt_path.exists():
            salt = self.salt_path.read_bytes()
        else:
            salt = os.urandom(16)
            self.salt_path.write_bytes(salt)

        self.encryption_key = self.derive_key(secret, salt)
        self._init_database()

    def _init_database(self):
        """Initialize SQLite database"""
        self.db = sqlite3.connect(str(self.db_path))
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS items (
                key TEXT PRIMARY KEY,
                encrypted_value BLOB NOT NULL
            )
        """)
        self.db.commit()

    def _require_db(self) -> sqlite3.Connection:
        if not self.db or not self.encryption_key:
            raise StorageError("Storage not unlocked")
        return self.db

    def _encrypt(self, data: bytes) -> bytes:
        nonce = os.urandom(12)
        return nonce + AESGCM(self.encryption_key).encrypt(nonce, data, None)

    def _decrypt(self, encrypted_data: bytes) -> bytes:
        return AESGCM(self.encryption_key).decrypt(encrypted_data[:12], encrypted_data[12:], None)

    async def get_item(self, key: str) -> Optional[str]:
        db = self._require_db()
        row = db.execute("SELECT encrypted_value FROM items WHERE key = ?", (key,)).fetchone()
        if not row:
            return None
        try:
            return self._decrypt(row[0]).decode()
        except InvalidTag:
            logger.warning("Stored value for %s failed authentication", key)
            return None

    async def set_item(self, key: str, value: str) -> None:
        db = self._require_db()
        db.execute(
            "INSERT OR REPLACE INTO items (key, encrypted_value) VALUES (?, ?)",
            (key, self._encrypt(value.encode()))
        )
        db.commit()

    async def delete_item(self, key: str) -> None:
        db = self._require_db()
        db.execute("DELETE FROM items WHERE key = ?", (key,))
        db.commit()

    def close(self):
        """Close database connection"""
        if self.db:
            self.db.close()
            self.db = None


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _chunk(value: str, size: int) -> List[str]:
    return [value[i:i + size] for i in range(0, len(value), size)]


def _parse_meta(raw: Optional[str]) -> Optional[Dict]:
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(parsed, dict):
        return None
    meta = {}
    for field, kind in (("length", int), ("hash", str), ("chunkCount", int)):
        value = parsed.get(field)
        if isinstance(value, kind) and not isinstance(value, bool):
            meta[field] = value
    return meta


class IntegrityStorage:
    """
    Tamper-checked key/value store over a driver.

    Args:
        driver: Backing driver
        normalize_key: Optional key normalizer applied to every key
        chunk_size: Split values longer than this; 0 disables chunking
    """

    def __init__(
        self,
        driver: StorageDriver,
        normalize_key: Optional[Callable[[str], str]] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self.driver = driver
        self.normalize_key = normalize_key or (lambda key: key)
        self.chunk_size = chunk_size

    @staticmethod
    def _meta_key(key: str) -> str:
        return f"{key}-meta"

    @staticmethod
    def _part_key(key: str, index: int) -> str:
        return f"{key}-part-{index}"

    async def _delete_chunk_parts(self, key: str, known_count: int = 0) -> None:
        index = 1
        while index <= known_count or await self.driver.get_item(self._part_key(key, index)) is not None:
            await self.driver.delete_item(self._part_key(key, index))
            index += 1

    async def set_item(self, key: str, value: str) -> None:
        normalized = self.normalize_key(key)
        meta = {"length": len(value), "hash": _digest(value)}

        await self._delete_chunk_parts(normalized)
        if self.chunk_size > 0 and len(value) > self.chunk_size:
            parts = _chunk(value, self.chunk_size)
            for index, part in enumerate(parts, start=1):
                await self.driver.set_item(self._part_key(normalized, index), part)
            meta["chunkCount"] = len(parts)
            await self.driver.set_item(normalized, f"{CHUNK_PREFIX}{len(parts)}")
        else:
            await self.driver.set_item(normalized, value)
            meta["chunkCount"] = 0

        await self.driver.set_item(self._meta_key(normalized), json.dumps(meta))

    async def remove_item(self, key: str) -> None:
        await self._remove(self.normalize_key(key))

    async def _remove(self, normalized: str, known_chunks: int = 0) -> None:
        await self._delete_chunk_parts(normalized, known_chunks)
        await self.driver.delete_item(self._meta_key(normalized))
        await self.driver.delete_item(normalized)

    async def get_item(self, key: str) -> Optional[str]:
        """
        Read and verify a value.

        Returns:
            The stored value, or None if absent or if it failed verification
            (in which case the entry has been removed)
        """
        normalized = self.normalize_key(key)
        meta_key = self._meta_key(normalized)
        meta_raw = await self.driver.get_item(meta_key)
        base = await self.driver.get_item(normalized)

        if not base:
            await self.driver.delete_item(meta_key)
            await self._delete_chunk_parts(normalized)
            return None

        meta = _parse_meta(meta_raw)
        chunk_count_from_base = None
        if base.startswith(CHUNK_PREFIX):
            try:
                chunk_count_from_base = int(base[len(CHUNK_PREFIX):])
            except ValueError:
                logger.warning("Corrupt chunk marker for %s; removing entry", normalized)
                await self._remove(normalized)
                return None

        expected_chunks = (meta or {}).get("chunkCount", chunk_count_from_base or 0)
        if expected_chunks > 0:
            parts = [
                await self.driver.get_item(self._part_key(normalized, index))
                for index in range(1, expected_chunks + 1)
            ]
            if any(part is None for part in parts):
                logger.warning("Missing chunk for %s; removing entry", normalized)
                await self._remove(normalized, expected_chunks)
                return None
            value = "".join(parts)
        else:
            value = base

        digest = _digest(value)
        if meta and (meta.get("length", len(value)) != len(value) or meta.get("hash", digest) != digest):
            logger.warning("Integrity check failed for %s; removing entry", normalized)
            await self._remove(normalized, expected_chunks)
            return None

        if meta is None:
            await self.driver.set_item(
                meta_key,
                json.dumps({"length": len(value), "hash": digest, "chunkCount": expected_chunks}),
            )

        return value
