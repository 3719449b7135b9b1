"""
Database models and operations for the prekey directory.

Uses SQLAlchemy with SQLite for storing device bundles and one-time prekeys.
Note: private keys and messages never reach the directory.
"""

import os
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

Base = declarative_base()

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./directory.db"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Device(Base):
    """Published identity and signed prekey of one device"""
    __tablename__ = "devices"

    device_id = Column(String(64), primary_key=True)
    user_id = Column(Integer, index=True, nullable=False)
    name = Column(String(128), nullable=True)
    platform = Column(String(64), nullable=True)
    identity_key_pub = Column(String(128), nullable=False)  # Ed25519 public key (base64)
    signed_prekey_pub = Column(String(128), nullable=False)  # DH public value (base64)
    signed_prekey_sig = Column(String(128), nullable=True)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    def to_bundle(self, one_time_prekey_pub: Optional[str] = None, include_one_time: bool = False) -> dict:
        bundle = {
            "deviceId": self.device_id,
            "identityKeyPub": self.identity_key_pub,
            "signedPrekeyPub": self.signed_prekey_pub,
            "signedPrekeySig": self.signed_prekey_sig,
        }
        if include_one_time:
            bundle["oneTimePrekeyPub"] = one_time_prekey_pub
        return bundle


class OneTimePrekey(Base):
    """Single-use prekey waiting to be claimed"""
    __tablename__ = "one_time_prekeys"

    id = Column(Integer, primary_key=True, autoincrement=True)
    device_id = Column(String(64), ForeignKey("devices.device_id"), index=True, nullable=False)
    prekey_id = Column(Integer, nullable=True)
    prekey_pub = Column(String(128), nullable=False)
    consumed = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=_utcnow)
    consumed_at = Column(DateTime, nullable=True)


class Database:
    """Database manager for async operations"""

    def __init__(self, database_url: Optional[str] = None):
        """
        Initialize database connection.

        Args:
            database_url: SQLAlchemy database URL, defaults to
                ``DIRECTORY_DATABASE_URL`` or a local SQLite file
        """
        self.database_url = database_url or os.environ.get("DIRECTORY_DATABASE_URL", DEFAULT_DATABASE_URL)
        self.engine = create_async_engine(self.database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        """Create all tables"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()

    @staticmethod
    async def _add_prekeys(session: AsyncSession, device_id: str, prekeys: List[dict]) -> int:
        """Insert prekeys not already known for the device; returns how many were added"""
        result = await session.execute(
            select(OneTimePrekey.prekey_pub).where(OneTimePrekey.device_id == device_id)
        )
        known = {row[0] for row in result.all()}
        added = 0
        for prekey in prekeys:
            if prekey["prekey_pub"] in known:
                continue
            known.add(prekey["prekey_pub"])
            session.add(OneTimePrekey(
                device_id=device_id,
                prekey_id=prekey.get("prekey_id"),
                prekey_pub=prekey["prekey_pub"],
            ))
            added += 1
        return added

    async def register_device(
        self,
        user_id: int,
        device_id: str,
        identity_key_pub: str,
        signed_prekey_pub: str,
        signed_prekey_sig: Optional[str],
        prekeys: List[dict],
        name: Optional[str] = None,
        platform: Optional[str] = None,
    ) -> bool:
        """
        Create or replace a device's published keys.

        Returns:
            False if the device id belongs to another user
        """
        async with self.async_session() as session:
            device = await session.get(Device, device_id)
            if device and device.user_id != user_id:
                return False

            if device:
                device.identity_key_pub = identity_key_pub
                device.signed_prekey_pub = signed_prekey_pub
                device.signed_prekey_sig = signed_prekey_sig
                device.name = name
                device.platform = platform
                device.updated_at = _utcnow()
            else:
                session.add(Device(
                    device_id=device_id,
                    user_id=user_id,
                    name=name,
                    platform=platform,
                    identity_key_pub=identity_key_pub,
                    signed_prekey_pub=signed_prekey_pub,
                    signed_prekey_sig=signed_prekey_sig,
                ))
                await session.flush()

            await self._add_prekeys(session, device_id, prekeys)
            await session.commit()
            return True

    async def get_device(self, device_id: str) -> Optional[Device]:
        async with self.async_session() as session:
            return await session.get(Device, device_id)

    async def upload_prekeys(self, device_id: str, prekeys: List[dict]) -> int:
        async with self.async_session() as session:
            added = await self._add_prekeys(session, device_id, prekeys)
            await session.commit()
            return added

    async def list_devices(self, user_id: int) -> List[Device]:
        async with self.async_session() as session:
            result = await session.execute(
                select(Device).where(Device.user_id == user_id).order_by(Device.updated_at.desc())
            )
            return list(result.scalars().all())

    async def claim_prekey(self, user_id: int, device_id: str) -> Optional[dict]:
        """
        Claim the oldest unconsumed one-time prekey of a device.

        The prekey is marked consumed with a conditional update, so two
        concurrent claims never receive the same key.

        Returns:
            Bundle with ``oneTimePrekeyPub`` set, or None for an unknown device
        """
        async with self.async_session() as session:
            device = await session.get(Device, device_id)
            if not device or device.user_id != user_id:
                return None

            while True:
                result = await session.execute(
                    select(OneTimePrekey)
                    .where(OneTimePrekey.device_id == device_id, OneTimePrekey.consumed == False)
                    .order_by(OneTimePrekey.id)
                    .limit(1)
                )
                prekey = result.scalar_one_or_none()
                if prekey is None:
                    return device.to_bundle(None, include_one_time=True)

                claimed = await session.execute(
                    update(OneTimePrekey)
                    .where(OneTimePrekey.id == prekey.id, OneTimePrekey.consumed == False)
                    .values(consumed=True, consumed_at=_utcnow())
                )
                await session.commit()
                if claimed.rowcount == 1:
                    return device.to_bundle(prekey.prekey_pub, include_one_time=True)

    async def count_unconsumed(self, device_id: str) -> int:
        async with self.async_session() as session:
            result = await session.execute(
                select(func.count(OneTimePrekey.id))
                .where(OneTimePrekey.device_id == device_id, OneTimePrekey.consumed == False)
            )
            return result.scalar_one()
