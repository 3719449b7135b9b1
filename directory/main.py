"""
FastAPI prekey directory for end-to-end encrypted chat.

This server:
- Stores each device's identity key, signed prekey and one-time prekeys
- Lists a user's devices so peers can pick one to encrypt for
- Hands out one-time prekeys, each exactly once
- Never sees private keys or message contents
"""

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from .auth import current_user_id
from .database import Database

logger = logging.getLogger(__name__)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class OneTimePrekeyIn(_CamelModel):
    prekey_id: Optional[int] = Field(None, alias="prekeyId")
    prekey_pub: str = Field(alias="prekeyPub")


class DeviceRegistration(_CamelModel):
    device_id: str = Field(alias="deviceId")
    name: Optional[str] = None
    platform: Optional[str] = None
    identity_key_pub: str = Field(alias="identityKeyPub")
    signed_prekey_pub: str = Field(alias="signedPrekeyPub")
    signed_prekey_sig: Optional[str] = Field(None, alias="signedPrekeySig")
    one_time_prekeys: List[OneTimePrekeyIn] = Field(default_factory=list, alias="oneTimePrekeys")


db = Database()


def get_database() -> Database:
    """Database dependency; overridden in tests"""
    return db


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    await db.create_tables()
    logger.info("Directory database initialized")
    yield
    await db.dispose()
    logger.info("Directory shutting down")


app = FastAPI(
    title="E2EE Prekey Directory",
    description="Device bundle and one-time prekey directory for end-to-end encrypted chat",
    version="1.0.0",
    lifespan=lifespan
)


async def _owned_device(database: Database, device_id: str, user_id: int):
    device = await database.get_device(device_id)
    if not device:
        raise HTTPException(status_code=404, detail="Unknown device")
    if device.user_id != user_id:
        raise HTTPException(status_code=403, detail="Not authorized")
    return device


@app.post("/api/e2ee/devices/register")
async def register_device(
    registration: DeviceRegistration,
    user_id: int = Depends(current_user_id),
    database: Database = Depends(get_database),
):
    """
    Register a device or replace its published keys.

    The supplied one-time prekeys are added to the device's stock.
    """
    registered = await database.register_device(
        user_id=user_id,
        device_id=registration.device_id,
        identity_key_pub=registration.identity_key_pub,
        signed_prekey_pub=registration.signed_prekey_pub,
        signed_prekey_sig=registration.signed_prekey_sig,
        prekeys=[pk.model_dump() for pk in registration.one_time_prekeys],
        name=registration.name,
        platform=registration.platform,
    )
    if not registered:
        raise HTTPException(status_code=403, detail="Device belongs to another user")

    logger.info("Registered device %s for user %s", registration.device_id, user_id)
    return {"status": "success", "deviceId": registration.device_id}


@app.post("/api/e2ee/devices/{device_id}/prekeys")
async def upload_prekeys(
    device_id: str,
    prekeys: List[OneTimePrekeyIn],
    user_id: int = Depends(current_user_id),
    database: Database = Depends(get_database),
):
    """Append one-time prekeys to a device the caller owns"""
    await _owned_device(database, device_id, user_id)
    added = await database.upload_prekeys(device_id, [pk.model_dump() for pk in prekeys])
    return {"status": "success", "added": added}


@app.get("/api/e2ee/users/{target_user_id}/devices")
async def list_devices(
    target_user_id: int,
    user_id: int = Depends(current_user_id),
    database: Database = Depends(get_database),
):
    """List a user's device bundles without revealing any one-time prekey"""
    devices = await database.list_devices(target_user_id)
    return [device.to_bundle() for device in devices]


@app.post("/api/e2ee/claim-prekey")
async def claim_prekey(
    target_user_id: int = Query(alias="userId"),
    device_id: str = Query(alias="deviceId"),
    user_id: int = Depends(current_user_id),
    database: Database = Depends(get_database),
):
    """
    Claim a bundle for starting a session with a device.

    ``oneTimePrekeyPub`` is null once the device's stock is exhausted; the
    caller then falls back to the signed prekey.
    """
    bundle = await database.claim_prekey(target_user_id, device_id)
    if bundle is None:
        raise HTTPException(status_code=404, detail="Unknown device")
    if bundle["oneTimePrekeyPub"] is None:
        logger.warning("One-time prekey stock exhausted for device %s", device_id)
    return bundle


@app.get("/api/e2ee/devices/{device_id}/stock")
async def prekey_stock(
    device_id: str,
    user_id: int = Depends(current_user_id),
    database: Database = Depends(get_database),
):
    """Number of unclaimed one-time prekeys of a device the caller owns"""
    await _owned_device(database, device_id, user_id)
    return await database.count_unconsumed(device_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
