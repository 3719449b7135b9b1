"""
Client for the prekey directory service.

The directory stores each device's public identity key, signed prekey and
a pool of one-time prekeys, and hands them out to peers that want to start
a session.
"""

import logging
from typing import List, Optional, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class DirectoryError(Exception):
    """Directory request failed"""
    pass


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class DeviceBundle(_WireModel):
    """Published keys of one remote device"""
    device_id: str = Field(alias="deviceId")
    identity_key_pub: str = Field(alias="identityKeyPub")
    signed_prekey_pub: str = Field(alias="signedPrekeyPub")
    signed_prekey_sig: Optional[str] = Field(None, alias="signedPrekeySig")
    one_time_prekey_pub: Optional[str] = Field(None, alias="oneTimePrekeyPub")


class OneTimePrekeyPayload(_WireModel):
    prekey_id: Optional[int] = Field(None, alias="prekeyId")
    prekey_pub: str = Field(alias="prekeyPub")


class RegisterPayload(_WireModel):
    device_id: str = Field(alias="deviceId")
    name: Optional[str] = None
    platform: Optional[str] = None
    identity_key_pub: str = Field(alias="identityKeyPub")
    signed_prekey_pub: str = Field(alias="signedPrekeyPub")
    signed_prekey_sig: Optional[str] = Field(None, alias="signedPrekeySig")
    one_time_prekeys: List[OneTimePrekeyPayload] = Field(default_factory=list, alias="oneTimePrekeys")


class Directory(Protocol):
    """Operations the session engine needs from the directory"""

    async def register_device(self, payload: RegisterPayload) -> None: ...

    async def upload_prekeys(self, device_id: str, prekeys: List[OneTimePrekeyPayload]) -> None: ...

    async def list_device_bundles(self, user_id: int) -> List[DeviceBundle]: ...

    async def claim_prekey(self, user_id: int, device_id: str) -> DeviceBundle: ...

    async def get_prekey_stock(self, device_id: str) -> int: ...


class DirectoryClient:
    """
    HTTP client for the directory API.

    Args:
        base_url: Base URL of the directory service
        token: Bearer token identifying the local user
        http_client: Optional preconfigured httpx client
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        token: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.http_client = http_client or httpx.AsyncClient()

    def _headers(self) -> dict:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self.http_client.request(
                method, f"{self.base_url}{path}", headers=self._headers(), **kwargs
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise DirectoryError(
                f"{method} {path} failed with status {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise DirectoryError(f"{method} {path} failed: {e}") from e
        return response

    async def register_device(self, payload: RegisterPayload) -> None:
        await self._request("POST", "/api/e2ee/devices/register", json=payload.model_dump(by_alias=True))

    async def upload_prekeys(self, device_id: str, prekeys: List[OneTimePrekeyPayload]) -> None:
        if not prekeys:
            return
        await self._request(
            "POST",
            f"/api/e2ee/devices/{device_id}/prekeys",
            json=[pk.model_dump(by_alias=True) for pk in prekeys],
        )

    async def list_device_bundles(self, user_id: int) -> List[DeviceBundle]:
        data = (await self._request("GET", f"/api/e2ee/users/{user_id}/devices")).json()
        if not isinstance(data, list):
            return []
        return [DeviceBundle.model_validate(item) for item in data]

    async def claim_prekey(self, user_id: int, device_id: str) -> DeviceBundle:
        response = await self._request(
            "POST", "/api/e2ee/claim-prekey", params={"userId": user_id, "deviceId": device_id}
        )
        return DeviceBundle.model_validate(response.json())

    async def get_prekey_stock(self, device_id: str) -> int:
        data = (await self._request("GET", f"/api/e2ee/devices/{device_id}/stock")).json()
        try:
            return int(data)
        except (TypeError, ValueError):
            logger.warning("Non-numeric prekey stock for %s: %r", device_id, data)
            return 0

    async def aclose(self):
        await self.http_client.aclose()
