"""
Session configuration.

Every protocol constant has a default matching the deployed clients; each
can be overridden through an ``E2EE_*`` environment variable.
"""

import os
import sys

from pydantic import BaseModel

DAY_MS = 24 * 60 * 60 * 1000


class SessionConfig(BaseModel):
    """Tunables for the device state store and session engine"""

    device_version: int = 25
    initial_prekey_batch: int = 10
    min_server_stock: int = 5
    consumed_prekey_retention_ms: int = 7 * DAY_MS
    fingerprint_ttl_ms: int = DAY_MS
    sent_key_capacity: int = 200
    # Accept peer bundles whose signed prekey fails verification when no
    # bundle verifies. Logged every time it is taken.
    allow_unverified_fallback: bool = True
    device_name: str = "Secure Chat"
    platform: str = sys.platform
    storage_key: str = "e2ee.device-state.v1"
    legacy_storage_key: str = "e2ee:device-state:v1"

    @classmethod
    def from_env(cls) -> "SessionConfig":
        """Build a config from E2EE_* environment variables"""
        overrides = {}
        for name in cls.model_fields:
            value = os.environ.get(f"E2EE_{name.upper()}")
            if value is not None:
                overrides[name] = value
        return cls.model_validate(overrides)
