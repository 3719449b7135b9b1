"""
Client side of the E2EE device session protocol.
"""

from .api import DeviceBundle, DirectoryClient, DirectoryError
from .config import SessionConfig
from .device_state import DeviceState, DeviceStateStore
from .session import DecryptContext, E2EESession
from .storage import EncryptedStorage, IntegrityStorage, MemoryDriver

__all__ = [
    'DeviceBundle',
    'DirectoryClient',
    'DirectoryError',
    'SessionConfig',
    'DeviceState',
    'DeviceStateStore',
    'DecryptContext',
    'E2EESession',
    'EncryptedStorage',
    'IntegrityStorage',
    'MemoryDriver'
]
