from .filesystem import FilesystemDeviceCache
from .http_client import HTTPRemoteStore
from .interface import DeviceCache, RemoteStore
from .memory import MemoryDeviceCache, MemoryRemoteStore

__all__ = [
    "DeviceCache",
    "FilesystemDeviceCache",
    "HTTPRemoteStore",
    "MemoryDeviceCache",
    "MemoryRemoteStore",
    "RemoteStore",
]
