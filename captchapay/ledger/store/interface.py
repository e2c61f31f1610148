"""Store protocols - pluggable transport interfaces.

RemoteStore implementations: MemoryRemoteStore, HTTPRemoteStore.
DeviceCache implementations: MemoryDeviceCache, FilesystemDeviceCache.

Implementations raise StoreError on I/O failure. Records cross these
interfaces as raw JSON-compatible values; parsing into UserLedger happens
in captchapay.ledger.models.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class RemoteStore(Protocol):
    """Authoritative keyed document store. No transactions, no versioning."""

    async def read(self, key: str) -> Any | None:
        """Fetch the document at key. Returns None if absent."""
        ...

    async def write(self, key: str, record: dict[str, Any]) -> None:
        """Replace the document at key."""
        ...

    async def update(self, key: str, fields: dict[str, Any]) -> None:
        """Merge fields into the document at key."""
        ...


@runtime_checkable
class DeviceCache(Protocol):
    """Non-authoritative local mirror. No TTL, no eviction."""

    async def get(self, key: str) -> str | None:
        """Fetch a serialized snapshot. Returns None if absent."""
        ...

    async def set(self, key: str, snapshot: str) -> None:
        """Store a serialized snapshot."""
        ...


__all__ = ["DeviceCache", "RemoteStore"]
