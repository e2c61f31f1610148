"""In-process RemoteStore and DeviceCache implementations.

Backs the development document server and the test suite. Records are
deep-copied on the way in and out so callers never share state with the
store.
"""

from __future__ import annotations

import copy
from typing import Any


class MemoryRemoteStore:
    """Dict-backed RemoteStore."""

    def __init__(self, documents: dict[str, dict[str, Any]] | None = None):
        self.documents: dict[str, dict[str, Any]] = copy.deepcopy(documents or {})

    async def read(self, key: str) -> Any | None:
        doc = self.documents.get(key)
        return copy.deepcopy(doc) if doc is not None else None

    async def write(self, key: str, record: dict[str, Any]) -> None:
        self.documents[key] = _drop_nulls(copy.deepcopy(record))

    async def update(self, key: str, fields: dict[str, Any]) -> None:
        doc = self.documents.setdefault(key, {})
        for name, value in fields.items():
            # Null leaves delete the field, as in realtime document stores
            if value is None:
                doc.pop(name, None)
            else:
                doc[name] = copy.deepcopy(value)


class MemoryDeviceCache:
    """Dict-backed DeviceCache."""

    def __init__(self, entries: dict[str, str] | None = None):
        self.entries: dict[str, str] = dict(entries or {})

    async def get(self, key: str) -> str | None:
        return self.entries.get(key)

    async def set(self, key: str, snapshot: str) -> None:
        self.entries[key] = snapshot


def _drop_nulls(record: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in record.items() if v is not None}


__all__ = ["MemoryDeviceCache", "MemoryRemoteStore"]
