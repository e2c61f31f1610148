"""Filesystem-based DeviceCache implementation.

One file per cache key under a local directory:
  {cache_dir}/{quoted_key}.json

Writes are atomic (tmp + rename), so a crash never leaves a half-written
snapshot behind.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from urllib.parse import quote

import bittensor as bt

from captchapay.ledger.errors import StoreError


class FilesystemDeviceCache:
    """Local filesystem DeviceCache implementation."""

    def __init__(self, cache_dir: str):
        self.base = Path(cache_dir)
        self.base.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        # Identities are opaque; quote everything so keys map to one flat file
        return self.base / f"{quote(key, safe='')}.json"

    async def get(self, key: str) -> str | None:
        path = self.path_for(key)
        if not path.exists():
            return None
        try:
            with open(path, encoding="utf-8") as f:
                return f.read()
        except OSError as e:
            raise StoreError(f"cache read failed for {key}: {e}") from e

    async def set(self, key: str, snapshot: str) -> None:
        path = self.path_for(key)
        try:
            tmp_fd, tmp_path = tempfile.mkstemp(dir=str(self.base), suffix=".tmp")
        except OSError as e:
            raise StoreError(f"cache write failed for {key}: {e}") from e
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
                f.write(snapshot)
            os.replace(tmp_path, str(path))
        except OSError as e:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise StoreError(f"cache write failed for {key}: {e}") from e
        bt.logging.debug({"device_cache": {"key": key, "bytes": len(snapshot)}})


__all__ = ["FilesystemDeviceCache"]
