"""HTTP-based RemoteStore client.

Speaks the realtime-database REST dialect:
  GET   {base_url}/{key}.json  -> document, or JSON null if absent
  PUT   {base_url}/{key}.json  -> replace document
  PATCH {base_url}/{key}.json  -> merge fields (null deletes a field)

An optional auth token is sent as the ``auth`` query parameter. There is
no retry: every transport or status failure surfaces as StoreError.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

import bittensor as bt
import httpx

from captchapay.ledger.errors import StoreError


class HTTPRemoteStore:
    """Client-side RemoteStore backed by a REST document store."""

    def __init__(
        self,
        base_url: str,
        auth_token: str | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._auth_token = auth_token
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    def _url(self, key: str) -> str:
        return f"{self.base_url}/{quote(key.strip('/'), safe='/')}.json"

    def _params(self) -> dict[str, str]:
        return {"auth": self._auth_token} if self._auth_token else {}

    async def _request(self, method: str, key: str, body: Any = None) -> httpx.Response:
        try:
            resp = await self._client.request(
                method, self._url(key), params=self._params(), json=body,
            )
        except httpx.HTTPError as e:
            bt.logging.warning({"remote_store": {"method": method, "key": key, "error": str(e)}})
            raise StoreError(f"{method} {key} failed: {e}") from e
        if resp.status_code >= 400:
            bt.logging.warning({"remote_store": {"method": method, "key": key, "status": resp.status_code}})
            raise StoreError(f"{method} {key} failed: {resp.status_code} {resp.text}")
        return resp

    # -- RemoteStore interface --

    async def read(self, key: str) -> Any | None:
        resp = await self._request("GET", key)
        try:
            return resp.json()
        except ValueError as e:
            raise StoreError(f"GET {key} returned invalid JSON") from e

    async def write(self, key: str, record: dict[str, Any]) -> None:
        await self._request("PUT", key, record)

    async def update(self, key: str, fields: dict[str, Any]) -> None:
        await self._request("PATCH", key, fields)


__all__ = ["HTTPRemoteStore"]
