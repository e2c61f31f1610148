"""HTTP endpoint exposing a RemoteStore over the REST document dialect.

Runs as an async task in the caller's event loop. Routes:
  GET   /{key}.json - fetch a document (JSON null if absent)
  PUT   /{key}.json - replace a document
  PATCH /{key}.json - merge fields into a document
  GET   /health     - liveness probe

When an auth token is configured every document route requires a matching
``auth`` query parameter.
"""

from __future__ import annotations

import secrets

import bittensor as bt
from aiohttp import web

from captchapay.ledger.errors import StoreError
from captchapay.ledger.store.interface import RemoteStore


class DocumentStoreServer:
    """Lightweight async HTTP server for ledger documents."""

    def __init__(
        self,
        store: RemoteStore,
        auth_token: str | None = None,
        host: str = "127.0.0.1",
        port: int = 8300,
    ):
        self.store = store
        self.auth_token = auth_token
        self.host = host
        self.port = port
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    def _build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._handle_health)
        app.router.add_get(r"/{key:.+}.json", self._handle_read)
        app.router.add_put(r"/{key:.+}.json", self._handle_write)
        app.router.add_patch(r"/{key:.+}.json", self._handle_update)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._app = self._build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        bt.logging.info({"document_store_http": {"status": "started", "host": self.host, "port": self.port}})

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            bt.logging.info({"document_store_http": "stopped"})

    # -- Helpers --

    def _authorized(self, request: web.Request) -> bool:
        if not self.auth_token:
            return True
        supplied = request.query.get("auth", "")
        return secrets.compare_digest(supplied, self.auth_token)

    async def _read_body(self, request: web.Request) -> dict | None:
        try:
            body = await request.json()
        except ValueError:
            return None
        return body if isinstance(body, dict) else None

    # -- Routes --

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "healthy"})

    async def _handle_read(self, request: web.Request) -> web.Response:
        key = request.match_info["key"]
        if not self._authorized(request):
            bt.logging.debug({"document_request": {"method": "GET", "key": key, "status": 401}})
            return web.json_response({"error": "unauthorized"}, status=401)
        try:
            doc = await self.store.read(key)
        except StoreError as e:
            bt.logging.error({"document_request": {"method": "GET", "key": key, "status": 500, "error": str(e)}})
            return web.json_response({"error": "store_unavailable"}, status=500)
        bt.logging.debug({"document_request": {"method": "GET", "key": key, "status": 200, "found": doc is not None}})
        return web.json_response(doc)

    async def _handle_write(self, request: web.Request) -> web.Response:
        key = request.match_info["key"]
        if not self._authorized(request):
            return web.json_response({"error": "unauthorized"}, status=401)
        body = await self._read_body(request)
        if body is None:
            return web.json_response({"error": "invalid_body"}, status=400)
        try:
            await self.store.write(key, body)
        except StoreError as e:
            bt.logging.error({"document_request": {"method": "PUT", "key": key, "status": 500, "error": str(e)}})
            return web.json_response({"error": "store_unavailable"}, status=500)
        bt.logging.info({"document_request": {"method": "PUT", "key": key, "status": 200}})
        return web.json_response(body)

    async def _handle_update(self, request: web.Request) -> web.Response:
        key = request.match_info["key"]
        if not self._authorized(request):
            return web.json_response({"error": "unauthorized"}, status=401)
        body = await self._read_body(request)
        if body is None:
            return web.json_response({"error": "invalid_body"}, status=400)
        try:
            await self.store.update(key, body)
        except StoreError as e:
            bt.logging.error({"document_request": {"method": "PATCH", "key": key, "status": 500, "error": str(e)}})
            return web.json_response({"error": "store_unavailable"}, status=500)
        bt.logging.info({"document_request": {"method": "PATCH", "key": key, "status": 200, "fields": sorted(body)}})
        return web.json_response(body)


__all__ = ["DocumentStoreServer"]
