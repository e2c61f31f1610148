"""Ledger synchronizer.

Reconciles the active identity's ledger between the DeviceCache and the
RemoteStore, and exposes the mutation operations.

State machine:
  UNINITIALIZED -> LOADING    identity becomes present
  LOADING       -> READY      cache snapshot published (provisional) or
                              authoritative fetch resolved / bootstrapped
  LOADING|READY -> ERROR      fetch or operation failed; ledger keeps its value
  *             -> UNINITIALIZED  identity becomes absent

Every activation gets its own LedgerSession. Fetch results and operation
outcomes are applied only while their session is still the current one, so
a fetch started for a previous identity is discarded on arrival.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

import bittensor as bt

from . import operations
from .errors import FetchFailure, LedgerError, MalformedRecord, NotAuthenticated
from .models import UserLedger, default_ledger, dump_ledger, parse_ledger, parse_snapshot
from .operations import Clock, mirror_to_cache, utcnow
from .session import LedgerSession, SessionProvider, SessionState
from .store.interface import DeviceCache, RemoteStore


class SyncState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


@dataclass(frozen=True)
class LedgerView:
    """Caller-facing snapshot of the synchronizer."""

    ledger: UserLedger | None
    loading: bool
    error: str | None


class LedgerSynchronizer:
    """Owns the in-memory ledger of the currently active identity."""

    def __init__(
        self,
        provider: SessionProvider,
        store: RemoteStore,
        cache: DeviceCache,
        clock: Clock = utcnow,
    ):
        self.provider = provider
        self.store = store
        self.cache = cache
        self._clock = clock

        self.state = SyncState.UNINITIALIZED
        self.error: str | None = None
        self.failure: LedgerError | None = None

        self._session: LedgerSession | None = None
        self._task: asyncio.Task | None = None
        # Strong refs to in-flight activations, superseded ones included
        self._background: set[asyncio.Task] = set()
        # True until the first non-loading provider state has been evaluated
        self._provider_loading = True
        self._unsubscribe: Callable[[], None] | None = None

    # -- Public surface --

    @property
    def session(self) -> LedgerSession | None:
        return self._session

    @property
    def identity(self) -> str | None:
        return self._session.identity if self._session else None

    @property
    def ledger(self) -> UserLedger | None:
        return self._session.ledger if self._session else None

    @property
    def provisional(self) -> bool:
        return bool(self._session and self._session.provisional)

    @property
    def loading(self) -> bool:
        if self._provider_loading or self.state == SyncState.LOADING:
            return True
        return bool(self._session and self._session.fetching)

    def snapshot(self) -> LedgerView:
        return LedgerView(ledger=self.ledger, loading=self.loading, error=self.error)

    async def add_points(self, amount: int) -> bool:
        return await self._run(operations.add_points, amount, clock=self._clock)

    async def increment_captchas_solved(self) -> bool:
        return await self._run(operations.increment_captchas_solved)

    async def withdraw_points(self, amount: int) -> bool:
        return await self._run(operations.withdraw_points, amount)

    # -- Lifecycle --

    def start(self) -> None:
        """Subscribe to the provider and evaluate its current state.

        Must be called from a running event loop.
        """
        if self._unsubscribe is None:
            self._unsubscribe = self.provider.subscribe(self._on_session_change)
        self._on_session_change(self.provider.state)

    async def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._session is not None:
            self._session.detach()
        for task in [self._task, *self._background]:
            if task is None or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def wait_until_settled(self) -> LedgerView:
        """Wait for the in-flight activation (cache read + fetch) to finish."""
        while self._task is not None and not self._task.done():
            await asyncio.shield(self._task)
        return self.snapshot()

    async def refresh(self) -> LedgerView:
        """Re-run the authoritative fetch for the current session."""
        session = self._session
        if session is None:
            return self.snapshot()
        await self._fetch(session)
        return self.snapshot()

    # -- Session transitions --

    def _on_session_change(self, state: SessionState) -> None:
        if state.loading:
            self._provider_loading = True
            return
        self._provider_loading = False

        if state.identity is None:
            self._deactivate()
            return

        current = self._session
        if current is not None and current.active and current.identity == state.identity:
            return

        self._deactivate()
        session = LedgerSession(state.identity)
        self._session = session
        self.state = SyncState.LOADING
        self.error = None
        self.failure = None
        bt.logging.info({"ledger_sync": {"identity": session.identity, "state": self.state.value}})
        task = asyncio.get_running_loop().create_task(self._activate(session))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        self._task = task

    def _deactivate(self) -> None:
        session = self._session
        if session is not None:
            session.detach()
            bt.logging.info({"ledger_sync": {"identity": session.identity, "state": "signed_out"}})
        self._session = None
        self._task = None
        self.state = SyncState.UNINITIALIZED
        self.error = None
        self.failure = None

    def _is_current(self, session: LedgerSession | None) -> bool:
        return session is not None and session.active and session is self._session

    # -- Load --

    async def _activate(self, session: LedgerSession) -> None:
        snapshot = await self._read_cache(session)
        if not self._is_current(session):
            return
        if snapshot is not None:
            session.ledger = snapshot
            session.provisional = True
            self.state = SyncState.READY
            bt.logging.debug({"ledger_sync": {"identity": session.identity, "provisional": True}})
        await self._fetch(session)

    async def _read_cache(self, session: LedgerSession) -> UserLedger | None:
        try:
            raw = await self.cache.get(session.cache_key)
        except Exception as e:
            bt.logging.warning({"ledger_cache": {"identity": session.identity, "read_error": str(e)}})
            return None
        if raw is None:
            return None
        try:
            return parse_snapshot(raw)
        except MalformedRecord as e:
            bt.logging.warning({"ledger_cache": {"identity": session.identity, "malformed": e.detail}})
            return None

    async def _fetch(self, session: LedgerSession) -> None:
        session.fetching = True
        try:
            async with session.lock:
                await self._fetch_locked(session)
        finally:
            session.fetching = False

    async def _fetch_locked(self, session: LedgerSession) -> None:
        bootstrapped = False
        try:
            raw = await self.store.read(session.remote_key)
            if raw is None:
                if not self._is_current(session):
                    bt.logging.debug({"ledger_sync": {"identity": session.identity, "stale_fetch": "discarded"}})
                    return
                ledger = default_ledger()
                await self.store.write(session.remote_key, dump_ledger(ledger))
                bootstrapped = True
            else:
                ledger = parse_ledger(raw)
        except FetchFailure as e:
            ledger, failure = None, e
        except Exception as e:
            bt.logging.error({"ledger_sync": {"identity": session.identity, "fetch_error": str(e)}})
            ledger, failure = None, FetchFailure()
        else:
            failure = None

        if not self._is_current(session):
            bt.logging.debug({"ledger_sync": {"identity": session.identity, "stale_fetch": "discarded"}})
            return

        if failure is not None:
            self._fail(failure)
            bt.logging.error({
                "ledger_sync": {
                    "identity": session.identity,
                    "state": self.state.value,
                    "error": failure.user_message,
                    "kept_ledger": session.ledger is not None,
                }
            })
            return

        session.ledger = ledger
        session.provisional = False
        self.state = SyncState.READY
        self.error = None
        self.failure = None
        await mirror_to_cache(session, self.cache)
        bt.logging.info({
            "ledger_sync": {
                "identity": session.identity,
                "state": self.state.value,
                "bootstrapped": bootstrapped,
                "points": ledger.points,
            }
        })

    # -- Operations --

    async def _run(self, op: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> bool:
        session = self._session
        try:
            await op(session, self.store, self.cache, *args, **kwargs)
        except NotAuthenticated:
            bt.logging.debug({"ledger_op": {"operation": op.__name__, "skipped": "not_authenticated"}})
            return False
        except LedgerError as e:
            if self._is_current(session):
                self._fail(e)
            bt.logging.warning({
                "ledger_op": {
                    "operation": op.__name__,
                    "identity": session.identity if session else None,
                    "error": e.user_message,
                }
            })
            return False

        if self._is_current(session):
            self.state = SyncState.READY
            self.error = None
            self.failure = None
        return True

    def _fail(self, failure: LedgerError) -> None:
        self.state = SyncState.ERROR
        self.error = failure.user_message
        self.failure = failure


__all__ = ["LedgerSynchronizer", "LedgerView", "SyncState"]
