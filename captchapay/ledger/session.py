"""Session-scoped state.

SessionProvider is the reactive identity source: it holds the current
``{identity, loading}`` pair and notifies subscribers on every change.

LedgerSession is the service object the synchronizer constructs once per
activation of an identity. It is handed explicitly to the ledger operations,
and owns everything scoped to that activation: the in-memory ledger, the
writer lock and the pending-write log.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

import bittensor as bt

from .models import UserLedger, cache_key, remote_key


# ---------------------------------------------------------------------------
# Identity source
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SessionState:
    """Snapshot of the identity provider."""

    identity: str | None = None
    loading: bool = False


SessionListener = Callable[[SessionState], None]


class SessionProvider:
    """Holds the current identity and notifies listeners when it changes."""

    def __init__(self, identity: str | None = None, loading: bool = False):
        self._state = SessionState(identity=identity, loading=loading)
        self._listeners: list[SessionListener] = []

    @property
    def state(self) -> SessionState:
        return self._state

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register a listener. Returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def set(self, identity: str | None, loading: bool = False) -> None:
        if identity is not None and (not isinstance(identity, str) or not identity):
            raise ValueError("identity must be a non-empty string or None")
        new_state = SessionState(identity=identity, loading=loading)
        if new_state == self._state:
            return
        self._state = new_state
        bt.logging.debug({"session": {"identity": identity, "loading": loading}})
        for listener in list(self._listeners):
            listener(new_state)

    def begin_loading(self) -> None:
        self.set(self._state.identity, loading=True)

    def sign_in(self, identity: str) -> None:
        self.set(identity)

    def sign_out(self) -> None:
        self.set(None)


# ---------------------------------------------------------------------------
# Per-activation service object
# ---------------------------------------------------------------------------


@dataclass(eq=False)
class PendingWrite:
    """An optimistic mutation whose remote write has not resolved yet.

    Holds enough to apply the inverse delta if the write fails.
    """

    operation: str
    points_delta: int = 0
    captchas_delta: int = 0
    sets_time: bool = False
    previous_time: datetime | None = None
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class LedgerSession:
    """Ledger state bound to one activation of one identity."""

    def __init__(self, identity: str):
        self.identity = identity
        self.ledger: UserLedger | None = None
        self.provisional = False
        self.fetching = False
        self.active = True
        # Single writer queue: fetches and mutations for this identity run one at a time
        self.lock = asyncio.Lock()
        self.pending: list[PendingWrite] = []

    @property
    def remote_key(self) -> str:
        return remote_key(self.identity)

    @property
    def cache_key(self) -> str:
        return cache_key(self.identity)

    def detach(self) -> None:
        """Mark the session as no longer current. In-flight writes still resolve."""
        self.active = False

    def __repr__(self) -> str:
        return f"LedgerSession(identity={self.identity!r}, active={self.active}, pending={len(self.pending)})"


__all__ = [
    "LedgerSession",
    "PendingWrite",
    "SessionListener",
    "SessionProvider",
    "SessionState",
]
