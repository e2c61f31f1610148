"""Ledger mutations: add_points, increment_captchas_solved, withdraw_points.

Each operation runs under the session lock, computes its new value from the
in-memory ledger, applies it optimistically (memory + cache), records it in
the session's pending log, then issues the partial update to the
RemoteStore. If the remote write fails the inverse delta is applied and
WriteFailure is raised.

A ledger that is still the provisional cache snapshot (the authoritative
fetch has not succeeded yet) is treated like a missing one: the operation
raises NotAuthenticated and nothing is written.

Operations raise LedgerError subclasses; the synchronizer converts them
into its ``error`` field.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

import bittensor as bt

from .errors import InsufficientBalance, NotAuthenticated, WriteFailure
from .models import LedgerPatch, UserLedger, dump_snapshot, truncate_ms
from .session import LedgerSession, PendingWrite
from .store.interface import DeviceCache, RemoteStore

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _check_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValueError(f"amount must be an int, got {type(amount).__name__}")
    if amount <= 0:
        raise ValueError(f"amount must be positive, got {amount}")


def _require_ledger(session: LedgerSession | None) -> UserLedger:
    if session is None or not session.active or session.ledger is None:
        raise NotAuthenticated()
    # A cache snapshot is never a base for remote writes
    if session.provisional:
        raise NotAuthenticated()
    return session.ledger


async def mirror_to_cache(session: LedgerSession, cache: DeviceCache) -> None:
    """Write the session's ledger to the device cache.

    Skipped once the session is detached. Cache failures are logged, never
    raised: the cache is disposable.
    """
    if not session.active or session.ledger is None:
        return
    try:
        await cache.set(session.cache_key, dump_snapshot(session.ledger))
    except Exception as e:
        bt.logging.warning({"ledger_cache": {"identity": session.identity, "error": str(e)}})


def compensate(ledger: UserLedger, entry: PendingWrite) -> UserLedger:
    """Apply the inverse of a pending write."""
    update: dict = {
        "points": ledger.points - entry.points_delta,
        "captchas_solved": ledger.captchas_solved - entry.captchas_delta,
    }
    if entry.sets_time:
        update["last_captcha_time"] = entry.previous_time
    return ledger.model_copy(update=update)


async def _commit(
    session: LedgerSession,
    store: RemoteStore,
    cache: DeviceCache,
    updated: UserLedger,
    patch: LedgerPatch,
    entry: PendingWrite,
    failure_message: str,
) -> UserLedger:
    session.ledger = updated
    session.pending.append(entry)
    await mirror_to_cache(session, cache)
    try:
        await store.update(session.remote_key, patch.to_wire())
    except Exception as e:
        session.ledger = compensate(session.ledger, entry)
        await mirror_to_cache(session, cache)
        bt.logging.error({
            "ledger_write": {
                "identity": session.identity,
                "operation": entry.operation,
                "status": "compensated",
                "error": str(e),
            }
        })
        raise WriteFailure(failure_message) from e
    finally:
        session.pending.remove(entry)

    bt.logging.debug({
        "ledger_write": {
            "identity": session.identity,
            "operation": entry.operation,
            "fields": sorted(patch.to_wire()),
        }
    })
    return session.ledger


async def add_points(
    session: LedgerSession | None,
    store: RemoteStore,
    cache: DeviceCache,
    amount: int,
    clock: Clock = utcnow,
) -> UserLedger:
    """Credit points for a completed challenge and stamp lastCaptchaTime."""
    _check_amount(amount)
    if session is None:
        raise NotAuthenticated()

    async with session.lock:
        current = _require_ledger(session)
        stamp = truncate_ms(clock())
        updated = current.model_copy(update={
            "points": current.points + amount,
            "last_captcha_time": stamp,
        })
        entry = PendingWrite(
            operation="add_points",
            points_delta=amount,
            sets_time=True,
            previous_time=current.last_captcha_time,
        )
        patch = LedgerPatch(points=updated.points, last_captcha_time=stamp)
        return await _commit(session, store, cache, updated, patch, entry, "Failed to add points")


async def increment_captchas_solved(
    session: LedgerSession | None,
    store: RemoteStore,
    cache: DeviceCache,
) -> UserLedger:
    if session is None:
        raise NotAuthenticated()

    async with session.lock:
        current = _require_ledger(session)
        updated = current.model_copy(update={"captchas_solved": current.captchas_solved + 1})
        entry = PendingWrite(operation="increment_captchas_solved", captchas_delta=1)
        patch = LedgerPatch(captchas_solved=updated.captchas_solved)
        return await _commit(session, store, cache, updated, patch, entry, "Failed to update stats")


async def withdraw_points(
    session: LedgerSession | None,
    store: RemoteStore,
    cache: DeviceCache,
    amount: int,
) -> UserLedger:
    """Debit points. Validated against the in-memory balance before any write.

    Raises:
        InsufficientBalance: amount exceeds the current balance.
    """
    _check_amount(amount)
    if session is None:
        raise NotAuthenticated()

    async with session.lock:
        current = _require_ledger(session)
        if amount > current.points:
            raise InsufficientBalance(requested=amount, available=current.points)
        updated = current.model_copy(update={"points": current.points - amount})
        entry = PendingWrite(operation="withdraw_points", points_delta=-amount)
        patch = LedgerPatch(points=updated.points)
        return await _commit(session, store, cache, updated, patch, entry, "Failed to withdraw points")


__all__ = [
    "Clock",
    "add_points",
    "compensate",
    "increment_captchas_solved",
    "mirror_to_cache",
    "utcnow",
    "withdraw_points",
]
