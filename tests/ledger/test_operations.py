"""Tests for ledger mutations: add_points, increment_captchas_solved, withdraw_points.

Includes the serialized-writer guarantees (concurrent deltas compose) and
compensation of optimistic mutations when the remote write fails.
"""

import asyncio
import random
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from captchapay.ledger import operations
from captchapay.ledger.errors import InsufficientBalance, NotAuthenticated, StoreError, WriteFailure
from captchapay.ledger.models import UserLedger, dump_snapshot, parse_snapshot
from captchapay.ledger.session import LedgerSession, PendingWrite, SessionProvider
from captchapay.ledger.store.memory import MemoryDeviceCache, MemoryRemoteStore
from captchapay.ledger.synchronizer import LedgerSynchronizer, SyncState


NOW = datetime(2024, 6, 10, 12, 0, 0, 123456, tzinfo=timezone.utc)
NOW_MS = datetime(2024, 6, 10, 12, 0, 0, 123000, tzinfo=timezone.utc)


class RecordingStore(MemoryRemoteStore):
    """MemoryRemoteStore that records updates and can delay or fail them."""

    def __init__(self, documents=None, jitter: float = 0.0):
        super().__init__(documents)
        self.updates: list[tuple[str, dict]] = []
        self.fail_updates = False
        self.jitter = jitter

    async def update(self, key, fields):
        self.updates.append((key, dict(fields)))
        if self.jitter:
            await asyncio.sleep(random.uniform(0, self.jitter))
        if self.fail_updates:
            raise StoreError("write rejected")
        await super().update(key, fields)


async def _ready(points: int = 0, captchas: int = 0, jitter: float = 0.0):
    provider = SessionProvider()
    store = RecordingStore(
        documents={"users/u1": {"points": points, "captchasSolved": captchas}},
        jitter=jitter,
    )
    cache = MemoryDeviceCache()
    sync = LedgerSynchronizer(provider, store, cache, clock=lambda: NOW)
    sync.start()
    provider.sign_in("u1")
    await sync.wait_until_settled()
    return provider, store, cache, sync


@pytest.mark.asyncio
class TestScenarios:

    async def test_add_points(self):
        provider, store, cache, sync = await _ready(points=0)
        assert await sync.add_points(50) is True

        assert sync.ledger.points == 50
        assert sync.ledger.last_captcha_time == NOW_MS
        assert store.updates == [("users/u1", {"points": 50, "lastCaptchaTime": 1718020800123})]
        assert store.documents["users/u1"]["points"] == 50
        cached = parse_snapshot(cache.entries["userData_u1"])
        assert cached == sync.ledger
        await sync.close()

    async def test_withdraw_more_than_balance(self):
        provider, store, cache, sync = await _ready(points=50)
        before = sync.ledger

        assert await sync.withdraw_points(80) is False

        assert sync.ledger == before
        assert sync.error == "Insufficient points"
        assert isinstance(sync.failure, InsufficientBalance)
        assert sync.failure.requested == 80
        assert sync.failure.available == 50
        assert sync.state == SyncState.ERROR
        assert store.updates == []
        await sync.close()

    async def test_withdraw(self):
        provider, store, cache, sync = await _ready(points=50)
        assert await sync.withdraw_points(30) is True

        assert sync.ledger.points == 20
        assert store.updates == [("users/u1", {"points": 20})]
        assert parse_snapshot(cache.entries["userData_u1"]).points == 20
        await sync.close()

    async def test_withdraw_entire_balance(self):
        provider, store, cache, sync = await _ready(points=50)
        assert await sync.withdraw_points(50) is True
        assert sync.ledger.points == 0
        await sync.close()

    async def test_increment_captchas_solved(self):
        provider, store, cache, sync = await _ready(captchas=0)
        stamp = sync.ledger.last_captcha_time

        for _ in range(3):
            assert await sync.increment_captchas_solved() is True

        assert sync.ledger.captchas_solved == 3
        assert sync.ledger.last_captcha_time == stamp
        assert store.updates[-1] == ("users/u1", {"captchasSolved": 3})
        assert all(set(fields) == {"captchasSolved"} for _, fields in store.updates)
        await sync.close()

    async def test_success_clears_previous_error(self):
        provider, store, cache, sync = await _ready(points=10)
        await sync.withdraw_points(20)
        assert sync.error == "Insufficient points"

        await sync.add_points(5)
        assert sync.error is None
        assert sync.state == SyncState.READY
        await sync.close()


@pytest.mark.asyncio
class TestGuards:

    async def test_no_identity_is_silent_noop(self):
        provider = SessionProvider()
        store = RecordingStore()
        sync = LedgerSynchronizer(provider, store, MemoryDeviceCache())
        sync.start()

        assert await sync.add_points(10) is False
        assert await sync.increment_captchas_solved() is False
        assert await sync.withdraw_points(10) is False
        assert sync.error is None
        assert store.updates == []
        await sync.close()

    async def test_not_loaded_is_silent_noop(self):
        provider = SessionProvider()
        store = RecordingStore()
        store.read = AsyncMock(side_effect=StoreError("down"))
        sync = LedgerSynchronizer(provider, store, MemoryDeviceCache())
        sync.start()
        provider.sign_in("u1")
        await sync.wait_until_settled()

        assert sync.ledger is None
        assert await sync.add_points(10) is False
        assert sync.error == "Failed to load user data"
        assert store.updates == []
        await sync.close()

    @pytest.mark.parametrize("amount", [0, -5, 2.5, True, "10"])
    async def test_invalid_amount_raises(self, amount):
        provider, store, cache, sync = await _ready(points=10)
        with pytest.raises(ValueError):
            await sync.add_points(amount)
        with pytest.raises(ValueError):
            await sync.withdraw_points(amount)
        assert store.updates == []
        await sync.close()

    async def test_operations_require_session(self):
        store, cache = MemoryRemoteStore(), MemoryDeviceCache()
        with pytest.raises(NotAuthenticated):
            await operations.add_points(None, store, cache, 5)
        with pytest.raises(NotAuthenticated):
            await operations.increment_captchas_solved(None, store, cache)

        session = LedgerSession("u1")
        with pytest.raises(NotAuthenticated):
            await operations.withdraw_points(session, store, cache, 5)


@pytest.mark.asyncio
class TestWriteFailure:

    async def test_add_points_compensated(self):
        provider, store, cache, sync = await _ready(points=10)
        before = sync.ledger
        store.fail_updates = True

        assert await sync.add_points(25) is False

        assert sync.ledger == before
        assert parse_snapshot(cache.entries["userData_u1"]) == before
        assert store.documents["users/u1"]["points"] == 10
        assert sync.error == "Failed to add points"
        assert isinstance(sync.failure, WriteFailure)
        assert sync.state == SyncState.ERROR
        assert sync.session.pending == []
        await sync.close()

    async def test_withdraw_compensated(self):
        provider, store, cache, sync = await _ready(points=40)
        store.fail_updates = True

        assert await sync.withdraw_points(15) is False
        assert sync.ledger.points == 40
        assert sync.error == "Failed to withdraw points"
        await sync.close()

    async def test_increment_compensated(self):
        provider, store, cache, sync = await _ready(captchas=2)
        store.fail_updates = True

        assert await sync.increment_captchas_solved() is False
        assert sync.ledger.captchas_solved == 2
        assert sync.error == "Failed to update stats"
        await sync.close()

    async def test_optimistic_value_visible_while_pending(self):
        provider, store, cache, sync = await _ready(points=10)
        gate = asyncio.Event()
        original_update = store.update

        async def _held_update(key, fields):
            await gate.wait()
            await original_update(key, fields)

        store.update = _held_update
        task = asyncio.create_task(sync.add_points(5))
        await asyncio.sleep(0)

        assert sync.ledger.points == 15
        assert len(sync.session.pending) == 1
        assert parse_snapshot(cache.entries["userData_u1"]).points == 15

        gate.set()
        assert await task is True
        assert sync.session.pending == []
        await sync.close()


class TestCompensate:

    def test_compensate_restores_timestamp(self):
        previous = datetime(2024, 1, 1, tzinfo=timezone.utc)
        ledger = UserLedger(points=30, captchas_solved=2, last_captcha_time=NOW_MS)
        entry = PendingWrite(operation="add_points", points_delta=20, sets_time=True, previous_time=previous)

        restored = operations.compensate(ledger, entry)
        assert restored.points == 10
        assert restored.captchas_solved == 2
        assert restored.last_captcha_time == previous

    def test_compensate_without_timestamp(self):
        ledger = UserLedger(points=5, captchas_solved=3, last_captcha_time=NOW_MS)
        entry = PendingWrite(operation="increment_captchas_solved", captchas_delta=1)

        restored = operations.compensate(ledger, entry)
        assert restored.captchas_solved == 2
        assert restored.last_captcha_time == NOW_MS


@pytest.mark.asyncio
class TestConcurrency:

    async def test_concurrent_deltas_compose(self):
        provider, store, cache, sync = await _ready(points=100, jitter=0.005)
        adds = [5, 10, 15, 20, 25]
        withdrawals = [30, 10, 40]

        calls = [sync.add_points(a) for a in adds] + [sync.withdraw_points(w) for w in withdrawals]
        random.shuffle(calls)
        results = await asyncio.gather(*calls)

        assert all(results)
        expected = 100 + sum(adds) - sum(withdrawals)
        assert sync.ledger.points == expected
        assert store.documents["users/u1"]["points"] == expected
        assert parse_snapshot(cache.entries["userData_u1"]).points == expected
        await sync.close()

    async def test_concurrent_withdrawals_never_overdraw(self):
        provider, store, cache, sync = await _ready(points=50, jitter=0.005)

        results = await asyncio.gather(*[sync.withdraw_points(20) for _ in range(4)])

        assert results.count(True) == 2
        assert sync.ledger.points == 10
        assert store.documents["users/u1"]["points"] == 10
        await sync.close()

    async def test_concurrent_increments(self):
        provider, store, cache, sync = await _ready(captchas=0, jitter=0.005)
        await asyncio.gather(*[sync.increment_captchas_solved() for _ in range(6)])
        assert sync.ledger.captchas_solved == 6
        assert store.documents["users/u1"]["captchasSolved"] == 6
        await sync.close()

    async def test_operation_during_provisional_waits_for_fetch(self):
        provider = SessionProvider()
        store = RecordingStore(documents={"users/u1": {"points": 70, "captchasSolved": 0}})
        cache = MemoryDeviceCache({"userData_u1": dump_snapshot(UserLedger(points=40, captchas_solved=0))})
        gate = asyncio.Event()
        original_read = store.read

        async def _held_read(key):
            await gate.wait()
            return await original_read(key)

        store.read = _held_read
        sync = LedgerSynchronizer(provider, store, cache, clock=lambda: NOW)
        sync.start()
        provider.sign_in("u1")
        await asyncio.sleep(0)
        assert sync.provisional is True

        task = asyncio.create_task(sync.add_points(5))
        await asyncio.sleep(0)
        assert store.updates == []

        gate.set()
        assert await task is True
        assert sync.ledger.points == 75
        assert store.documents["users/u1"]["points"] == 75
        await sync.close()

    async def test_cached_snapshot_after_failed_fetch_is_never_written(self):
        provider = SessionProvider()
        store = RecordingStore(documents={"users/u1": {"points": 70, "captchasSolved": 0}})
        cache = MemoryDeviceCache({"userData_u1": dump_snapshot(UserLedger(points=40, captchas_solved=0))})
        original_read = store.read
        store.read = AsyncMock(side_effect=StoreError("unreachable"))
        sync = LedgerSynchronizer(provider, store, cache, clock=lambda: NOW)
        sync.start()
        provider.sign_in("u1")
        await sync.wait_until_settled()

        assert sync.state == SyncState.ERROR
        assert sync.provisional is True
        assert sync.ledger.points == 40

        assert await sync.add_points(5) is False
        assert await sync.withdraw_points(10) is False
        assert await sync.increment_captchas_solved() is False
        assert store.updates == []
        assert store.documents["users/u1"]["points"] == 70
        assert sync.ledger.points == 40
        assert sync.error == "Failed to load user data"

        # Once the authoritative value is loaded the delta composes with it
        store.read = original_read
        await sync.refresh()
        assert await sync.add_points(5) is True
        assert store.documents["users/u1"]["points"] == 75
        await sync.close()

    async def test_write_in_flight_across_sign_out(self):
        provider, store, cache, sync = await _ready(points=10)
        gate = asyncio.Event()
        original_update = store.update

        async def _held_update(key, fields):
            await gate.wait()
            await original_update(key, fields)

        store.update = _held_update
        task = asyncio.create_task(sync.add_points(5))
        await asyncio.sleep(0)
        cached_before_sign_out = cache.entries["userData_u1"]

        provider.sign_out()
        gate.set()
        assert await task is True

        # The issued write still lands; local state of the new (empty) session is untouched
        assert store.documents["users/u1"]["points"] == 15
        assert sync.ledger is None
        assert sync.state == SyncState.UNINITIALIZED
        assert cache.entries["userData_u1"] == cached_before_sign_out
        await sync.close()
