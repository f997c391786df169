"""
Test Recharge Lock Manager
Database-backed per-fleet locking with owner tokens and TTL
"""

import asyncio
from datetime import timedelta

import pytest

from models import RechargeProcessLock, utcnow
from services.recharge_lock_manager import RechargeLockManager, fleet_lock_key


class SlowSessionFactory:
    """Session factory whose sessions never open in time"""

    def __call__(self):
        return self

    async def __aenter__(self):
        await asyncio.sleep(5)

    async def __aexit__(self, *exc_info):
        return False


class TestRechargeLockManager:

    def test_fleet_lock_key(self):
        assert fleet_lock_key("GPS") == "recharge_gps"
        assert fleet_lock_key("Eliot") == "recharge_eliot"

    @pytest.mark.asyncio
    async def test_acquire_and_release(self, session_factory):
        manager = RechargeLockManager(session_factory)

        lock = await manager.acquire("recharge_gps", "worker-a")
        assert lock.granted, "Free lock should be granted"
        assert lock.expires_at is not None
        assert await manager.is_locked("recharge_gps")

        assert await manager.release("recharge_gps", "worker-a")
        assert not await manager.is_locked("recharge_gps")

    @pytest.mark.asyncio
    async def test_concurrent_acquire_grants_exactly_one(self, session_factory):
        """Two workers racing for the same fleet: one wins, one is denied"""
        first = RechargeLockManager(session_factory)
        second = RechargeLockManager(session_factory)

        results = await asyncio.gather(
            first.acquire("recharge_voz", "worker-a"),
            second.acquire("recharge_voz", "worker-b"),
        )

        granted = [r for r in results if r.granted]
        denied = [r for r in results if not r.granted]
        assert len(granted) == 1, f"Exactly one worker should hold the lock, got {results}"
        assert len(denied) == 1
        assert await first.count_active_locks() == 1

    @pytest.mark.asyncio
    async def test_held_lock_is_denied(self, session_factory):
        manager = RechargeLockManager(session_factory)
        await manager.acquire("recharge_gps", "worker-a")

        lock = await manager.acquire("recharge_gps", "worker-b")

        assert not lock.granted
        assert lock.reason == "held"
        assert manager.get_metrics()["locks_denied"] == 1

    @pytest.mark.asyncio
    async def test_release_requires_owner_token(self, session_factory):
        manager = RechargeLockManager(session_factory)
        await manager.acquire("recharge_gps", "worker-a")

        assert not await manager.release("recharge_gps", "worker-b"), "Foreign token must not release"
        status = await manager.get_lock_status("recharge_gps")
        assert status["owner_token"] == "worker-a"

    @pytest.mark.asyncio
    async def test_expired_lock_is_taken_over(self, session_factory):
        async with session_factory() as session:
            session.add(RechargeProcessLock(
                lock_key="recharge_eliot",
                owner_token="crashed-worker",
                acquired_at=utcnow() - timedelta(hours=2),
                expires_at=utcnow() - timedelta(hours=1),
            ))
            await session.commit()
        manager = RechargeLockManager(session_factory)

        assert not await manager.is_locked("recharge_eliot"), "Expired lock no longer counts"
        lock = await manager.acquire("recharge_eliot", "worker-new")

        assert lock.granted
        status = await manager.get_lock_status("recharge_eliot")
        assert status["owner_token"] == "worker-new"
        assert not await manager.release("recharge_eliot", "crashed-worker")

    @pytest.mark.asyncio
    async def test_acquire_timeout_is_a_denial(self):
        manager = RechargeLockManager(SlowSessionFactory(), acquire_timeout=0.05)

        lock = await manager.acquire("recharge_gps", "worker-a")

        assert not lock.granted
        assert lock.reason == "timeout"
        assert manager.get_metrics()["acquire_timeouts"] == 1

    @pytest.mark.asyncio
    async def test_cleanup_expired_locks(self, session_factory):
        manager = RechargeLockManager(session_factory)
        async with session_factory() as session:
            session.add(RechargeProcessLock(
                lock_key="recharge_voz", owner_token="old",
                acquired_at=utcnow() - timedelta(hours=3), expires_at=utcnow() - timedelta(minutes=1),
            ))
            await session.commit()
        await manager.acquire("recharge_gps", "live")

        removed = await manager.cleanup_expired_locks()

        assert removed == 1
        assert await manager.is_locked("recharge_gps"), "Live locks survive cleanup"

    @pytest.mark.asyncio
    async def test_lock_context_releases(self, session_factory):
        manager = RechargeLockManager(session_factory)

        async with manager.lock_context("recharge_gps", "worker-a") as lock:
            assert lock.granted
            inner = await manager.acquire("recharge_gps", "worker-b")
            assert not inner.granted

        assert not await manager.is_locked("recharge_gps")
