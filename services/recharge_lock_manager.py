"""
Recharge Lock Manager
Per-fleet processing lock backed by a database unique constraint, so workers
on different hosts never run two cycles for the same fleet.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy import delete, select, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Config
from models import LockResult, RechargeProcessLock, utcnow

logger = logging.getLogger(__name__)


def fleet_lock_key(fleet_type: str) -> str:
    return f"recharge_{fleet_type.lower()}"


class RechargeLockManager:
    """
    Database-backed lock with TTL and owner token

    acquire() inserts a row; the unique lock_key makes the insert the atomic
    "set if not present". release() deletes only the caller's own row.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker = None,
        default_ttl_seconds: int = None,
        acquire_timeout: float = None,
    ):
        if session_factory is None:
            from database import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.session_factory = session_factory
        self.default_ttl_seconds = default_ttl_seconds or Config.LOCK_EXPIRATION_MINUTES * 60
        self.acquire_timeout = acquire_timeout or Config.LOCK_ACQUIRE_TIMEOUT_SECONDS

        self.metrics = {
            'locks_acquired': 0,
            'locks_denied': 0,
            'locks_released': 0,
            'release_mismatches': 0,
            'acquire_timeouts': 0,
            'expired_cleaned': 0,
        }

    async def acquire(
        self,
        key: str,
        owner_token: str,
        ttl_seconds: int = None,
        timeout: float = None,
    ) -> LockResult:
        """
        Try to take the lock for key

        Returns a LockResult; denial (held elsewhere, timeout, store error) is
        reported through granted=False and never raised.
        """
        ttl = ttl_seconds or self.default_ttl_seconds
        try:
            return await asyncio.wait_for(
                self._insert_lock(key, owner_token, ttl),
                timeout=timeout or self.acquire_timeout,
            )
        except asyncio.TimeoutError:
            self.metrics['acquire_timeouts'] += 1
            self.metrics['locks_denied'] += 1
            logger.warning(f"⏳ RECHARGE_LOCK_TIMEOUT: {key} not acquired within {timeout or self.acquire_timeout}s")
            return LockResult(granted=False, key=key, reason="timeout")

    async def _insert_lock(self, key: str, owner_token: str, ttl: int) -> LockResult:
        now = utcnow()
        expires_at = now + timedelta(seconds=ttl)

        async with self.session_factory() as session:
            try:
                # An expired holder crashed or hung; its lock no longer counts
                cleaned = await session.execute(
                    delete(RechargeProcessLock).where(
                        RechargeProcessLock.lock_key == key,
                        RechargeProcessLock.expires_at <= now,
                    )
                )
                if cleaned.rowcount:
                    self.metrics['expired_cleaned'] += cleaned.rowcount
                    logger.warning(f"🧹 RECHARGE_LOCK_EXPIRED_REMOVED: {key}")

                session.add(RechargeProcessLock(
                    lock_key=key,
                    owner_token=owner_token,
                    pid=os.getpid(),
                    acquired_at=now,
                    expires_at=expires_at,
                ))
                await session.commit()

            except IntegrityError:
                await session.rollback()
                self.metrics['locks_denied'] += 1
                logger.info(f"⏭️ RECHARGE_LOCK_DENIED: {key} is held by another worker")
                return LockResult(granted=False, key=key, reason="held")

            except SQLAlchemyError as e:
                await session.rollback()
                self.metrics['locks_denied'] += 1
                logger.error(f"❌ RECHARGE_LOCK_ERROR: failed to acquire {key}: {e}")
                return LockResult(granted=False, key=key, reason=f"store_error: {type(e).__name__}")

        self.metrics['locks_acquired'] += 1
        logger.info(
            f"🔒 RECHARGE_LOCK_ACQUIRED: {key} token={owner_token[:12]}... expires_in={ttl}s"
        )
        return LockResult(granted=True, key=key, owner_token=owner_token, expires_at=expires_at)

    async def release(self, key: str, owner_token: str) -> bool:
        """Delete the lock only if owner_token still holds it"""
        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    delete(RechargeProcessLock).where(
                        RechargeProcessLock.lock_key == key,
                        RechargeProcessLock.owner_token == owner_token,
                    )
                )
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"❌ RECHARGE_LOCK_RELEASE_ERROR: {key}: {e}")
                return False

        if result.rowcount:
            self.metrics['locks_released'] += 1
            logger.info(f"🔓 RECHARGE_LOCK_RELEASED: {key} token={owner_token[:12]}...")
            return True

        self.metrics['release_mismatches'] += 1
        logger.warning(f"⚠️ RECHARGE_LOCK_NOT_OWNED: {key} token={owner_token[:12]}... (expired or taken over)")
        return False

    async def is_locked(self, key: str) -> bool:
        status = await self.get_lock_status(key)
        return status is not None and not status["expired"]

    async def get_lock_status(self, key: str) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(RechargeProcessLock).where(RechargeProcessLock.lock_key == key)
            )
            lock = result.scalar_one_or_none()

        if lock is None:
            return None
        now = utcnow()
        return {
            "lock_key": lock.lock_key,
            "owner_token": lock.owner_token,
            "pid": lock.pid,
            "acquired_at": lock.acquired_at,
            "expires_at": lock.expires_at,
            "expired": lock.expires_at <= now,
            "seconds_remaining": max(0, int((lock.expires_at - now).total_seconds())),
        }

    async def cleanup_expired_locks(self) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(RechargeProcessLock).where(RechargeProcessLock.expires_at <= utcnow())
            )
            await session.commit()
        count = result.rowcount or 0
        if count:
            self.metrics['expired_cleaned'] += count
            logger.info(f"🧹 RECHARGE_LOCKS_CLEANED: removed {count} expired lock(s)")
        return count

    async def release_all_locks(self) -> int:
        """Operator escape hatch: drop every lock regardless of owner"""
        async with self.session_factory() as session:
            result = await session.execute(delete(RechargeProcessLock))
            await session.commit()
        count = result.rowcount or 0
        logger.warning(f"🚨 RECHARGE_LOCKS_FORCE_RELEASED: {count} lock(s) removed")
        return count

    async def count_active_locks(self) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count()).select_from(RechargeProcessLock).where(
                    RechargeProcessLock.expires_at > utcnow()
                )
            )
            return int(result.scalar() or 0)

    @asynccontextmanager
    async def lock_context(self, key: str, owner_token: str, ttl_seconds: int = None):
        """
        Usage:
            async with lock_manager.lock_context("recharge_gps", token) as lock:
                if lock.granted:
                    ...
        """
        lock = await self.acquire(key, owner_token, ttl_seconds)
        try:
            yield lock
        finally:
            if lock.granted:
                await self.release(key, owner_token)

    def get_metrics(self) -> Dict[str, int]:
        return dict(self.metrics)
