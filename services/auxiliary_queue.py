"""
Auxiliary Persistence Queue
Write-ahead record of charges the provider confirmed but the database has not.

One JSON file per fleet. Every mutation writes a full snapshot to a temporary
file in the same directory and swaps it in with os.replace, so a reader never
sees a half-written queue. Items leave the queue one at a time, and only after
their detail row is confirmed in the database.

The file is the only source of truth. Each operation re-reads it, and every
read-modify-write holds an exclusive flock on a sidecar lock file, so workers
and maintenance scripts sharing the directory never overwrite each other.
"""

import asyncio
import fcntl
import json
import logging
import os
import tempfile
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from config import Config
from models import AuxiliaryQueueItem, QueueItemStatus, utcnow
from utils.recharge_exceptions import QueueWriteError

logger = logging.getLogger(__name__)

Verifier = Callable[[AuxiliaryQueueItem], Awaitable[bool]]
# Receives the on-disk items; returns (new items or None for no write, outcome)
Change = Callable[[List[AuxiliaryQueueItem]], Tuple[Optional[List[AuxiliaryQueueItem]], Any]]


class AuxiliaryPersistenceQueue:
    """Durable per-fleet queue of paid-but-unpersisted recharges"""

    FORMAT_VERSION = 1

    def __init__(self, fleet_type: str, data_dir: str = None, max_recovery_attempts: int = None):
        self.fleet_type = fleet_type.upper()
        self.data_dir = Path(data_dir or Config.AUXILIARY_QUEUE_DIR)
        self.path = self.data_dir / f"{self.fleet_type.lower()}_auxiliary_queue.json"
        self.lock_path = self.data_dir / f"{self.path.name}.lock"
        self.max_recovery_attempts = max_recovery_attempts or Config.MAX_RECOVERY_ATTEMPTS
        self._items: List[AuxiliaryQueueItem] = []
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------ disk

    @contextmanager
    def _file_lock(self):
        """Exclusive cross-process lock held for one read-modify-write"""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        with open(self.lock_path, "a") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _read_snapshot(self) -> List[AuxiliaryQueueItem]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                payload = json.load(handle)
            raw_items = payload.get("items", []) if isinstance(payload, dict) else payload
            return [AuxiliaryQueueItem.from_dict(raw) for raw in raw_items]
        except (ValueError, KeyError, TypeError) as e:
            # Keep the unreadable file for manual recovery; never overwrite it
            quarantine = self.path.with_name(f"{self.path.name}.corrupt-{utcnow().strftime('%Y%m%d%H%M%S')}")
            os.replace(self.path, quarantine)
            logger.critical(
                f"🚨 AUX_QUEUE_CORRUPT: {self.path} unreadable ({e}); moved to {quarantine} for manual recovery"
            )
            return []

    def _write_snapshot(self, items: List[AuxiliaryQueueItem]) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        payload = {
            "version": self.FORMAT_VERSION,
            "fleet_type": self.fleet_type,
            "updated_at": utcnow().isoformat(),
            "items": [item.to_dict() for item in items],
        }
        fd, tmp_path = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.data_dir))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, ensure_ascii=False, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _locked_read(self) -> List[AuxiliaryQueueItem]:
        if not self.path.exists():
            # os.replace is atomic: a missing file means an empty queue
            return []
        with self._file_lock():
            return self._read_snapshot()

    def _locked_change(self, change: Change) -> Tuple[List[AuxiliaryQueueItem], Any]:
        with self._file_lock():
            current = self._read_snapshot()
            new_items, outcome = change(current)
            if new_items is None:
                return current, outcome
            self._write_snapshot(new_items)
            return new_items, outcome

    async def _refresh(self) -> List[AuxiliaryQueueItem]:
        async with self._lock:
            self._items = await asyncio.to_thread(self._locked_read)
            return list(self._items)

    async def _mutate(self, change: Change) -> Any:
        """Apply change to the current on-disk items and write the result back"""
        async with self._lock:
            try:
                items, outcome = await asyncio.to_thread(self._locked_change, change)
            except OSError as e:
                logger.critical(f"🚨 AUX_QUEUE_WRITE_FAILED: {self.path}: {e}")
                raise QueueWriteError(f"Could not write auxiliary queue {self.path}: {e}") from e
            self._items = items
            return outcome

    async def load(self) -> int:
        items = await self._refresh()
        pending = sum(1 for item in items if item.is_pending)
        if pending:
            logger.warning(f"📋 AUX_QUEUE_LOADED: {self.fleet_type} has {pending} pending recovery item(s)")
        return len(items)

    # ------------------------------------------------------------ operations

    async def append(self, item: AuxiliaryQueueItem) -> AuxiliaryQueueItem:
        """Durably record a provider-confirmed charge before anything else happens"""

        def change(items):
            for existing in items:
                if existing.key == item.key:
                    return None, (existing, False)
            return items + [item], (item, True)

        stored, appended = await self._mutate(change)
        if not appended:
            logger.info(f"♻️ AUX_QUEUE_ALREADY_PRESENT: {item.key}")
            return stored

        logger.info(
            f"📝 AUX_QUEUE_APPENDED: {self.fleet_type} sim={item.sim} folio={item.folio} "
            f"provider={item.transaction.provider}"
        )
        return item

    async def drain(self) -> List[AuxiliaryQueueItem]:
        """Pending items, oldest first; the queue itself is not modified"""
        return [item for item in await self._refresh() if item.is_pending]

    async def completed_items(self) -> List[AuxiliaryQueueItem]:
        """Items persisted but not yet confirmed and removed"""
        return [item for item in await self._refresh() if item.status == QueueItemStatus.COMPLETED]

    async def contains(self, item: AuxiliaryQueueItem) -> bool:
        return any(existing.id == item.id for existing in await self._refresh())

    async def confirm_and_remove(self, item: AuxiliaryQueueItem, verifier: Verifier) -> bool:
        """Remove item only after verifier confirms its detail row exists"""
        try:
            confirmed = await verifier(item)
        except Exception as e:
            logger.error(f"❌ AUX_QUEUE_VERIFY_ERROR: {item.key}: {type(e).__name__}: {e}")
            return False

        if not confirmed:
            logger.warning(f"⚠️ AUX_QUEUE_NOT_CONFIRMED: {item.key} stays queued (no detail row yet)")
            return False

        def change(items):
            remaining = [existing for existing in items if existing.id != item.id]
            if len(remaining) == len(items):
                return None, False
            return remaining, True

        removed = await self._mutate(change)
        if removed:
            logger.info(f"✅ AUX_QUEUE_CONFIRMED_REMOVED: {item.key}")
        return removed

    async def mark_completed(self, item: AuxiliaryQueueItem) -> Optional[AuxiliaryQueueItem]:
        return await self._update(item.id, lambda current: {"status": QueueItemStatus.COMPLETED})

    async def record_attempt(self, item: AuxiliaryQueueItem, error: Optional[str]) -> Optional[AuxiliaryQueueItem]:
        """Bump recovery attempt metadata; the item itself stays queued"""
        return await self._update(item.id, lambda current: {
            "attempts": current.attempts + 1,
            "last_error": error,
            "last_attempt_at": utcnow(),
        })

    async def _update(self, item_id: str,
                      changes_for: Callable[[AuxiliaryQueueItem], Dict[str, Any]]) -> Optional[AuxiliaryQueueItem]:

        def change(items):
            updated_items = []
            updated = None
            for existing in items:
                if existing.id == item_id:
                    replacement = AuxiliaryQueueItem.from_dict(existing.to_dict())
                    for name, value in changes_for(existing).items():
                        setattr(replacement, name, value)
                    updated = replacement
                    updated_items.append(replacement)
                else:
                    updated_items.append(existing)
            if updated is None:
                return None, None
            return updated_items, updated

        return await self._mutate(change)

    # -------------------------------------------------------------- queries

    async def pending_sims(self) -> Set[str]:
        return {item.sim for item in await self.drain()}

    async def get_queue_stats(self) -> Dict[str, Any]:
        items = await self._refresh()
        pending = [item for item in items if item.is_pending]
        oldest: Optional[datetime] = min((item.added_at for item in pending), default=None)
        return {
            "fleet_type": self.fleet_type,
            "total": len(items),
            "pending": len(pending),
            "completed": sum(1 for item in items if item.status == QueueItemStatus.COMPLETED),
            "max_attempts_reached": sum(
                1 for item in pending if item.attempts >= self.max_recovery_attempts
            ),
            "oldest_pending_at": oldest.isoformat() if oldest else None,
            "path": str(self.path),
        }
