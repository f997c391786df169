"""
Recharge Cycle Orchestrator
Runs one processing cycle for one fleet:

    LOCK_ACQUIRING -> DRAINING_QUEUE -> SELECTING_CANDIDATES -> CHARGING
                   -> PERSISTING -> LOCK_RELEASING

A provider charge is written to the auxiliary queue before anything else
happens, and leaves the queue only once its detail row is confirmed. The lock
is released on every path once it was granted.
"""

import asyncio
import logging
import os
import socket
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

from config import Config
from models import (
    AlertPriority, AuxiliaryQueueItem, BatchInsertResult, CycleResult, CycleState,
    ProviderTransaction, RechargeCandidate, RechargeErrorCode, utcnow,
)
from services.auxiliary_queue import AuxiliaryPersistenceQueue
from services.fleet_processors import FleetProcessor
from services.provider_balance_router import ProviderBalanceRouter
from services.recharge_alert_notifier import RechargeAlertNotifier
from services.recharge_batch_inserter import RechargeBatchInserter
from services.recharge_lock_manager import RechargeLockManager, fleet_lock_key
from services.recharge_metrics import CycleMetricsRecorder
from services.recharge_retry_engine import RetryExecutionEngine
from utils.recharge_exceptions import (
    NoProviderAvailable, PersistenceFatalError, ProviderTransientError,
    QueueWriteError, RechargeError, RetryExhaustedError,
)

logger = logging.getLogger(__name__)


class RechargeCycleOrchestrator:
    """Composes lock, queue, router, retry engine and inserter for one fleet"""

    def __init__(
        self,
        processor: FleetProcessor,
        lock_manager: RechargeLockManager,
        queue: AuxiliaryPersistenceQueue,
        router: ProviderBalanceRouter,
        batch_inserter: RechargeBatchInserter,
        notifier: Optional[RechargeAlertNotifier] = None,
        retry_engine: Optional[RetryExecutionEngine] = None,
        metrics_recorder: Optional[CycleMetricsRecorder] = None,
        sleep: Callable[[float], Awaitable[Any]] = None,
        max_recovery_attempts: int = None,
        block_on_pending_recovery: bool = None,
        persistence_timeout: float = None,
    ):
        self.processor = processor
        self.fleet_type = processor.fleet_type
        self.settings = processor.settings
        self.lock_manager = lock_manager
        self.queue = queue
        self.router = router
        self.batch_inserter = batch_inserter
        self.notifier = notifier
        self.retry_engine = retry_engine or RetryExecutionEngine(sleep=sleep)
        self.metrics_recorder = metrics_recorder
        self._sleep = sleep or asyncio.sleep
        self.max_recovery_attempts = max_recovery_attempts or Config.MAX_RECOVERY_ATTEMPTS
        self.block_on_pending_recovery = (
            Config.BLOCK_ON_PENDING_RECOVERY if block_on_pending_recovery is None else block_on_pending_recovery
        )
        self.persistence_timeout = persistence_timeout or Config.DATABASE_TIMEOUT_SECONDS
        self.lock_key = fleet_lock_key(self.fleet_type)
        self.state = CycleState.IDLE
        self.cycle_id: Optional[str] = None

    # ---------------------------------------------------------------- helpers

    def _transition(self, result: CycleResult, state: CycleState) -> None:
        self.state = state
        result.states.append(state)
        logger.debug(f"🔀 CYCLE_STATE: {self.fleet_type} [{self.cycle_id}] -> {state.value}")

    @staticmethod
    def _new_owner_token() -> str:
        return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex}"

    async def _alert(self, priority: AlertPriority, title: str, message: str,
                     category: str, metadata: Dict[str, Any] = None) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.send_alert(
                priority=priority,
                title=title,
                message=message,
                service=f"recharge_{self.fleet_type.lower()}",
                category=category,
                metadata={"cycle_id": self.cycle_id, **(metadata or {})},
            )
        except Exception as e:
            logger.error(f"❌ ALERT_DISPATCH_FAILED: {title}: {e}")

    async def _verify_persisted(self, item: AuxiliaryQueueItem) -> bool:
        return await self.batch_inserter.folio_exists(item, self.fleet_type)

    # ----------------------------------------------------------------- cycles

    async def run_cycle(self) -> CycleResult:
        """Run one full cycle; returns counts, never raises for cycle failures"""
        self.cycle_id = uuid.uuid4().hex[:12]
        result = CycleResult(fleet_type=self.fleet_type)
        owner_token = self._new_owner_token()

        self._transition(result, CycleState.LOCK_ACQUIRING)
        lock = await self.lock_manager.acquire(self.lock_key, owner_token)
        if not lock.granted:
            result.lock_denied = True
            self._transition(result, CycleState.LOCK_DENIED)
            self._transition(result, CycleState.IDLE)
            result.finished_at = utcnow()
            logger.info(f"⏭️ CYCLE_SKIPPED: {self.fleet_type} lock not granted ({lock.reason})")
            return result

        logger.info(f"🚀 CYCLE_STARTED: {self.fleet_type} [{self.cycle_id}]")
        try:
            await self._execute_cycle(result)
        except PersistenceFatalError as e:
            result.aborted_reason = f"persistence_fatal: {e}"
            logger.critical(
                f"🚨 CYCLE_ABORTED_PERSISTENCE: {self.fleet_type} [{self.cycle_id}]: {e}. "
                f"Charged items remain in the auxiliary queue"
            )
            await self._alert(
                AlertPriority.CRITICAL, "Database unavailable during recharge cycle", str(e),
                "persistence", {"queue_path": str(self.queue.path)},
            )
        except Exception as e:
            result.aborted_reason = f"unexpected: {type(e).__name__}: {e}"
            logger.exception(f"💥 CYCLE_FAILED: {self.fleet_type} [{self.cycle_id}]: {e}")
            await self._alert(AlertPriority.CRITICAL, "Recharge cycle failed", str(e), "cycle")
        finally:
            self._transition(result, CycleState.LOCK_RELEASING)
            await self.lock_manager.release(self.lock_key, owner_token)
            self._transition(result, CycleState.IDLE)
            await self._finish(result)

        return result

    async def run_recovery_only(self) -> CycleResult:
        """Drain the auxiliary queue under the fleet lock without charging anything"""
        self.cycle_id = f"recovery-{uuid.uuid4().hex[:8]}"
        result = CycleResult(fleet_type=self.fleet_type)
        owner_token = self._new_owner_token()

        self._transition(result, CycleState.LOCK_ACQUIRING)
        lock = await self.lock_manager.acquire(self.lock_key, owner_token)
        if not lock.granted:
            result.lock_denied = True
            self._transition(result, CycleState.LOCK_DENIED)
            self._transition(result, CycleState.IDLE)
            result.finished_at = utcnow()
            return result

        try:
            self._transition(result, CycleState.DRAINING_QUEUE)
            await self._recover_pending(result)
        except PersistenceFatalError as e:
            result.aborted_reason = f"persistence_fatal: {e}"
            logger.critical(f"🚨 RECOVERY_ABORTED: {self.fleet_type}: {e}")
        finally:
            self._transition(result, CycleState.LOCK_RELEASING)
            await self.lock_manager.release(self.lock_key, owner_token)
            self._transition(result, CycleState.IDLE)
            result.recovery_pending = (await self.queue.get_queue_stats())["total"]
            result.finished_at = utcnow()
        return result

    async def _finish(self, result: CycleResult) -> None:
        result.finished_at = utcnow()
        try:
            result.recovery_pending = (await self.queue.get_queue_stats())["total"]
        except Exception as e:
            logger.error(f"❌ AUX_QUEUE_STATS_FAILED: {self.fleet_type}: {e}")

        logger.info(
            f"🏁 CYCLE_FINISHED: {self.fleet_type} [{self.cycle_id}] processed={result.processed} "
            f"success={result.success} failed={result.failed} recovered={result.recovered} "
            f"persisted={result.persisted} pending_recovery={result.recovery_pending}"
            + (f" aborted={result.aborted_reason}" if result.aborted_reason else "")
        )
        if self.metrics_recorder is not None:
            await self.metrics_recorder.record_cycle(result)

    async def _execute_cycle(self, result: CycleResult) -> None:
        self._transition(result, CycleState.DRAINING_QUEUE)
        await self._recover_pending(result)

        self._transition(result, CycleState.SELECTING_CANDIDATES)
        pending_sims = await self.queue.pending_sims()
        if pending_sims and self.block_on_pending_recovery:
            logger.warning(
                f"🛑 CHARGING_BLOCKED: {self.fleet_type} has {len(pending_sims)} unpersisted charge(s); "
                f"no new recharges until they are recovered"
            )
            return

        try:
            candidates: List[RechargeCandidate] = await self.retry_engine.execute_with_retry(
                self.processor.get_candidates,
                operation_name=f"{self.fleet_type}_select_candidates",
                correlation_id=self.cycle_id,
                max_attempts=self.settings.max_retries,
                base_delay=self.settings.retry_base_delay,
                backoff_multiplier=self.settings.retry_backoff_multiplier,
                timeout=self.persistence_timeout,
            )
        except Exception as e:
            result.aborted_reason = f"candidate_selection: {e}"
            logger.error(f"❌ CANDIDATE_SELECTION_FAILED: {self.fleet_type}: {e}")
            await self._alert(AlertPriority.HIGH, "Candidate selection failed", str(e), "selection")
            return

        if pending_sims:
            skipped = [c for c in candidates if c.sim in pending_sims]
            if skipped:
                logger.warning(
                    f"⏸️ CANDIDATES_AWAITING_RECOVERY: {self.fleet_type} skipping "
                    f"{', '.join(c.sim for c in skipped)} (charge already queued)"
                )
            candidates = [c for c in candidates if c.sim not in pending_sims]

        if not candidates:
            logger.info(f"📭 NO_CANDIDATES: {self.fleet_type} nothing to recharge")
            return

        logger.info(f"📋 CANDIDATES_SELECTED: {self.fleet_type} {len(candidates)} record(s)")
        self._transition(result, CycleState.CHARGING)
        charged = await self._charge_candidates(candidates, result)

        self._transition(result, CycleState.PERSISTING)
        if charged:
            await self._persist_items(charged, result, is_recovery=False)

    # --------------------------------------------------------------- recovery

    async def _recover_pending(self, result: CycleResult) -> None:
        """Persist every queued charge; one stuck item never blocks the rest"""
        # Leftover completed items and pending ones, oldest charge first
        items = sorted(
            await self.queue.completed_items() + await self.queue.drain(),
            key=lambda item: item.added_at,
        )
        if not items:
            return

        logger.warning(f"🔄 RECOVERY_STARTED: {self.fleet_type} {len(items)} queued charge(s) to persist")
        await self._persist_items(items, result, is_recovery=True)
        logger.info(f"🔄 RECOVERY_FINISHED: {self.fleet_type} recovered={result.recovered}/{len(items)}")

    # --------------------------------------------------------------- charging

    async def _charge_candidates(self, candidates: List[RechargeCandidate],
                                 result: CycleResult) -> List[AuxiliaryQueueItem]:
        charged: List[AuxiliaryQueueItem] = []

        for index, candidate in enumerate(candidates):
            if index > 0 and self.settings.delay_between_calls:
                await self._sleep(self.settings.delay_between_calls)

            result.processed += 1
            try:
                transaction = await self._charge_with_routing(candidate)

            except NoProviderAvailable as e:
                remaining = len(candidates) - index - 1
                result.processed += remaining
                result.failed += 1 + remaining
                result.aborted_reason = f"no_provider_available: {e}"
                logger.critical(
                    f"🚫 CHARGING_ABORTED: {self.fleet_type} no provider available, "
                    f"{1 + remaining} candidate(s) not charged"
                )
                await self._alert(
                    AlertPriority.CRITICAL, "No recharge provider available", str(e), "provider_balance",
                    {"balances": e.balances, "candidates_not_charged": 1 + remaining},
                )
                break

            except RetryExhaustedError as e:
                result.failed += 1
                logger.error(f"❌ RECHARGE_FAILED: {self.processor.describe(candidate)}: {e}")
                await self._alert(
                    AlertPriority.HIGH, "Recharge retries exhausted", str(e), "provider_retry",
                    {"sim": candidate.sim, "attempts": e.attempts},
                )
                continue

            except RechargeError as e:
                result.failed += 1
                logger.error(
                    f"❌ RECHARGE_REJECTED: {self.processor.describe(candidate)} "
                    f"code={e.error_code.value}: {e}"
                )
                if e.details.get("requires_manual_review"):
                    await self._alert(
                        AlertPriority.CRITICAL, "Recharge outcome unknown, manual review needed", str(e),
                        "provider_status", {"sim": candidate.sim, **e.details},
                    )
                continue

            except Exception as e:
                result.failed += 1
                logger.exception(f"❌ RECHARGE_ERROR: {self.processor.describe(candidate)}: {e}")
                continue

            item = AuxiliaryQueueItem(
                sim=candidate.sim,
                fleet_type=self.fleet_type,
                transaction=transaction,
                candidate=candidate.to_dict(),
                recovery_reason=f"charged in cycle {self.cycle_id}; database write pending",
            )
            result.success += 1
            result.total_amount += transaction.amount
            result.providers_used.append(transaction.provider)
            try:
                item = await self.queue.append(item)
            except QueueWriteError as e:
                # Paid but not durably recorded: persist from memory and page someone
                logger.critical(
                    f"🚨 CHARGE_NOT_QUEUED: sim={item.sim} folio={item.folio} provider={transaction.provider}: {e}"
                )
                await self._alert(
                    AlertPriority.CRITICAL, "Paid recharge could not be queued", str(e), "auxiliary_queue",
                    {"sim": item.sim, **transaction.to_dict()},
                )
            charged.append(item)
            logger.info(
                f"✅ RECHARGE_CHARGED: {self.processor.describe(candidate)} provider={transaction.provider} "
                f"folio={transaction.folio} amount=${transaction.amount:.2f}"
            )

        return charged

    async def _charge_with_routing(self, candidate: RechargeCandidate) -> ProviderTransaction:
        """
        Route every attempt through fresh balances. A provider that reports
        insufficient balance is skipped for this candidate's later attempts.
        """
        product = self.processor.product_for(candidate)
        excluded = set()

        async def attempt() -> ProviderTransaction:
            providers = await self.router.get_providers_ordered_by_balance()
            available = [p for p in providers if p.name not in excluded]
            if not available:
                raise NoProviderAvailable(
                    f"Every eligible provider reported insufficient balance for {candidate.sim}",
                    balances=[{"name": p.name, "balance": p.balance} for p in providers],
                )
            chosen = available[0]
            logger.info(f"📡 RECHARGE_ATTEMPT: {candidate.sim} via {chosen.name} (${chosen.balance:.2f})")
            try:
                return await self.router.get_client(chosen.name).charge(candidate, product)
            except ProviderTransientError as e:
                if e.error_code == RechargeErrorCode.INSUFFICIENT_BALANCE:
                    excluded.add(chosen.name)
                raise

        # Clients bound each HTTP request; an outer timeout could cancel a
        # charge the provider already accepted and trigger a second one.
        return await self.retry_engine.execute_with_retry(
            attempt,
            operation_name=f"{self.fleet_type}_charge",
            correlation_id=f"{self.cycle_id}:{candidate.sim}",
            max_attempts=self.settings.max_retries,
            base_delay=self.settings.retry_base_delay,
            backoff_multiplier=self.settings.retry_backoff_multiplier,
        )

    # ------------------------------------------------------------ persistence

    async def _persist_items(self, items: List[AuxiliaryQueueItem], result: CycleResult,
                             is_recovery: bool) -> None:
        """Insert items, then confirm and remove each persisted one from the queue"""
        insert_result = await self._insert(items, is_recovery)
        persisted_keys = set(insert_result.persisted_keys)
        errors = {entry["key"]: entry["error"] for entry in insert_result.per_item_errors}

        for item in items:
            if not await self._is_queued(item):
                await self._settle_unqueued(item, result, is_recovery, errors.get(item.key, "not persisted"))
                continue
            if item.key in persisted_keys:
                try:
                    await self.queue.mark_completed(item)
                    removed = await self.queue.confirm_and_remove(item, self._verify_persisted)
                except QueueWriteError as e:
                    logger.error(f"❌ AUX_QUEUE_UPDATE_FAILED: {item.key}: {e}")
                    removed = False
                if removed:
                    result.persisted += 1
                    if is_recovery:
                        result.recovered += 1
                    continue
                await self._record_unconfirmed(item, "detail row not confirmed after insert", is_recovery)
            else:
                await self._record_unconfirmed(item, errors.get(item.key, "not persisted"), is_recovery)

    async def _is_queued(self, item: AuxiliaryQueueItem) -> bool:
        try:
            return await self.queue.contains(item)
        except OSError as e:
            logger.error(f"❌ AUX_QUEUE_READ_FAILED: {item.key}: {e}")
            return True

    async def _settle_unqueued(self, item: AuxiliaryQueueItem, result: CycleResult,
                               is_recovery: bool, error: str) -> None:
        """Account for a charge that never made it into the queue, using the database alone"""
        try:
            confirmed = await self._verify_persisted(item)
        except Exception as e:
            logger.error(f"❌ RECHARGE_VERIFY_ERROR: {item.key}: {type(e).__name__}: {e}")
            confirmed = False

        if confirmed:
            result.persisted += 1
            if is_recovery:
                result.recovered += 1
            logger.info(f"✅ RECHARGE_PERSISTED_UNQUEUED: sim={item.sim} folio={item.folio} detail row confirmed")
            return

        logger.critical(
            f"🚨 RECHARGE_LOST: sim={item.sim} folio={item.folio} provider={item.transaction.provider} "
            f"is neither queued nor persisted: {error}"
        )
        await self._alert(
            AlertPriority.CRITICAL, "Paid recharge neither queued nor persisted", error, "auxiliary_queue",
            {"sim": item.sim, **item.transaction.to_dict()},
        )

    async def _insert(self, items: List[AuxiliaryQueueItem], is_recovery: bool) -> BatchInsertResult:
        if self.settings.batch_processing:
            try:
                return await self.retry_engine.execute_with_retry(
                    lambda: self.batch_inserter.insert_batch_recharges(
                        items, self.fleet_type, is_recovery=is_recovery, after_insert=self.processor.after_insert,
                    ),
                    operation_name=f"{self.fleet_type}_batch_insert",
                    correlation_id=self.cycle_id,
                    max_attempts=self.settings.max_retries,
                    base_delay=self.settings.retry_base_delay,
                    backoff_multiplier=self.settings.retry_backoff_multiplier,
                    timeout=self.persistence_timeout,
                )
            except PersistenceFatalError:
                raise
            except Exception as e:
                logger.warning(f"⚠️ BATCH_INSERT_UNAVAILABLE: {self.fleet_type}, inserting one by one: {e}")

        combined = BatchInsertResult()
        for item in items:
            try:
                combined.merge(await self.batch_inserter.insert_single_recharge(
                    item, self.fleet_type, is_recovery=is_recovery, after_insert=self.processor.after_insert,
                ))
            except PersistenceFatalError:
                raise
            except Exception as e:
                logger.error(f"❌ RECHARGE_INSERT_ERROR: sim={item.sim} folio={item.folio}: {e}")
                combined.processed += 1
                combined.failed += 1
                combined.per_item_errors.append({"key": item.key, "sim": item.sim, "folio": item.folio, "error": str(e)})
        return combined

    async def _record_unconfirmed(self, item: AuxiliaryQueueItem, error: str, is_recovery: bool) -> None:
        """Leave the item queued, count the attempt and escalate once it keeps failing"""
        try:
            updated = await self.queue.record_attempt(item, error)
        except QueueWriteError as e:
            logger.error(f"❌ AUX_QUEUE_UPDATE_FAILED: {item.key}: {e}")
            updated = None
        attempts = updated.attempts if updated else item.attempts + 1

        logger.warning(
            f"⚠️ RECHARGE_NOT_PERSISTED: {self.fleet_type} sim={item.sim} folio={item.folio} "
            f"attempt={attempts} recovery={is_recovery}: {error}"
        )
        if attempts >= self.max_recovery_attempts:
            await self._alert(
                AlertPriority.HIGH,
                "Paid recharge stuck in recovery queue",
                f"sim {item.sim} folio {item.folio} could not be persisted after {attempts} attempt(s): {error}",
                "recovery",
                {
                    "sim": item.sim,
                    "folio": item.folio,
                    "provider": item.transaction.provider,
                    "amount": item.transaction.amount,
                    "added_at": item.added_at.isoformat(),
                    "attempts": attempts,
                },
            )
