"""
Recharge Cycle Job - scheduler entry points for the GPS, VOZ and ELIOT fleets

One orchestrator per fleet is built lazily and reused across runs, so the
auxiliary queue is loaded from disk once per process. Providers, lock manager
and notifier are shared between fleets.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Config
from services.auxiliary_queue import AuxiliaryPersistenceQueue
from services.fleet_processors import build_fleet_processor
from services.provider_balance_router import ProviderBalanceRouter
from services.recharge_alert_notifier import RechargeAlertNotifier
from services.recharge_batch_inserter import RechargeBatchInserter
from services.recharge_lock_manager import RechargeLockManager
from services.recharge_metrics import CycleMetricsRecorder
from services.recharge_orchestrator import RechargeCycleOrchestrator
from services.recharge_providers import build_default_providers
from services.recharge_retry_engine import RetryExecutionEngine

logger = logging.getLogger(__name__)


class RechargeCycleJob:
    """Owns the per-fleet orchestrators and the components they share"""

    def __init__(
        self,
        session_factory: async_sessionmaker = None,
        fleet_session_factory: async_sessionmaker = None,
        providers: Dict[str, Any] = None,
        notifier: RechargeAlertNotifier = None,
        queue_dir: str = None,
    ):
        if session_factory is None:
            from database import AsyncSessionLocal, FleetSessionLocal
            session_factory = AsyncSessionLocal
            fleet_session_factory = fleet_session_factory or FleetSessionLocal
        self.session_factory = session_factory
        self.fleet_session_factory = fleet_session_factory or session_factory
        self.providers = providers
        self.notifier = notifier or RechargeAlertNotifier()
        self.queue_dir = queue_dir or Config.AUXILIARY_QUEUE_DIR
        self.lock_manager = RechargeLockManager(session_factory)
        self.batch_inserter = RechargeBatchInserter(session_factory)
        self.metrics_recorder = CycleMetricsRecorder(session_factory)
        self._orchestrators: Dict[str, RechargeCycleOrchestrator] = {}
        self.execution_count = 0

    def _provider_clients(self) -> Dict[str, Any]:
        if self.providers is None:
            Config.validate_provider_credentials()
            self.providers = build_default_providers()
        return self.providers

    def get_orchestrator(self, fleet_type: str) -> RechargeCycleOrchestrator:
        fleet_type = fleet_type.upper()
        if fleet_type not in Config.FLEET_TYPES:
            raise ValueError(f"Unknown fleet type: {fleet_type}")

        orchestrator = self._orchestrators.get(fleet_type)
        if orchestrator is None:
            processor = build_fleet_processor(fleet_type, self.session_factory, self.fleet_session_factory)
            orchestrator = RechargeCycleOrchestrator(
                processor=processor,
                lock_manager=self.lock_manager,
                queue=AuxiliaryPersistenceQueue(fleet_type, data_dir=self.queue_dir),
                router=ProviderBalanceRouter(
                    self._provider_clients(),
                    min_balance_threshold=processor.settings.min_balance_threshold,
                ),
                batch_inserter=self.batch_inserter,
                notifier=self.notifier,
                retry_engine=RetryExecutionEngine(),
                metrics_recorder=self.metrics_recorder,
            )
            self._orchestrators[fleet_type] = orchestrator
            logger.info(f"🧩 ORCHESTRATOR_READY: {fleet_type} queue={orchestrator.queue.path}")
        return orchestrator

    async def run_recharge_cycle(self, fleet_type: str) -> Dict[str, Any]:
        """Run one cycle and return a serializable summary for the scheduler log"""
        self.execution_count += 1
        result = await self.get_orchestrator(fleet_type).run_cycle()
        return {
            **result.summary(),
            "fleet_type": result.fleet_type,
            "lock_denied": result.lock_denied,
            "recovered": result.recovered,
            "recovery_pending": result.recovery_pending,
            "total_amount": result.total_amount,
            "aborted_reason": result.aborted_reason,
        }

    async def run_startup_recovery(self) -> Dict[str, Any]:
        """Persist every fleet's leftover queued charges before the first cycle"""
        summary = {}
        for fleet_type in Config.FLEET_TYPES:
            result = await self.get_orchestrator(fleet_type).run_recovery_only()
            summary[fleet_type] = {
                "recovered": result.recovered,
                "pending": result.recovery_pending,
                "lock_denied": result.lock_denied,
            }
            if result.recovery_pending:
                logger.warning(
                    f"⚠️ STARTUP_RECOVERY_INCOMPLETE: {fleet_type} {result.recovery_pending} charge(s) still queued"
                )
        logger.info(f"🔄 STARTUP_RECOVERY: {summary}")
        return summary


# Global job instance
_recharge_cycle_job: Optional[RechargeCycleJob] = None


def get_recharge_cycle_job() -> RechargeCycleJob:
    global _recharge_cycle_job
    if _recharge_cycle_job is None:
        _recharge_cycle_job = RechargeCycleJob()
    return _recharge_cycle_job


# Exported functions for scheduler integration
async def run_recharge_cycle(fleet_type: str) -> Dict[str, Any]:
    return await get_recharge_cycle_job().run_recharge_cycle(fleet_type)


async def run_gps_recharge_cycle() -> Dict[str, Any]:
    """Main entry point for scheduler - GPS devices"""
    return await run_recharge_cycle("GPS")


async def run_voz_recharge_cycle() -> Dict[str, Any]:
    """Main entry point for scheduler - voice lines"""
    return await run_recharge_cycle("VOZ")


async def run_eliot_recharge_cycle() -> Dict[str, Any]:
    """Main entry point for scheduler - IoT agents"""
    return await run_recharge_cycle("ELIOT")


__all__ = [
    "RechargeCycleJob",
    "get_recharge_cycle_job",
    "run_recharge_cycle",
    "run_gps_recharge_cycle",
    "run_voz_recharge_cycle",
    "run_eliot_recharge_cycle",
]
