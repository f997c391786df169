"""
Cycle Metrics Recorder
Stores one recargas_metricas row per finished cycle and answers simple
reporting queries over them.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from database import AsyncSessionLocal, async_managed_session
from models import CycleResult, RechargeCycleMetric, utcnow

logger = logging.getLogger(__name__)


class CycleMetricsRecorder:
    """Best-effort metrics: failures are logged, cycles never see them"""

    def __init__(self, session_factory: async_sessionmaker = None):
        self.session_factory = session_factory or AsyncSessionLocal

    async def record_cycle(self, result: CycleResult) -> Optional[int]:
        finished = result.finished_at or utcnow()
        duration_ms = int((finished - result.started_at).total_seconds() * 1000)
        row = RechargeCycleMetric(
            fleet_type=result.fleet_type,
            start_time=result.started_at,
            end_time=finished,
            duration_ms=duration_ms,
            processed=result.processed,
            success=result.success,
            failed=result.failed,
            recovered=result.recovered,
            total_amount=round(result.total_amount, 2),
            provider=",".join(sorted(set(result.providers_used))) or None,
            error_message=result.aborted_reason,
        )
        try:
            async with async_managed_session(self.session_factory) as session:
                session.add(row)
            logger.debug(f"📈 CYCLE_METRIC_RECORDED: {result.fleet_type} id={row.id}")
            return row.id
        except SQLAlchemyError as e:
            logger.warning(f"⚠️ CYCLE_METRIC_NOT_RECORDED: {result.fleet_type}: {e}")
            return None

    async def get_summary(self, fleet_type: str = None, hours: int = 24) -> Dict[str, Any]:
        since = utcnow() - timedelta(hours=hours)
        query = select(
            func.count(RechargeCycleMetric.id),
            func.coalesce(func.sum(RechargeCycleMetric.processed), 0),
            func.coalesce(func.sum(RechargeCycleMetric.success), 0),
            func.coalesce(func.sum(RechargeCycleMetric.failed), 0),
            func.coalesce(func.sum(RechargeCycleMetric.recovered), 0),
            func.coalesce(func.sum(RechargeCycleMetric.total_amount), 0),
        ).where(RechargeCycleMetric.start_time >= since)
        if fleet_type:
            query = query.where(RechargeCycleMetric.fleet_type == fleet_type.upper())

        async with self.session_factory() as session:
            cycles, processed, success, failed, recovered, amount = (await session.execute(query)).one()

        return {
            "fleet_type": fleet_type or "ALL",
            "hours": hours,
            "cycles": int(cycles),
            "processed": int(processed),
            "success": int(success),
            "failed": int(failed),
            "recovered": int(recovered),
            "total_amount": float(amount),
            "success_rate": round(success / processed * 100, 2) if processed else 0.0,
        }

    async def recent_cycles(self, fleet_type: str, limit: int = 10) -> List[RechargeCycleMetric]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(RechargeCycleMetric)
                .where(RechargeCycleMetric.fleet_type == fleet_type.upper())
                .order_by(RechargeCycleMetric.start_time.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
