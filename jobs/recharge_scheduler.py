"""
Recharge Scheduler

- GPS: every GPS_INTERVAL_MINUTES (default 6)
- ELIOT: every ELIOT_INTERVAL_MINUTES (default 10)
- VOZ: daily at VOZ_CRON_HOURS (default 01:00 and 04:00 local time)
- Lock cleanup: every 15 minutes

Overlap inside this process is prevented by max_instances=1; overlap across
processes is prevented by the per-fleet lock.
"""

import logging
from datetime import datetime

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from jobs.recharge_cycle_job import (
    get_recharge_cycle_job, run_eliot_recharge_cycle, run_gps_recharge_cycle, run_voz_recharge_cycle,
)

logger = logging.getLogger(__name__)


async def run_lock_cleanup():
    """Remove expired fleet locks left behind by crashed processes"""
    removed = await get_recharge_cycle_job().lock_manager.cleanup_expired_locks()
    if removed:
        logger.info(f"🧹 LOCK_CLEANUP: removed {removed} expired lock(s)")
    return removed


class RechargeScheduler:
    def __init__(self, timezone: str = None):
        self.timezone = timezone or Config.TIMEZONE
        self.scheduler = AsyncIOScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': AsyncIOExecutor()},
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': 120,
            },
            timezone=self.timezone,
        )

    def setup_jobs(self):
        gps = Config.fleet_settings("GPS")
        self.scheduler.add_job(
            run_gps_recharge_cycle,
            trigger=IntervalTrigger(
                minutes=gps.interval_minutes,
                start_date=datetime.now().replace(second=5, microsecond=0),
            ),
            id="recharge_gps",
            name="📡 GPS Recharge Cycle",
            replace_existing=True,
        )
        logger.info(f"✅ GPS recharge scheduled every {gps.interval_minutes} minutes")

        eliot = Config.fleet_settings("ELIOT")
        self.scheduler.add_job(
            run_eliot_recharge_cycle,
            trigger=IntervalTrigger(
                minutes=eliot.interval_minutes,
                start_date=datetime.now().replace(second=35, microsecond=0),
            ),
            id="recharge_eliot",
            name="🔌 ELIOT Recharge Cycle",
            replace_existing=True,
        )
        logger.info(f"✅ ELIOT recharge scheduled every {eliot.interval_minutes} minutes")

        voz = Config.fleet_settings("VOZ")
        self.scheduler.add_job(
            run_voz_recharge_cycle,
            trigger=CronTrigger(hour=voz.cron_hours, minute=0, timezone=self.timezone),
            id="recharge_voz",
            name="📞 VOZ Recharge Cycle",
            replace_existing=True,
        )
        logger.info(f"✅ VOZ recharge scheduled daily at hour(s) {voz.cron_hours} ({self.timezone})")

        self.scheduler.add_job(
            run_lock_cleanup,
            trigger=IntervalTrigger(minutes=15),
            id="recharge_lock_cleanup",
            name="🧹 Expired Lock Cleanup",
            replace_existing=True,
        )

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        for job in self.scheduler.get_jobs():
            logger.info(f"📋 Scheduled: {job.name} ({job.id}) next run {job.next_run_time}")

    def stop(self):
        self.scheduler.shutdown(wait=False)
        logger.info("📴 Recharge scheduler stopped")


__all__ = ["RechargeScheduler", "run_lock_cleanup"]
