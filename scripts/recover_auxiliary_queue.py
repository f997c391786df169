#!/usr/bin/env python3
"""
Recover Auxiliary Queue

PURPOSE: Persist charges that providers confirmed but that never reached the
database. Runs under the fleet lock, so it is safe next to a live scheduler.
"""

import sys
import os
import asyncio
import argparse
import json
import logging

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Config
from database import create_tables, dispose_engines
from jobs.recharge_cycle_job import get_recharge_cycle_job
from services.auxiliary_queue import AuxiliaryPersistenceQueue

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


async def list_queue(fleet_type: str):
    queue = AuxiliaryPersistenceQueue(fleet_type)
    stats = await queue.get_queue_stats()
    logger.info(f"📋 {fleet_type}: {json.dumps(stats)}")
    for item in await queue.drain():
        logger.info(
            f"  - sim={item.sim} folio={item.folio} provider={item.transaction.provider} "
            f"amount={item.transaction.amount} attempts={item.attempts} last_error={item.last_error}"
        )


async def main():
    parser = argparse.ArgumentParser(description='Persist queued recharge charges')
    parser.add_argument('--fleet', choices=Config.FLEET_TYPES, type=str.upper,
                        help='Only this fleet (default: all)')
    parser.add_argument('--list', action='store_true', help='Show queued charges without persisting')
    args = parser.parse_args()

    fleets = [args.fleet] if args.fleet else list(Config.FLEET_TYPES)

    if args.list:
        for fleet_type in fleets:
            await list_queue(fleet_type)
        return

    await create_tables()
    job = get_recharge_cycle_job()
    try:
        for fleet_type in fleets:
            result = await job.get_orchestrator(fleet_type).run_recovery_only()
            if result.lock_denied:
                logger.warning(f"⏭️ {fleet_type}: lock held by another process, try again later")
                continue
            logger.info(
                f"✅ {fleet_type}: recovered={result.recovered} still_pending={result.recovery_pending}"
                + (f" aborted={result.aborted_reason}" if result.aborted_reason else "")
            )
    finally:
        await dispose_engines()


if __name__ == "__main__":
    asyncio.run(main())
