#!/usr/bin/env python3
"""
Prepaid Recharge Engine - process entry point

    python main.py                 # create tables, recover queues, run the scheduler
    python main.py --once GPS      # run a single GPS cycle and exit
    python main.py --recover       # drain every fleet's auxiliary queue and exit
"""

import argparse
import asyncio
import json
import logging
import signal

from config import Config
from database import create_tables, dispose_engines
from jobs.recharge_cycle_job import get_recharge_cycle_job
from jobs.recharge_scheduler import RechargeScheduler

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logging.getLogger("apscheduler").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


async def run_forever():
    await create_tables()
    job = get_recharge_cycle_job()
    await job.run_startup_recovery()

    scheduler = RechargeScheduler()
    scheduler.start()
    logger.info(f"🚀 RECHARGE_ENGINE_STARTED: fleets={','.join(Config.FLEET_TYPES)} env={Config.ENVIRONMENT}")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops do not support signal handlers
            pass

    try:
        await stop_event.wait()
    finally:
        scheduler.stop()
        await dispose_engines()
        logger.info("👋 RECHARGE_ENGINE_STOPPED")


async def run_once(fleet_type: str):
    await create_tables()
    try:
        summary = await get_recharge_cycle_job().run_recharge_cycle(fleet_type)
        print(json.dumps(summary, indent=2, default=str))
    finally:
        await dispose_engines()


async def run_recovery():
    await create_tables()
    try:
        summary = await get_recharge_cycle_job().run_startup_recovery()
        print(json.dumps(summary, indent=2))
    finally:
        await dispose_engines()


def main():
    parser = argparse.ArgumentParser(description='Prepaid recharge engine for GPS, VOZ and ELIOT fleets')
    parser.add_argument('--once', choices=Config.FLEET_TYPES, type=str.upper, help='Run one cycle for a fleet and exit')
    parser.add_argument('--recover', action='store_true', help='Persist queued charges for every fleet and exit')
    args = parser.parse_args()

    if args.once:
        asyncio.run(run_once(args.once))
    elif args.recover:
        asyncio.run(run_recovery())
    else:
        asyncio.run(run_forever())


if __name__ == "__main__":
    main()
