#!/usr/bin/env python3
"""
Clean Recharge Locks

PURPOSE: Inspect and remove fleet locks left behind by crashed processes.
By default only expired locks are removed; --all drops every lock and must
only be used when no recharge process is running.
"""

import sys
import os
import asyncio
import argparse
import logging

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Config
from database import create_tables, dispose_engines
from services.recharge_lock_manager import RechargeLockManager, fleet_lock_key

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


async def show_locks(lock_manager: RechargeLockManager):
    for fleet_type in Config.FLEET_TYPES:
        status = await lock_manager.get_lock_status(fleet_lock_key(fleet_type))
        if status is None:
            logger.info(f"🔓 {fleet_type}: free")
        else:
            state = "EXPIRED" if status["expired"] else f"{status['seconds_remaining']}s left"
            logger.info(
                f"🔒 {fleet_type}: held by {status['owner_token']} since {status['acquired_at']} ({state})"
            )


async def main():
    parser = argparse.ArgumentParser(description='Inspect and clean recharge fleet locks')
    parser.add_argument('--list', action='store_true', help='Only show lock status')
    parser.add_argument('--all', action='store_true', help='Remove every lock, expired or not')
    args = parser.parse_args()

    await create_tables()
    lock_manager = RechargeLockManager()
    try:
        await show_locks(lock_manager)
        if args.list:
            return
        if args.all:
            removed = await lock_manager.release_all_locks()
        else:
            removed = await lock_manager.cleanup_expired_locks()
        logger.info(f"✅ Removed {removed} lock(s)")
    finally:
        await dispose_engines()


if __name__ == "__main__":
    asyncio.run(main())
