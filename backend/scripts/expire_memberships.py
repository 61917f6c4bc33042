#!/usr/bin/env python3
"""
Mark active memberships past their end date as expired.
Meant to run from cron; safe to run at any frequency.
"""
import asyncio
import logging
import sys
from pathlib import Path

from motor.motor_asyncio import AsyncIOMotorClient

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from config import DB_NAME, LOG_LEVEL, MONGO_URL  # noqa: E402
from services.membership_service import MembershipService  # noqa: E402

logger = logging.getLogger(__name__)


async def expire_memberships():
    client = AsyncIOMotorClient(MONGO_URL, tz_aware=True)
    try:
        expired_count = await MembershipService(client[DB_NAME]).expire_old_memberships()
        logger.info(f"Expired {expired_count} memberships")
        return expired_count
    finally:
        client.close()

if __name__ == "__main__":
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    asyncio.run(expire_memberships())
