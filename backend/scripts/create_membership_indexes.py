"""
Membership Database Setup
=========================

Creates the indexes the membership service relies on:
- one active membership per user (partial unique index)
- unique processed payment ids (payment idempotency)
- unique Razorpay payment ids on payment records

Run this script once per environment, before enabling the webhook.
"""

import asyncio
import sys
from pathlib import Path

from motor.motor_asyncio import AsyncIOMotorClient

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from config import DB_NAME, MONGO_URL  # noqa: E402
from services.membership_service import ensure_indexes  # noqa: E402


async def create_membership_indexes():
    """Create and list membership indexes"""
    print(f"Connecting to MongoDB: {MONGO_URL}")
    client = AsyncIOMotorClient(MONGO_URL, tz_aware=True)
    db = client[DB_NAME]

    print("\n=== Creating Membership Indexes ===\n")
    await ensure_indexes(db)

    print("=== Verifying Indexes ===\n")
    for collection_name in ("memberships", "processed_payments", "payments", "plans"):
        indexes = await db[collection_name].index_information()
        print(f"{collection_name}: {len(indexes)} indexes")
        for idx_name, idx_info in indexes.items():
            print(f"  - {idx_name}: {idx_info.get('key')}")

    print("\n✅ All membership indexes created successfully!\n")

    client.close()

if __name__ == "__main__":
    asyncio.run(create_membership_indexes())
