"""
Seed the membership plan catalogue.

Upserts the six standard plans (basic/standard/premium for customers and
contractors) by id, so re-running keeps plan ids stable for existing terms.
Prices are in cents; yearly prices are before the annual discount.
"""

import asyncio
import sys
from pathlib import Path

from motor.motor_asyncio import AsyncIOMotorClient

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from config import DB_NAME, MONGO_URL, RAZORPAY_KEY_ID  # noqa: E402
from models import MembershipPlan, MembershipTier, PropertyType, UserType, to_bson  # noqa: E402


def build_plans():
    customer = [
        (MembershipTier.BASIC, 1999, dict(
            max_properties=1, platform_fee_percentage=10, free_calculators=True,
        )),
        (MembershipTier.STANDARD, 3999, dict(
            max_properties=3, platform_fee_percentage=5, free_calculators=True,
            unlimited_requests=True, contractor_reviews_visible=True,
        )),
        (MembershipTier.PREMIUM, 7999, dict(
            max_properties=None, platform_fee_percentage=0, property_type=PropertyType.COMMERCIAL,
            free_calculators=True, unlimited_requests=True, contractor_reviews_visible=True,
            priority_contractor_access=True, property_valuation_support=True,
            certified_aas_work=True, free_evaluation=True,
        )),
    ]
    contractor = [
        (MembershipTier.BASIC, 4999, dict(
            leads_per_month=10, access_delay_hours=24, radius_km=25,
        )),
        (MembershipTier.STANDARD, 9999, dict(
            leads_per_month=25, access_delay_hours=12, radius_km=50,
            featured_listing=True, verified_badge=True,
        )),
        (MembershipTier.PREMIUM, 19999, dict(
            leads_per_month=None, access_delay_hours=0, radius_km=None,
            featured_listing=True, verified_badge=True, off_market_access=True,
            publicity_references=True, financing_support=True, private_network=True,
        )),
    ]

    plans = []
    for user_type, tiers in ((UserType.CUSTOMER, customer), (UserType.CONTRACTOR, contractor)):
        for tier, monthly_price, benefits in tiers:
            plans.append(MembershipPlan(
                id=f"{user_type.value}-{tier.value}",
                name=f"{tier.value.title()} {user_type.value.title()} Plan",
                user_type=user_type,
                tier=tier,
                monthly_price=monthly_price,
                yearly_price=monthly_price * 12,
                **benefits,
            ))
    return plans


async def seed_membership_plans():
    print(f"Connecting to MongoDB: {MONGO_URL}/{DB_NAME}")
    client = AsyncIOMotorClient(MONGO_URL, tz_aware=True)
    db = client[DB_NAME]

    if not RAZORPAY_KEY_ID:
        print("⚠️  RAZORPAY_KEY_ID not set; Razorpay plan ids must be added to plans manually")

    for plan in build_plans():
        document = to_bson(plan.model_dump(mode="python", exclude={"razorpay_plan_id_monthly", "razorpay_plan_id_yearly"}))
        await db.plans.update_one({"id": plan.id}, {"$set": document}, upsert=True)
        print(f"- {plan.name} ({plan.user_type.value} - {plan.tier.value}) - ${plan.monthly_price / 100:.2f}/month")

    print("\n✅ Membership plans seeded successfully!")
    client.close()

if __name__ == "__main__":
    asyncio.run(seed_membership_plans())
