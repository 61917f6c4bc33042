"""
End-to-end date accumulation: a contractor buys Basic Monthly, then upgrades
to Premium Monthly two seconds later.

Expected: the new term keeps the original start date (0 day gap) and runs for
roughly remaining days + 30, i.e. about 60 days, within 1 day.
"""

from datetime import timedelta

import pytest

from conftest import make_payment
from models import BillingPeriod, FreshPurchase, MembershipStatus, UpgradePurchase

TOLERANCE_DAYS = 1


@pytest.mark.asyncio
async def test_upgrade_two_seconds_after_purchase(service, db, now):
    t0 = now
    basic = await service.create_new_membership(
        FreshPurchase(user_id="contractor-1", plan_id="contractor-basic", billing_period=BillingPeriod.MONTHLY),
        make_payment("pay_basic", user_id="contractor-1", amount=4999),
        now=t0,
    )
    basic_term = basic["membership"]

    upgraded = await service.upgrade_membership(
        UpgradePurchase(
            user_id="contractor-1",
            current_term_id=basic_term.id,
            from_plan_id="contractor-basic",
            to_plan_id="contractor-premium",
            billing_period=BillingPeriod.MONTHLY,
        ),
        make_payment("pay_premium", user_id="contractor-1", amount=19999),
        now=t0 + timedelta(seconds=2),
    )
    premium_term = upgraded["membership"]

    start_gap_days = abs((premium_term.start_date - t0).days)
    total_days = (premium_term.end_date - premium_term.start_date) / timedelta(days=1)

    assert start_gap_days == 0
    assert premium_term.start_date == t0
    assert abs(total_days - 60) <= TOLERANCE_DAYS

    statuses = {
        doc["id"]: doc["status"]
        for doc in await db.memberships.find({"user_id": "contractor-1"}).to_list(length=None)
    }
    assert statuses == {
        basic_term.id: MembershipStatus.CANCELLED.value,
        premium_term.id: MembershipStatus.ACTIVE.value,
    }
