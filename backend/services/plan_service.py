"""Membership plan catalogue and pricing."""

import logging
from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from models import TIER_ORDER, BillingPeriod, MembershipPlan, UserType
from services.exceptions import PlanNotFound

logger = logging.getLogger(__name__)


def _sort_plans(plans: List[MembershipPlan]) -> List[MembershipPlan]:
    return sorted(plans, key=lambda p: (p.user_type.value, TIER_ORDER[p.tier], p.monthly_price))


def get_payment_amount(plan: MembershipPlan, billing_period: BillingPeriod) -> int:
    """
    Amount charged for a plan, in cents.

    Yearly billing gets the plan's annual discount, rounded to the nearest cent.
    """
    if billing_period == BillingPeriod.MONTHLY:
        return plan.monthly_price
    return int(round(plan.yearly_price * (1 - plan.annual_discount_rate / 100)))


def validate_payment_amount(plan: MembershipPlan, billing_period: BillingPeriod, amount: int) -> bool:
    return amount == get_payment_amount(plan, billing_period)


class PlanService:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.plans_collection = db.plans

    async def _find_plans(self, query: dict) -> List[MembershipPlan]:
        documents = await self.plans_collection.find(query).to_list(length=None)
        return _sort_plans([MembershipPlan.model_validate(doc) for doc in documents])

    async def get_all_plans(self) -> List[MembershipPlan]:
        return await self._find_plans({"is_active": True})

    async def get_plans_by_user_type(self, user_type: UserType) -> List[MembershipPlan]:
        return await self._find_plans({"is_active": True, "user_type": UserType(user_type).value})

    async def get_plans_by_user_type_and_billing(
        self, user_type: UserType, billing_period: BillingPeriod
    ) -> List[MembershipPlan]:
        """Active plans of a user type that can be bought with the given billing period."""
        plans = await self.get_plans_by_user_type(user_type)
        if BillingPeriod(billing_period) == BillingPeriod.MONTHLY:
            return [p for p in plans if p.monthly_duration_days]
        return [p for p in plans if p.yearly_duration_days]

    async def get_plan_by_id(self, plan_id: str, include_inactive: bool = False) -> MembershipPlan:
        """
        Fetch a plan.

        Raises:
            PlanNotFound: unknown id, or inactive plan unless include_inactive
        """
        if not plan_id or not isinstance(plan_id, str):
            raise PlanNotFound("Invalid plan id")

        document = await self.plans_collection.find_one({"id": plan_id})
        if not document:
            raise PlanNotFound(f"Plan {plan_id} not found")

        plan = MembershipPlan.model_validate(document)
        if not plan.is_active and not include_inactive:
            raise PlanNotFound(f"Plan {plan_id} is inactive")
        return plan

    async def find_plan_by_razorpay_plan_id(self, razorpay_plan_id: str) -> Optional[MembershipPlan]:
        document = await self.plans_collection.find_one({
            "$or": [
                {"razorpay_plan_id_monthly": razorpay_plan_id},
                {"razorpay_plan_id_yearly": razorpay_plan_id},
            ]
        })
        return MembershipPlan.model_validate(document) if document else None

    async def determine_billing_period(self, razorpay_plan_id: str) -> BillingPeriod:
        """
        Resolve the billing period from the Razorpay plan id used at checkout.

        Raises:
            PlanNotFound: no plan carries this Razorpay plan id
        """
        plan = await self.find_plan_by_razorpay_plan_id(razorpay_plan_id)
        if not plan:
            raise PlanNotFound(f"No plan found with Razorpay plan id: {razorpay_plan_id}")

        if plan.razorpay_plan_id_monthly == razorpay_plan_id:
            return BillingPeriod.MONTHLY
        return BillingPeriod.YEARLY
