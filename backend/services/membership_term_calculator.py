"""
Membership Term Calculator - SINGLE SOURCE OF TRUTH for term dates
===================================================================

This module is the ONLY place where membership start/end dates are computed.
Services persist what it returns; they never do date arithmetic themselves.

Business Rules:
1. FRESH purchase: start = now, end = now + plan duration for the billing period
2. UPGRADE (active term): start = ORIGINAL start (never moves forward),
   end = now + remaining_days + new plan duration
3. UPGRADE (term already lapsed): same as a fresh purchase, remaining = 0
4. remaining_days = ceil((end - now) / 1 day), floored at 0
5. Usage counters are reset on every new term

Durations: monthly = 30 days, yearly = 365 days unless the plan says otherwise.
"""

import math
from datetime import datetime, timedelta
from typing import Optional

from models import (
    BillingPeriod,
    MembershipPlan,
    MembershipStatus,
    MembershipTerm,
    utcnow,
    ensure_utc,
)
from services.exceptions import InvalidPlanDuration, PreconditionViolation
from services.membership_benefits import initial_benefits

ONE_DAY = timedelta(days=1)


class MembershipTermCalculator:
    """
    SINGLE SOURCE OF TRUTH for membership term calculations.
    Pure: reads the clock (or the `now` it is given) and the records passed in.
    """

    MONTHLY_DURATION_DAYS = 30
    YEARLY_DURATION_DAYS = 365

    @staticmethod
    def get_duration_days(plan: MembershipPlan, billing_period: BillingPeriod) -> int:
        """
        Get the term length in days a plan grants for a billing period.

        Raises:
            InvalidPlanDuration: plan has no positive duration for the period
        """
        if billing_period == BillingPeriod.MONTHLY:
            duration_days = plan.monthly_duration_days
        elif billing_period == BillingPeriod.YEARLY:
            duration_days = plan.yearly_duration_days
        else:
            duration_days = None

        if not duration_days or duration_days <= 0:
            raise InvalidPlanDuration(plan.id, str(getattr(billing_period, "value", billing_period)))
        return duration_days

    @staticmethod
    def calculate_remaining_days(end_date: datetime, now: Optional[datetime] = None) -> int:
        """
        Days left on a term, rounded up so a partial day is never under-credited.

        Returns 0 once the term has lapsed.
        """
        now = ensure_utc(now) if now else utcnow()
        remaining = ensure_utc(end_date) - now
        if remaining <= timedelta(0):
            return 0
        return max(0, math.ceil(remaining / ONE_DAY))

    @staticmethod
    def is_active_at(term: MembershipTerm, now: Optional[datetime] = None) -> bool:
        now = ensure_utc(now) if now else utcnow()
        return term.status == MembershipStatus.ACTIVE and term.end_date > now

    @staticmethod
    def create_fresh_term(
        user_id: str,
        plan: MembershipPlan,
        billing_period: BillingPeriod,
        now: Optional[datetime] = None,
        is_auto_renew: bool = False,
    ) -> MembershipTerm:
        """
        Build the term for a first purchase (no active term to carry over).

        Args:
            user_id: Member the term belongs to
            plan: Plan being purchased
            billing_period: monthly or yearly
            now: Purchase instant (defaults to the clock)
            is_auto_renew: Auto-renewal choice made at checkout

        Returns:
            MembershipTerm: active, start = now, end = now + duration, zeroed usage
        """
        now = ensure_utc(now) if now else utcnow()
        duration_days = MembershipTermCalculator.get_duration_days(plan, billing_period)

        return MembershipTerm(
            user_id=user_id,
            plan_id=plan.id,
            billing_period=billing_period,
            start_date=now,
            end_date=now + timedelta(days=duration_days),
            status=MembershipStatus.ACTIVE,
            is_auto_renew=is_auto_renew,
            leads_used_this_month=0,
            leads_used_this_year=0,
            last_lead_reset_date=now,
            benefits=initial_benefits(plan),
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    def upgrade_term(
        current_term: Optional[MembershipTerm],
        new_plan: MembershipPlan,
        new_billing_period: BillingPeriod,
        now: Optional[datetime] = None,
    ) -> MembershipTerm:
        """
        Build the term that replaces an active term on upgrade.

        The original start date is preserved unconditionally; unused days of the
        current term are added on top of the new plan's duration. The current
        term is not modified; the caller retires it in the same write that
        activates the returned term.

        Raises:
            PreconditionViolation: no current term was supplied
            InvalidPlanDuration: new plan has no duration for the billing period
        """
        if current_term is None:
            raise PreconditionViolation("Upgrade requires a current active membership")

        now = ensure_utc(now) if now else utcnow()

        # Lapsed term: accumulation does not apply
        if now >= current_term.end_date:
            return MembershipTermCalculator.create_fresh_term(
                current_term.user_id,
                new_plan,
                new_billing_period,
                now=now,
                is_auto_renew=current_term.is_auto_renew,
            )

        remaining_days = MembershipTermCalculator.calculate_remaining_days(current_term.end_date, now)
        new_duration_days = remaining_days + MembershipTermCalculator.get_duration_days(
            new_plan, new_billing_period
        )

        return MembershipTerm(
            user_id=current_term.user_id,
            plan_id=new_plan.id,
            billing_period=new_billing_period,
            start_date=current_term.start_date,
            end_date=now + timedelta(days=new_duration_days),
            status=MembershipStatus.ACTIVE,
            is_auto_renew=current_term.is_auto_renew,
            leads_used_this_month=0,
            leads_used_this_year=0,
            last_lead_reset_date=now,
            is_upgraded=True,
            upgraded_from_membership_id=current_term.id,
            upgrade_history=list(current_term.upgrade_history),
            benefits=initial_benefits(new_plan),
            created_at=now,
            updated_at=now,
        )
