"""
Effective benefit snapshots for membership terms.

A term stores the benefits the member actually has. A fresh term copies them
from its plan; an upgrade keeps the better of the current snapshot and the new
plan for every benefit, and carries unused leads forward.
"""

import math
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel

from models import (
    CONTRACTOR_FEATURES,
    CUSTOMER_FEATURES,
    BillingPeriod,
    EffectiveBenefits,
    MembershipPlan,
    MembershipTerm,
    PropertyType,
    UpgradeHistoryEntry,
    UserType,
    ensure_utc,
    utcnow,
)
from services.exceptions import UpgradeNotAllowed

BENEFIT_FIELDS = tuple(EffectiveBenefits.model_fields)


class UpgradeBenefits(BaseModel):
    benefits: EffectiveBenefits
    accumulated_leads: Optional[int] = None
    bonus_leads: int = 0


def initial_benefits(plan: MembershipPlan) -> EffectiveBenefits:
    return EffectiveBenefits(**{name: getattr(plan, name) for name in BENEFIT_FIELDS})


def max_with_unlimited(a: Optional[float], b: Optional[float]) -> Optional[float]:
    """Larger of two limits where None means unlimited and always wins."""
    if a is None or b is None:
        return None
    return max(a, b)


def _new_plan_total_leads(new_plan: MembershipPlan, billing_period: BillingPeriod) -> int:
    per_month = new_plan.leads_per_month or 0
    if billing_period == BillingPeriod.YEARLY:
        return per_month * 12
    return per_month


def merge_upgrade_benefits(
    current_term: MembershipTerm,
    current_plan: MembershipPlan,
    new_plan: MembershipPlan,
    billing_period: BillingPeriod,
) -> UpgradeBenefits:
    """
    Combine the current term's benefits with a new plan's.

    Numeric limits keep whichever is better for the member, booleans are OR-ed.
    For contractors the unused part of the current lead allowance is added to
    the new plan's allocation.
    """
    current = current_term.benefits
    merged = initial_benefits(new_plan)
    accumulated_leads: Optional[int] = None
    bonus_leads = 0

    if current_plan.user_type == UserType.CONTRACTOR:
        existing_accumulated = current_term.accumulated_leads or 0
        if existing_accumulated > 0:
            current_limit = existing_accumulated
        elif current.leads_per_month is not None:
            current_limit = current.leads_per_month
        else:
            current_limit = current_plan.leads_per_month or 0

        if current_term.billing_period == BillingPeriod.YEARLY:
            used = current_term.leads_used_this_year
        else:
            used = current_term.leads_used_this_month
        bonus_leads = max(0, current_limit - used)

        if current.leads_per_month is None or new_plan.leads_per_month is None:
            merged.leads_per_month = None
        else:
            merged.leads_per_month = new_plan.leads_per_month
            accumulated_leads = (
                existing_accumulated + bonus_leads + _new_plan_total_leads(new_plan, billing_period)
            )

        merged.access_delay_hours = min(current.access_delay_hours, new_plan.access_delay_hours)
        merged.radius_km = max_with_unlimited(current.radius_km, new_plan.radius_km)

    if current_plan.user_type == UserType.CUSTOMER:
        merged.max_properties = max_with_unlimited(current.max_properties, new_plan.max_properties)
        merged.platform_fee_percentage = min(
            current.platform_fee_percentage, new_plan.platform_fee_percentage
        )
        if PropertyType.COMMERCIAL in (current.property_type, new_plan.property_type):
            merged.property_type = PropertyType.COMMERCIAL
        else:
            merged.property_type = PropertyType.DOMESTIC

    for feature in CONTRACTOR_FEATURES + CUSTOMER_FEATURES:
        setattr(merged, feature, getattr(current, feature) or getattr(new_plan, feature))

    return UpgradeBenefits(
        benefits=merged,
        accumulated_leads=accumulated_leads,
        bonus_leads=bonus_leads,
    )


def build_upgrade_history_entry(
    from_plan_id: str,
    to_plan_id: str,
    upgraded_at: datetime,
    days_added: int,
    bonus_leads: int,
    amount_paid: int,
    payment_id: Optional[str] = None,
) -> UpgradeHistoryEntry:
    return UpgradeHistoryEntry(
        from_plan_id=from_plan_id,
        to_plan_id=to_plan_id,
        upgraded_at=upgraded_at,
        days_added=days_added,
        leads_added=bonus_leads,
        amount_paid=amount_paid,
        payment_id=payment_id,
    )


def validate_upgrade(
    current_term: MembershipTerm,
    current_plan: MembershipPlan,
    new_plan: MembershipPlan,
    now: Optional[datetime] = None,
) -> None:
    """
    Check that a member may start an upgrade checkout.

    Raises:
        UpgradeNotAllowed: user type would change, or the term was already upgraded
    """
    if current_plan.user_type != new_plan.user_type:
        raise UpgradeNotAllowed(
            "Cannot change user type during upgrade. Must remain customer or contractor."
        )

    if current_term.is_upgraded or current_term.upgrade_history:
        now = ensure_utc(now) if now else utcnow()
        days_remaining = max(0, math.ceil((current_term.end_date - now) / timedelta(days=1)))
        raise UpgradeNotAllowed(
            "Multiple upgrades not allowed. Your current membership expires on "
            f"{current_term.end_date.date().isoformat()} ({days_remaining} days remaining). "
            "Please wait for your current membership to expire before upgrading again."
        )
