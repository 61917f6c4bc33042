"""
Lead allowance rules for contractor memberships.

Lead counters reset monthly on the membership's start-date anniversary,
whatever the billing period. Yearly terms also draw from an annual pool that
renews every 365 days from the start date.
"""

from datetime import datetime, timedelta
from typing import Optional, Tuple

from dateutil.relativedelta import relativedelta

from models import BillingPeriod, LeadLimitStatus, MembershipTerm, ensure_utc, utcnow

YEAR = timedelta(days=365)


def _months_between(start: datetime, at: datetime) -> int:
    return (at.year - start.year) * 12 + (at.month - start.month)


def monthly_anniversary(at: datetime, start: datetime) -> datetime:
    """Start-date anniversary falling in the calendar month of `at`.

    relativedelta clamps days like the 31st to the month's last day.
    """
    start = ensure_utc(start)
    return start + relativedelta(months=_months_between(start, at))


def lead_period_bounds(now: datetime, start: datetime) -> Tuple[datetime, datetime]:
    """Current monthly lead period as [begin, end)."""
    start = ensure_utc(start)
    months = max(0, _months_between(start, now))
    if months and start + relativedelta(months=months) > now:
        months -= 1
    return start + relativedelta(months=months), start + relativedelta(months=months + 1)


def should_reset_monthly(now: datetime, start: datetime, last_reset: datetime) -> bool:
    """True once a monthly anniversary has passed since the last reset."""
    return ensure_utc(last_reset) < lead_period_bounds(now, start)[0]


def next_lead_reset_date(now: datetime, start: datetime) -> datetime:
    return lead_period_bounds(now, start)[1]


def yearly_period_bounds(now: datetime, start: datetime) -> Tuple[datetime, datetime]:
    start = ensure_utc(start)
    years_passed = max(0, int((now - start) / YEAR))
    begin = start + years_passed * YEAR
    return begin, begin + YEAR


def _status(leads_used: int, limit: Optional[int], reset_date: datetime, needs_reset: bool,
            label: str) -> LeadLimitStatus:
    if limit is None:
        return LeadLimitStatus(
            can_access=True,
            leads_used=leads_used,
            leads_limit=None,
            remaining=-1,
            reset_date=reset_date,
            needs_reset=needs_reset,
        )
    if leads_used >= limit:
        return LeadLimitStatus(
            can_access=False,
            reason=(
                f"{label} lead limit reached ({leads_used}/{limit}). "
                f"Resets on {reset_date.date().isoformat()}."
            ),
            leads_used=leads_used,
            leads_limit=limit,
            remaining=0,
            reset_date=reset_date,
            needs_reset=needs_reset,
        )
    return LeadLimitStatus(
        can_access=True,
        leads_used=leads_used,
        leads_limit=limit,
        remaining=limit - leads_used,
        reset_date=reset_date,
        needs_reset=needs_reset,
    )


def check_lead_limit(term: MembershipTerm, now: Optional[datetime] = None) -> LeadLimitStatus:
    """
    Work out whether the member may access another lead.

    `needs_reset` tells the caller to persist zeroed counters before counting;
    `leads_used` already reflects that reset.
    """
    now = ensure_utc(now) if now else utcnow()
    last_reset = term.last_lead_reset_date or term.start_date
    per_month = term.benefits.leads_per_month

    if term.billing_period == BillingPeriod.YEARLY:
        if term.accumulated_leads:
            limit = term.accumulated_leads
        elif per_month is None:
            limit = None
        else:
            limit = per_month * 12

        year_begin, year_end = yearly_period_bounds(now, term.start_date)
        needs_reset = last_reset < year_begin
        leads_used = 0 if needs_reset else term.leads_used_this_year
        return _status(leads_used, limit, year_end, needs_reset, "Annual")

    limit = term.accumulated_leads if term.accumulated_leads else per_month
    needs_reset = should_reset_monthly(now, term.start_date, last_reset)
    leads_used = 0 if needs_reset else term.leads_used_this_month
    return _status(leads_used, limit, next_lead_reset_date(now, term.start_date), needs_reset, "Monthly")
