"""Membership domain errors raised by services and translated by routers."""


class MembershipError(Exception):
    """Base class for membership errors."""


class PreconditionViolation(MembershipError):
    """Upgrade requested without a valid current active term.

    Callers should retry the purchase through the fresh-purchase path.
    """


class InvalidPlanDuration(MembershipError):
    """Plan has no resolvable duration for the requested billing period."""

    def __init__(self, plan_id: str, billing_period: str):
        self.plan_id = plan_id
        self.billing_period = billing_period
        super().__init__(
            f"Plan {plan_id} has no duration configured for {billing_period} billing"
        )


class ConcurrencyConflict(MembershipError):
    """The active term changed between read and conditional write."""


class PlanNotFound(MembershipError):
    pass


class UpgradeNotAllowed(MembershipError):
    pass


class LeadLimitReached(MembershipError):
    pass


class MalformedPaymentNotes(MembershipError):
    """Payment notes do not describe a valid purchase."""
