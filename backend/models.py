"""Membership domain models shared by services and routers."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (Mongo default) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def to_bson(value):
    """Plain Mongo-encodable copy of dumped model data (enums become their values)."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: to_bson(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_bson(v) for v in value]
    return value


class BillingPeriod(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class MembershipStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class UserType(str, Enum):
    CUSTOMER = "customer"
    CONTRACTOR = "contractor"


class MembershipTier(str, Enum):
    BASIC = "basic"
    STANDARD = "standard"
    PREMIUM = "premium"


class PropertyType(str, Enum):
    DOMESTIC = "domestic"
    COMMERCIAL = "commercial"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TIER_ORDER = {
    MembershipTier.BASIC: 1,
    MembershipTier.STANDARD: 2,
    MembershipTier.PREMIUM: 3,
}

# Boolean plan features; merged with OR on upgrade
CONTRACTOR_FEATURES = (
    "featured_listing",
    "off_market_access",
    "publicity_references",
    "verified_badge",
    "financing_support",
    "private_network",
)
CUSTOMER_FEATURES = (
    "free_calculators",
    "unlimited_requests",
    "contractor_reviews_visible",
    "priority_contractor_access",
    "property_valuation_support",
    "certified_aas_work",
    "free_evaluation",
)


class EffectiveBenefits(BaseModel):
    """Benefits a member actually gets; None on a numeric limit means unlimited."""
    # Contractor
    leads_per_month: Optional[int] = None
    access_delay_hours: int = 24
    radius_km: Optional[float] = None
    featured_listing: bool = False
    off_market_access: bool = False
    publicity_references: bool = False
    verified_badge: bool = False
    financing_support: bool = False
    private_network: bool = False

    # Customer
    max_properties: Optional[int] = None
    property_type: PropertyType = PropertyType.DOMESTIC
    platform_fee_percentage: float = 100
    free_calculators: bool = False
    unlimited_requests: bool = False
    contractor_reviews_visible: bool = False
    priority_contractor_access: bool = False
    property_valuation_support: bool = False
    certified_aas_work: bool = False
    free_evaluation: bool = False


class MembershipPlan(EffectiveBenefits):
    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    user_type: UserType
    tier: MembershipTier
    features: List[str] = Field(default_factory=list)
    monthly_price: int = Field(ge=0, description="Price in cents")
    yearly_price: int = Field(ge=0, description="Price in cents, before discount")
    annual_discount_rate: float = 15
    monthly_duration_days: Optional[int] = 30
    yearly_duration_days: Optional[int] = 365
    razorpay_plan_id_monthly: Optional[str] = None
    razorpay_plan_id_yearly: Optional[str] = None
    is_active: bool = True


class UpgradeHistoryEntry(BaseModel):
    from_plan_id: str
    to_plan_id: str
    upgraded_at: datetime
    days_added: int
    leads_added: int = 0
    amount_paid: int = 0
    payment_id: Optional[str] = None

    @field_validator("upgraded_at")
    @classmethod
    def normalize_dates(cls, value):
        return ensure_utc(value)


class MembershipTerm(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    plan_id: str
    payment_id: Optional[str] = None
    billing_period: BillingPeriod
    start_date: datetime
    end_date: datetime
    status: MembershipStatus = MembershipStatus.ACTIVE
    is_auto_renew: bool = False
    version: int = 0

    # Lead tracking (contractor plans)
    leads_used_this_month: int = 0
    leads_used_this_year: int = 0
    last_lead_reset_date: Optional[datetime] = None

    # Upgrade tracking
    is_upgraded: bool = False
    upgraded_from_membership_id: Optional[str] = None
    upgraded_to_membership_id: Optional[str] = None
    upgrade_history: List[UpgradeHistoryEntry] = Field(default_factory=list)
    accumulated_leads: Optional[int] = None
    bonus_leads_from_upgrade: Optional[int] = None

    benefits: EffectiveBenefits = Field(default_factory=EffectiveBenefits)

    cancelled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator(
        "start_date",
        "end_date",
        "last_lead_reset_date",
        "cancelled_at",
        "created_at",
        "updated_at",
    )
    @classmethod
    def normalize_dates(cls, value):
        return ensure_utc(value)

    def to_document(self) -> dict:
        return to_bson(self.model_dump(mode="python"))

    @classmethod
    def from_document(cls, document: dict) -> "MembershipTerm":
        data = {k: v for k, v in document.items() if k != "_id"}
        return cls.model_validate(data)


class PaymentRecord(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    plan_id: Optional[str] = None
    email: Optional[str] = None
    amount: int = 0
    currency: str = "inr"
    status: PaymentStatus = PaymentStatus.PENDING
    razorpay_payment_id: str
    razorpay_order_id: Optional[str] = None
    billing_period: Optional[BillingPeriod] = None
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# Purchases are decided once at the webhook boundary
class FreshPurchase(BaseModel):
    kind: Literal["fresh"] = "fresh"
    user_id: str
    plan_id: str
    billing_period: BillingPeriod
    is_auto_renew: bool = False


class UpgradePurchase(BaseModel):
    kind: Literal["upgrade"] = "upgrade"
    user_id: str
    current_term_id: str
    from_plan_id: str
    to_plan_id: str
    # None: keep the current term's billing period
    billing_period: Optional[BillingPeriod] = None

    @property
    def plan_id(self) -> str:
        return self.to_plan_id


Purchase = Annotated[Union[FreshPurchase, UpgradePurchase], Field(discriminator="kind")]


class LeadLimitStatus(BaseModel):
    can_access: bool
    reason: Optional[str] = None
    leads_used: int
    leads_limit: Optional[int] = None
    remaining: Optional[int] = None
    reset_date: datetime
    needs_reset: bool = False


class User(BaseModel):
    id: str
    email: Optional[str] = None
    role: str = "customer"
