"""
Membership Service - SINGLE SOURCE OF TRUTH for Membership Operations
======================================================================

This service is the ONLY place where membership terms are created, replaced,
cancelled or expired. Routers and the payment webhook MUST go through it and
never write the memberships collection directly.

Replacing a term (purchase or upgrade) is one transaction: the old active term
is retired with a version-checked conditional update, the new active term is
inserted, and the payment is recorded as processed. A user therefore never has
zero or two active terms, and a payment activates at most one term.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError, PyMongoError

from config import MEMBERSHIP_WRITE_ATTEMPTS
from models import (
    BillingPeriod,
    FreshPurchase,
    LeadLimitStatus,
    MembershipPlan,
    MembershipStatus,
    MembershipTerm,
    PaymentRecord,
    PaymentStatus,
    UpgradePurchase,
    ensure_utc,
    to_bson,
    utcnow,
)
from services.exceptions import (
    ConcurrencyConflict,
    LeadLimitReached,
    PreconditionViolation,
    UpgradeNotAllowed,
)
from services.lead_allowance import check_lead_limit
from services.membership_benefits import (
    build_upgrade_history_entry,
    merge_upgrade_benefits,
    validate_upgrade,
)
from services.membership_term_calculator import MembershipTermCalculator
from services.plan_service import PlanService, get_payment_amount

logger = logging.getLogger(__name__)

ACTIVE = MembershipStatus.ACTIVE.value


async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    """Indexes the membership service relies on for correctness and lookups."""
    await db.memberships.create_index("id", unique=True, name="membership_id_unique")
    # At most one active term per user, enforced by the store
    await db.memberships.create_index(
        "user_id",
        unique=True,
        partialFilterExpression={"status": ACTIVE},
        name="one_active_membership_per_user",
    )
    await db.memberships.create_index([("user_id", 1), ("status", 1)], name="user_status")
    await db.memberships.create_index([("end_date", 1), ("status", 1)], name="end_date_status")
    await db.processed_payments.create_index("payment_id", unique=True, name="payment_id_unique")
    await db.processed_payments.create_index("user_id", name="user_id_index")
    await db.payments.create_index(
        "razorpay_payment_id", unique=True, name="razorpay_payment_id_unique"
    )
    await db.plans.create_index("id", unique=True, name="plan_id_unique")
    await db.plans.create_index("is_active", name="is_active_index")


class MembershipService:
    """
    SINGLE SOURCE OF TRUTH for all membership operations.
    """

    def __init__(self, db: AsyncIOMotorDatabase, max_write_attempts: int = MEMBERSHIP_WRITE_ATTEMPTS):
        self.db = db
        self.memberships_collection = db.memberships
        self.payments_collection = db.payments
        self.processed_payments_collection = db.processed_payments
        self.users_collection = db.users
        self.plan_service = PlanService(db)
        self.max_write_attempts = max(1, max_write_attempts)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_membership(self, membership_id: str) -> Optional[MembershipTerm]:
        document = await self.memberships_collection.find_one({"id": membership_id})
        return MembershipTerm.from_document(document) if document else None

    async def get_current_membership(
        self, user_id: str, now: Optional[datetime] = None
    ) -> Optional[MembershipTerm]:
        """The user's active, unexpired term, if any."""
        now = ensure_utc(now) if now else utcnow()
        document = await self.memberships_collection.find_one({
            "user_id": user_id,
            "status": ACTIVE,
            "end_date": {"$gt": now},
        })
        return MembershipTerm.from_document(document) if document else None

    async def _find_active_term(self, user_id: str) -> Optional[MembershipTerm]:
        # Includes lapsed terms the expiry sweep has not reached yet
        document = await self.memberships_collection.find_one({"user_id": user_id, "status": ACTIVE})
        return MembershipTerm.from_document(document) if document else None

    async def get_membership_history(self, user_id: str) -> List[MembershipTerm]:
        documents = await self.memberships_collection.find(
            {"user_id": user_id}
        ).sort("start_date", -1).to_list(length=None)
        return [MembershipTerm.from_document(doc) for doc in documents]

    # ------------------------------------------------------------------
    # Purchases
    # ------------------------------------------------------------------

    async def process_purchase(
        self,
        purchase: Union[FreshPurchase, UpgradePurchase],
        payment: PaymentRecord,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        if isinstance(purchase, UpgradePurchase):
            return await self.upgrade_membership(purchase, payment, now=now)
        return await self.create_new_membership(purchase, payment, now=now)

    async def create_new_membership(
        self,
        purchase: FreshPurchase,
        payment: PaymentRecord,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Activate a first purchase.

        If the user still holds an unexpired active term, the purchase is
        applied with the upgrade rule against it so the remaining time is kept
        and exactly one active term results.

        Returns:
            dict: processing result, or the cached result if the payment was
            already processed
        """
        logger.info(
            f"[MEMBERSHIP] New purchase for user {purchase.user_id}, plan {purchase.plan_id}, "
            f"{purchase.billing_period.value}, payment {payment.razorpay_payment_id}"
        )

        existing = await self._find_processed_payment(payment.razorpay_payment_id)
        if existing:
            return self._already_processed_result(existing)

        plan = await self.plan_service.get_plan_by_id(purchase.plan_id)

        for attempt in range(1, self.max_write_attempts + 1):
            current_now = ensure_utc(now) if now else utcnow()
            active = await self._find_active_term(purchase.user_id)

            if active and MembershipTermCalculator.is_active_at(active, current_now):
                logger.warning(
                    f"[MEMBERSHIP] User {purchase.user_id} already has active membership {active.id}; "
                    f"accumulating remaining time into the new term"
                )
                current_plan = await self.plan_service.get_plan_by_id(active.plan_id, include_inactive=True)
                new_term = self._build_upgraded_term(
                    active, current_plan, plan, purchase.billing_period, payment, current_now
                )
                action_type = "upgrade"
            else:
                new_term = MembershipTermCalculator.create_fresh_term(
                    purchase.user_id,
                    plan,
                    purchase.billing_period,
                    now=current_now,
                    is_auto_renew=purchase.is_auto_renew,
                )
                new_term.payment_id = payment.id
                action_type = "new"

            try:
                return await self._commit_replacement(active, new_term, payment, action_type, current_now)
            except ConcurrencyConflict:
                if attempt >= self.max_write_attempts:
                    raise
                logger.warning(
                    f"[MEMBERSHIP] Concurrent change for user {purchase.user_id} "
                    f"(attempt {attempt}/{self.max_write_attempts}); re-reading"
                )
            except DuplicateKeyError:
                return await self._already_processed_after_race(payment.razorpay_payment_id)

        raise ConcurrencyConflict(f"Could not activate membership for user {purchase.user_id}")

    async def upgrade_membership(
        self,
        purchase: UpgradePurchase,
        payment: PaymentRecord,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Replace the referenced active term with an upgraded one.

        Raises:
            PreconditionViolation: referenced term missing, not the user's, or
                no longer active (caller should use the fresh-purchase path)
            UpgradeNotAllowed: plans are for different user types
            ConcurrencyConflict: term kept changing under us
        """
        period = purchase.billing_period.value if purchase.billing_period else "current period"
        logger.info(
            f"[UPGRADE] User {purchase.user_id}: {purchase.from_plan_id} -> {purchase.to_plan_id} "
            f"({period}), membership {purchase.current_term_id}, "
            f"payment {payment.razorpay_payment_id}"
        )

        existing = await self._find_processed_payment(payment.razorpay_payment_id)
        if existing:
            return self._already_processed_result(existing)

        from_plan = await self.plan_service.get_plan_by_id(purchase.from_plan_id, include_inactive=True)
        to_plan = await self.plan_service.get_plan_by_id(purchase.to_plan_id)

        for attempt in range(1, self.max_write_attempts + 1):
            current_now = ensure_utc(now) if now else utcnow()
            current = await self.get_membership(purchase.current_term_id)

            if current is None:
                raise PreconditionViolation(f"Membership {purchase.current_term_id} not found for upgrade")
            if current.user_id != purchase.user_id:
                raise PreconditionViolation(
                    f"Membership {purchase.current_term_id} does not belong to user {purchase.user_id}"
                )
            if current.status != MembershipStatus.ACTIVE:
                raise PreconditionViolation(
                    f"Membership {purchase.current_term_id} is {current.status.value}, not active"
                )

            billing_period = purchase.billing_period or current.billing_period
            new_term = self._build_upgraded_term(
                current, from_plan, to_plan, billing_period, payment, current_now
            )
            action_type = "upgrade" if new_term.is_upgraded else "new"

            try:
                return await self._commit_replacement(current, new_term, payment, action_type, current_now)
            except ConcurrencyConflict:
                if attempt >= self.max_write_attempts:
                    raise
                logger.warning(
                    f"[UPGRADE] Membership {purchase.current_term_id} changed concurrently "
                    f"(attempt {attempt}/{self.max_write_attempts}); re-reading"
                )
            except DuplicateKeyError:
                return await self._already_processed_after_race(payment.razorpay_payment_id)

        raise ConcurrencyConflict(f"Could not upgrade membership {purchase.current_term_id}")

    def _build_upgraded_term(
        self,
        current: MembershipTerm,
        current_plan: MembershipPlan,
        new_plan: MembershipPlan,
        billing_period: BillingPeriod,
        payment: PaymentRecord,
        now: datetime,
    ) -> MembershipTerm:
        if current_plan.user_type != new_plan.user_type:
            raise UpgradeNotAllowed("Cannot change user type during upgrade")

        new_term = MembershipTermCalculator.upgrade_term(current, new_plan, billing_period, now=now)
        new_term.payment_id = payment.id

        # Lapsed term: fresh term, nothing to carry over
        if not new_term.is_upgraded:
            return new_term

        merged = merge_upgrade_benefits(current, current_plan, new_plan, billing_period)
        new_term.benefits = merged.benefits
        new_term.accumulated_leads = merged.accumulated_leads
        new_term.bonus_leads_from_upgrade = merged.bonus_leads
        new_term.upgrade_history.append(
            build_upgrade_history_entry(
                from_plan_id=current_plan.id,
                to_plan_id=new_plan.id,
                upgraded_at=now,
                days_added=MembershipTermCalculator.get_duration_days(new_plan, billing_period),
                bonus_leads=merged.bonus_leads,
                amount_paid=payment.amount,
                payment_id=payment.id,
            )
        )
        return new_term

    async def _commit_replacement(
        self,
        old_term: Optional[MembershipTerm],
        new_term: MembershipTerm,
        payment: PaymentRecord,
        action_type: str,
        now: datetime,
    ) -> Dict[str, Any]:
        """
        Retire `old_term` and activate `new_term` in one transaction.

        Raises:
            ConcurrencyConflict: old term no longer matches the version read,
                another active term appeared for the user, or MongoDB aborted
                the transaction with a transient error (e.g. WriteConflict)
            DuplicateKeyError: the payment was recorded by a concurrent delivery
        """
        try:
            return await self._replace_in_transaction(old_term, new_term, payment, action_type, now)
        except PyMongoError as e:
            if not e.has_error_label("TransientTransactionError"):
                raise
            raise ConcurrencyConflict(
                f"Transaction for user {new_term.user_id} aborted by a concurrent write: {e}"
            ) from e

    async def _replace_in_transaction(
        self,
        old_term: Optional[MembershipTerm],
        new_term: MembershipTerm,
        payment: PaymentRecord,
        action_type: str,
        now: datetime,
    ) -> Dict[str, Any]:
        payment_document = to_bson(payment.model_dump(mode="python"))
        payment_document.update({
            "status": PaymentStatus.SUCCEEDED.value,
            "plan_id": new_term.plan_id,
            "billing_period": new_term.billing_period.value,
            "updated_at": now,
        })

        async with await self.db.client.start_session() as session:
            async with session.start_transaction():
                if old_term is not None:
                    superseded = old_term.end_date > now
                    retired_status = MembershipStatus.CANCELLED if superseded else MembershipStatus.EXPIRED
                    retire_fields = {
                        "status": retired_status.value,
                        "updated_at": now,
                    }
                    if superseded:
                        retire_fields["upgraded_to_membership_id"] = new_term.id
                        retire_fields["cancelled_at"] = now

                    result = await self.memberships_collection.update_one(
                        {"id": old_term.id, "status": ACTIVE, "version": old_term.version},
                        {"$set": retire_fields, "$inc": {"version": 1}},
                        session=session,
                    )
                    if result.matched_count == 0:
                        raise ConcurrencyConflict(f"Membership {old_term.id} changed since it was read")

                try:
                    await self.memberships_collection.insert_one(new_term.to_document(), session=session)
                except DuplicateKeyError as e:
                    raise ConcurrencyConflict(
                        f"Another active membership exists for user {new_term.user_id}"
                    ) from e

                await self.payments_collection.update_one(
                    {"razorpay_payment_id": payment.razorpay_payment_id},
                    {"$set": payment_document},
                    upsert=True,
                    session=session,
                )
                await self.processed_payments_collection.insert_one({
                    "payment_id": payment.razorpay_payment_id,
                    "user_id": new_term.user_id,
                    "membership_id": new_term.id,
                    "previous_membership_id": old_term.id if old_term else None,
                    "action_type": action_type,
                    "processed_at": now,
                }, session=session)
                await self.users_collection.update_one(
                    {"id": new_term.user_id},
                    {"$set": {
                        "membership_id": new_term.id,
                        "plan_id": new_term.plan_id,
                        "updated_at": now,
                    }},
                    session=session,
                )

        duration_days = (new_term.end_date - now).days
        logger.info(
            f"[MEMBERSHIP] {action_type.upper()}: user {new_term.user_id} now has plan {new_term.plan_id} "
            f"from {new_term.start_date.isoformat()} until {new_term.end_date.isoformat()} "
            f"({duration_days} days from now)"
        )

        return {
            "status": "processed",
            "action_type": action_type,
            "membership": new_term,
            "previous_membership_id": old_term.id if old_term else None,
            "duration_days": duration_days,
        }

    async def _find_processed_payment(self, payment_id: str) -> Optional[dict]:
        return await self.processed_payments_collection.find_one({"payment_id": payment_id})

    @staticmethod
    def _already_processed_result(existing: dict) -> Dict[str, Any]:
        logger.warning(
            f"[IDEMPOTENCY] Payment {existing.get('payment_id')} already processed on "
            f"{existing.get('processed_at')}. Returning cached result."
        )
        return {
            "status": "already_processed",
            "membership_id": existing.get("membership_id"),
            "action_type": existing.get("action_type"),
            "processed_at": existing.get("processed_at"),
            "message": "This payment was already processed",
        }

    async def _already_processed_after_race(self, payment_id: str) -> Dict[str, Any]:
        existing = await self._find_processed_payment(payment_id)
        return self._already_processed_result(existing or {"payment_id": payment_id})

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def cancel_membership(self, user_id: str, now: Optional[datetime] = None) -> Optional[MembershipTerm]:
        """Cancel the user's current term immediately. Returns None if there is none."""
        now = ensure_utc(now) if now else utcnow()
        current = await self.get_current_membership(user_id, now)
        if not current:
            return None

        changes = {
            "status": MembershipStatus.CANCELLED.value,
            "end_date": now,
            "is_auto_renew": False,
            "cancelled_at": now,
            "updated_at": now,
        }
        result = await self.memberships_collection.update_one(
            {"id": current.id, "status": ACTIVE},
            {"$set": changes, "$inc": {"version": 1}},
        )
        if result.matched_count == 0:
            return None

        logger.info(f"[MEMBERSHIP] Membership {current.id} cancelled for user {user_id}")
        changes.update(status=MembershipStatus.CANCELLED, version=current.version + 1)
        return current.model_copy(update=changes)

    async def expire_old_memberships(self, now: Optional[datetime] = None) -> int:
        """Mark active terms past their end date as expired. Returns how many changed."""
        now = ensure_utc(now) if now else utcnow()
        result = await self.memberships_collection.update_many(
            {"status": ACTIVE, "end_date": {"$lte": now}},
            {"$set": {"status": MembershipStatus.EXPIRED.value, "updated_at": now}, "$inc": {"version": 1}},
        )
        logger.info(f"[MEMBERSHIP] Expired {result.modified_count} old memberships")
        return result.modified_count

    async def set_auto_renew(
        self, user_id: str, is_auto_renew: bool, now: Optional[datetime] = None
    ) -> Optional[MembershipTerm]:
        now = ensure_utc(now) if now else utcnow()
        current = await self.get_current_membership(user_id, now)
        if not current:
            return None

        await self.memberships_collection.update_one(
            {"id": current.id},
            {"$set": {"is_auto_renew": is_auto_renew, "updated_at": now}},
        )
        return current.model_copy(update={"is_auto_renew": is_auto_renew, "updated_at": now})

    async def get_membership_stats(self) -> Dict[str, Any]:
        status_stats = {
            status.value: await self.memberships_collection.count_documents({"status": status.value})
            for status in MembershipStatus
        }

        active = await self.memberships_collection.find(
            {"status": ACTIVE}, {"plan_id": 1}
        ).to_list(length=None)
        plan_documents = await self.db.plans.find({}).to_list(length=None)
        plans = {doc["id"]: MembershipPlan.model_validate(doc) for doc in plan_documents}

        counts: Dict[tuple, int] = defaultdict(int)
        for document in active:
            plan = plans.get(document.get("plan_id"))
            if plan:
                counts[(plan.user_type.value, plan.tier.value)] += 1

        return {
            "status_stats": status_stats,
            "plan_stats": [
                {"user_type": user_type, "tier": tier, "count": count}
                for (user_type, tier), count in sorted(counts.items())
            ],
        }

    # ------------------------------------------------------------------
    # Leads
    # ------------------------------------------------------------------

    async def get_lead_status(self, user_id: str, now: Optional[datetime] = None) -> Optional[LeadLimitStatus]:
        """Lead allowance for the user's current term, persisting a due counter reset."""
        now = ensure_utc(now) if now else utcnow()
        current = await self.get_current_membership(user_id, now)
        if not current:
            return None

        status = check_lead_limit(current, now)
        if status.needs_reset:
            await self.memberships_collection.update_one(
                {"id": current.id},
                {"$set": {
                    "leads_used_this_month": 0,
                    "leads_used_this_year": 0 if current.billing_period == BillingPeriod.YEARLY
                    else current.leads_used_this_year,
                    "last_lead_reset_date": now,
                    "updated_at": now,
                }},
            )
            logger.info(f"[LEADS] Reset lead counters for membership {current.id}")
        return status

    async def record_lead_access(self, user_id: str, now: Optional[datetime] = None) -> LeadLimitStatus:
        """
        Count one lead access against the user's allowance.

        Raises:
            PreconditionViolation: user has no active membership
            LeadLimitReached: allowance used up
        """
        now = ensure_utc(now) if now else utcnow()
        status = await self.get_lead_status(user_id, now)
        if status is None:
            raise PreconditionViolation(f"User {user_id} has no active membership")
        if not status.can_access:
            raise LeadLimitReached(status.reason)

        current = await self.get_current_membership(user_id, now)
        counter = (
            "leads_used_this_year" if current.billing_period == BillingPeriod.YEARLY
            else "leads_used_this_month"
        )
        query = {"id": current.id, "status": ACTIVE}
        if status.leads_limit is not None:
            query[counter] = {"$lt": status.leads_limit}

        result = await self.memberships_collection.update_one(
            query,
            {"$inc": {"leads_used_this_month": 1, "leads_used_this_year": 1}, "$set": {"updated_at": now}},
        )
        if result.matched_count == 0:
            raise LeadLimitReached("Lead limit reached")

        remaining = -1 if status.leads_limit is None else status.leads_limit - status.leads_used - 1
        return status.model_copy(update={
            "leads_used": status.leads_used + 1,
            "remaining": remaining,
            "needs_reset": False,
        })

    # ------------------------------------------------------------------
    # Upgrade preview
    # ------------------------------------------------------------------

    async def preview_upgrade(
        self,
        user_id: str,
        new_plan_id: str,
        billing_period: BillingPeriod,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        What an upgrade would give the user, without changing anything.

        Raises:
            PreconditionViolation: no active membership to upgrade
            UpgradeNotAllowed: user type change or repeated upgrade
            PlanNotFound / InvalidPlanDuration: bad target plan
        """
        now = ensure_utc(now) if now else utcnow()
        current = await self.get_current_membership(user_id, now)
        if not current:
            raise PreconditionViolation("No active membership found to upgrade")

        current_plan = await self.plan_service.get_plan_by_id(current.plan_id, include_inactive=True)
        new_plan = await self.plan_service.get_plan_by_id(new_plan_id)
        validate_upgrade(current, current_plan, new_plan, now)

        remaining_days = MembershipTermCalculator.calculate_remaining_days(current.end_date, now)
        new_plan_days = MembershipTermCalculator.get_duration_days(new_plan, billing_period)
        merged = merge_upgrade_benefits(current, current_plan, new_plan, billing_period)

        return {
            "current_membership_id": current.id,
            "from_plan_id": current_plan.id,
            "to_plan_id": new_plan.id,
            "billing_period": BillingPeriod(billing_period).value,
            "start_date": current.start_date,
            "remaining_days": remaining_days,
            "new_plan_days": new_plan_days,
            "accumulated_days": remaining_days + new_plan_days,
            "new_end_date": now + timedelta(days=remaining_days + new_plan_days),
            "amount": get_payment_amount(new_plan, billing_period),
            "accumulated_leads": merged.accumulated_leads,
            "bonus_leads": merged.bonus_leads,
            "benefits": merged.benefits,
        }
