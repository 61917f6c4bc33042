"""
Razorpay payment events -> membership changes.

The purchase kind (fresh or upgrade) is decided here, once, from the payment
notes written at checkout. Everything downstream works with typed purchases.
"""

import logging
from typing import Any, Dict, Optional, Union

from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import TypeAdapter, ValidationError

from models import (
    BillingPeriod,
    FreshPurchase,
    PaymentRecord,
    PaymentStatus,
    Purchase,
    UpgradePurchase,
    utcnow,
)
from services.exceptions import MalformedPaymentNotes, PreconditionViolation
from services.membership_service import MembershipService
from services.plan_service import validate_payment_amount

logger = logging.getLogger(__name__)

_purchase_adapter = TypeAdapter(Purchase)

TRUTHY_FLAGS = ("true", "1", "yes")


def _is_truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in TRUTHY_FLAGS


class PaymentWebhookService:
    def __init__(self, db: AsyncIOMotorDatabase, membership_service: Optional[MembershipService] = None):
        self.db = db
        self.payments_collection = db.payments
        self.membership_service = membership_service or MembershipService(db)
        self.plan_service = self.membership_service.plan_service

    async def parse_purchase(self, notes: Dict[str, Any]) -> Union[FreshPurchase, UpgradePurchase]:
        """
        Build the typed purchase described by checkout notes.

        Raises:
            MalformedPaymentNotes: required fields missing or invalid
            PlanNotFound: billing period had to be derived from an unknown
                Razorpay plan id
        """
        notes = notes or {}
        user_id = notes.get("user_id")
        if not user_id:
            raise MalformedPaymentNotes("Payment notes have no user_id")

        billing_period = notes.get("billing_period")
        if not billing_period and notes.get("razorpay_plan_id"):
            billing_period = (await self.plan_service.determine_billing_period(notes["razorpay_plan_id"])).value
        if _is_truthy(notes.get("is_upgrade")):
            if not notes.get("current_membership_id"):
                raise MalformedPaymentNotes("Upgrade payment notes have no current_membership_id")
            data = {
                "kind": "upgrade",
                "user_id": user_id,
                "current_term_id": notes["current_membership_id"],
                "from_plan_id": notes.get("from_plan_id"),
                "to_plan_id": notes.get("to_plan_id") or notes.get("plan_id"),
                "billing_period": billing_period,
            }
        else:
            data = {
                "kind": "fresh",
                "user_id": user_id,
                "plan_id": notes.get("plan_id"),
                "billing_period": billing_period or BillingPeriod.MONTHLY.value,
                "is_auto_renew": _is_truthy(notes.get("is_auto_renew")),
            }

        try:
            return _purchase_adapter.validate_python(data)
        except ValidationError as e:
            raise MalformedPaymentNotes(f"Invalid payment notes: {e}") from e

    async def _payment_from_entity(self, entity: Dict[str, Any], purchase: Optional[Purchase]) -> PaymentRecord:
        razorpay_payment_id = entity.get("id")
        notes = entity.get("notes") or {}
        existing = await self.payments_collection.find_one({"razorpay_payment_id": razorpay_payment_id})

        record = PaymentRecord(
            user_id=notes.get("user_id", ""),
            plan_id=purchase.plan_id if purchase else notes.get("plan_id"),
            email=entity.get("email"),
            amount=int(entity.get("amount") or 0),
            currency=(entity.get("currency") or "inr").lower(),
            razorpay_payment_id=razorpay_payment_id,
            razorpay_order_id=entity.get("order_id"),
            billing_period=purchase.billing_period if purchase else None,
        )
        if existing:
            record.id = existing["id"]
            record.created_at = existing.get("created_at", record.created_at)
        return record

    async def handle_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply one verified webhook event.

        Domain errors propagate; the router decides which are permanent.
        """
        if not isinstance(event, dict):
            raise MalformedPaymentNotes("Webhook event is not a JSON object")
        event_type = event.get("event")
        payload = event.get("payload") or {}
        payment_wrapper = payload.get("payment") if isinstance(payload, dict) else None
        entity = payment_wrapper.get("entity") if isinstance(payment_wrapper, dict) else None
        if not isinstance(entity, dict):
            entity = {}
        payment_id = entity.get("id")

        logger.info(f"[WEBHOOK] Received Razorpay event: {event_type}, payment_id: {payment_id}")

        if event_type == "payment.captured":
            return await self.handle_payment_captured(entity)
        if event_type == "payment.failed":
            return await self.handle_payment_failed(entity)

        logger.info(f"[WEBHOOK] Ignoring unhandled event type: {event_type}")
        return {"status": "ignored", "event": event_type}

    async def handle_payment_captured(self, entity: Dict[str, Any]) -> Dict[str, Any]:
        if not entity.get("id"):
            raise MalformedPaymentNotes("Payment entity has no id")

        purchase = await self.parse_purchase(entity.get("notes") or {})
        payment = await self._payment_from_entity(entity, purchase)

        plan = await self.plan_service.get_plan_by_id(purchase.plan_id, include_inactive=True)
        if purchase.billing_period and not validate_payment_amount(plan, purchase.billing_period, payment.amount):
            logger.warning(
                f"[WEBHOOK] Payment {payment.razorpay_payment_id} amount {payment.amount} does not match "
                f"plan {plan.id} {purchase.billing_period.value} price"
            )

        try:
            result = await self.membership_service.process_purchase(purchase, payment)
        except PreconditionViolation as e:
            if not isinstance(purchase, UpgradePurchase):
                raise
            logger.warning(
                f"[UPGRADE] {e}. Processing payment {payment.razorpay_payment_id} as a new membership"
            )
            fresh = FreshPurchase(
                user_id=purchase.user_id,
                plan_id=purchase.to_plan_id,
                billing_period=purchase.billing_period or BillingPeriod.MONTHLY,
            )
            result = await self.membership_service.create_new_membership(fresh, payment)

        membership = result.get("membership")
        return {
            "status": result["status"],
            "action_type": result.get("action_type"),
            "membership_id": membership.id if membership else result.get("membership_id"),
        }

    async def handle_payment_failed(self, entity: Dict[str, Any]) -> Dict[str, Any]:
        razorpay_payment_id = entity.get("id")
        if not razorpay_payment_id:
            raise MalformedPaymentNotes("Payment entity has no id")

        existing = await self.payments_collection.find_one({"razorpay_payment_id": razorpay_payment_id})
        if existing and existing.get("status") == PaymentStatus.SUCCEEDED.value:
            logger.warning(f"[WEBHOOK] Ignoring failure for already captured payment {razorpay_payment_id}")
            return {"status": "ignored", "payment_id": razorpay_payment_id}

        payment = await self._payment_from_entity(entity, None)
        now = utcnow()
        reason = entity.get("error_description") or "Payment failed"

        await self.payments_collection.update_one(
            {"razorpay_payment_id": razorpay_payment_id},
            {
                "$set": {
                    "status": PaymentStatus.FAILED.value,
                    "failure_reason": reason,
                    "updated_at": now,
                },
                "$setOnInsert": {
                    "id": payment.id,
                    "user_id": payment.user_id,
                    "plan_id": payment.plan_id,
                    "email": payment.email,
                    "amount": payment.amount,
                    "currency": payment.currency,
                    "razorpay_order_id": payment.razorpay_order_id,
                    "created_at": now,
                },
            },
            upsert=True,
        )
        logger.warning(f"[WEBHOOK] Payment {razorpay_payment_id} failed: {reason}")
        return {"status": "payment_failed", "payment_id": razorpay_payment_id}
