"""Tests for turning Razorpay payment events into membership changes."""

from datetime import timedelta

import pytest

from models import BillingPeriod, FreshPurchase, UpgradePurchase
from services.exceptions import MalformedPaymentNotes, PlanNotFound
from services.payment_webhook_service import PaymentWebhookService


@pytest.fixture
def webhook_service(db, service):
    return PaymentWebhookService(db, membership_service=service)


def captured(payment_id, notes, amount=4999, event="payment.captured", **entity):
    return {
        "event": event,
        "payload": {"payment": {"entity": {
            "id": payment_id,
            "amount": amount,
            "currency": "INR",
            "order_id": f"order_{payment_id}",
            "email": "member@example.com",
            "notes": notes,
            **entity,
        }}},
    }


class TestParsePurchase:
    @pytest.mark.asyncio
    async def test_fresh_purchase(self, webhook_service):
        purchase = await webhook_service.parse_purchase({
            "user_id": "user-1", "plan_id": "customer-basic", "billing_period": "yearly", "is_auto_renew": "true",
        })

        assert isinstance(purchase, FreshPurchase)
        assert purchase.billing_period == BillingPeriod.YEARLY
        assert purchase.is_auto_renew is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("flag", [True, "true", "1"])
    async def test_upgrade_purchase(self, webhook_service, flag):
        purchase = await webhook_service.parse_purchase({
            "user_id": "user-1",
            "is_upgrade": flag,
            "current_membership_id": "term-1",
            "from_plan_id": "contractor-basic",
            "to_plan_id": "contractor-premium",
            "billing_period": "monthly",
        })

        assert isinstance(purchase, UpgradePurchase)
        assert purchase.current_term_id == "term-1"
        assert purchase.plan_id == "contractor-premium"

    @pytest.mark.asyncio
    async def test_upgrade_without_current_membership(self, webhook_service):
        with pytest.raises(MalformedPaymentNotes):
            await webhook_service.parse_purchase({
                "user_id": "user-1", "is_upgrade": "true", "to_plan_id": "contractor-premium",
            })

    @pytest.mark.asyncio
    async def test_upgrade_without_billing_period_keeps_it_unset(self, webhook_service):
        purchase = await webhook_service.parse_purchase({
            "user_id": "user-1",
            "is_upgrade": "true",
            "current_membership_id": "term-1",
            "from_plan_id": "contractor-basic",
            "to_plan_id": "contractor-premium",
        })

        assert purchase.billing_period is None

    @pytest.mark.asyncio
    async def test_fresh_purchase_defaults_to_monthly(self, webhook_service):
        purchase = await webhook_service.parse_purchase({"user_id": "user-1", "plan_id": "customer-basic"})
        assert purchase.billing_period == BillingPeriod.MONTHLY

    @pytest.mark.asyncio
    async def test_missing_plan(self, webhook_service):
        with pytest.raises(MalformedPaymentNotes):
            await webhook_service.parse_purchase({"user_id": "user-1"})

    @pytest.mark.asyncio
    async def test_billing_period_from_razorpay_plan(self, webhook_service, db):
        await db.plans.update_one({"id": "customer-basic"}, {"$set": {"razorpay_plan_id_yearly": "plan_Y"}})

        purchase = await webhook_service.parse_purchase({
            "user_id": "user-1", "plan_id": "customer-basic", "razorpay_plan_id": "plan_Y",
        })

        assert purchase.billing_period == BillingPeriod.YEARLY


class TestHandleEvent:
    @pytest.mark.asyncio
    async def test_captured_payment_activates_membership(self, webhook_service, service):
        result = await webhook_service.handle_event(captured("pay_1", {
            "user_id": "user-1", "plan_id": "contractor-basic", "billing_period": "monthly",
        }))

        assert result["status"] == "processed"
        current = await service.get_current_membership("user-1")
        assert current.id == result["membership_id"]

    @pytest.mark.asyncio
    async def test_redelivery_is_idempotent(self, webhook_service, db):
        event = captured("pay_1", {"user_id": "user-1", "plan_id": "contractor-basic"})

        await webhook_service.handle_event(event)
        result = await webhook_service.handle_event(event)

        assert result["status"] == "already_processed"
        assert await db.memberships.count_documents({"user_id": "user-1"}) == 1

    @pytest.mark.asyncio
    async def test_upgrade_of_missing_term_becomes_fresh_purchase(self, webhook_service, service):
        result = await webhook_service.handle_event(captured("pay_1", {
            "user_id": "user-1",
            "is_upgrade": "true",
            "current_membership_id": "gone",
            "from_plan_id": "contractor-basic",
            "to_plan_id": "contractor-premium",
            "billing_period": "monthly",
        }, amount=19999))

        assert result["status"] == "processed"
        assert result["action_type"] == "new"
        current = await service.get_current_membership("user-1")
        assert current.plan_id == "contractor-premium"

    @pytest.mark.asyncio
    async def test_upgrade_event(self, webhook_service, service):
        first = await webhook_service.handle_event(captured("pay_1", {
            "user_id": "user-1", "plan_id": "contractor-basic",
        }))

        result = await webhook_service.handle_event(captured("pay_2", {
            "user_id": "user-1",
            "is_upgrade": "1",
            "current_membership_id": first["membership_id"],
            "from_plan_id": "contractor-basic",
            "to_plan_id": "contractor-standard",
        }, amount=9999))

        current = await service.get_current_membership("user-1")
        assert result["action_type"] == "upgrade"
        assert current.upgraded_from_membership_id == first["membership_id"]
        assert abs((current.end_date - current.start_date) - timedelta(days=60)) <= timedelta(days=1)

    @pytest.mark.asyncio
    async def test_upgrade_event_keeps_yearly_billing_period(self, webhook_service, service):
        first = await webhook_service.handle_event(captured("pay_1", {
            "user_id": "user-1", "plan_id": "contractor-basic", "billing_period": "yearly",
        }, amount=49999))

        result = await webhook_service.handle_event(captured("pay_2", {
            "user_id": "user-1",
            "is_upgrade": "true",
            "current_membership_id": first["membership_id"],
            "from_plan_id": "contractor-basic",
            "to_plan_id": "contractor-premium",
        }, amount=199999))

        current = await service.get_current_membership("user-1")
        assert result["action_type"] == "upgrade"
        assert current.billing_period == BillingPeriod.YEARLY
        assert abs((current.end_date - current.start_date) - timedelta(days=730)) <= timedelta(days=1)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        {"payment": None},
        {"payment": {"entity": None}},
        {"payment": "pay_1"},
        None,
        [],
    ])
    async def test_captured_event_without_payment_entity(self, webhook_service, db, payload):
        with pytest.raises(MalformedPaymentNotes):
            await webhook_service.handle_event({"event": "payment.captured", "payload": payload})
        assert await db.memberships.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_event_that_is_not_an_object(self, webhook_service):
        with pytest.raises(MalformedPaymentNotes):
            await webhook_service.handle_event(["payment.captured"])

    @pytest.mark.asyncio
    async def test_unknown_plan(self, webhook_service):
        with pytest.raises(PlanNotFound):
            await webhook_service.handle_event(captured("pay_1", {"user_id": "user-1", "plan_id": "gold"}))

    @pytest.mark.asyncio
    async def test_failed_payment_recorded(self, webhook_service, db):
        result = await webhook_service.handle_event(captured(
            "pay_1", {"user_id": "user-1", "plan_id": "contractor-basic"},
            event="payment.failed", error_description="Card declined",
        ))

        payment = await db.payments.find_one({"razorpay_payment_id": "pay_1"})
        assert result["status"] == "payment_failed"
        assert payment["status"] == "failed"
        assert payment["failure_reason"] == "Card declined"
        assert await db.memberships.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_failure_after_capture_ignored(self, webhook_service, db):
        notes = {"user_id": "user-1", "plan_id": "contractor-basic"}
        await webhook_service.handle_event(captured("pay_1", notes))

        result = await webhook_service.handle_event(captured("pay_1", notes, event="payment.failed"))

        assert result["status"] == "ignored"
        assert (await db.payments.find_one({"razorpay_payment_id": "pay_1"}))["status"] == "succeeded"

    @pytest.mark.asyncio
    async def test_other_events_ignored(self, webhook_service):
        result = await webhook_service.handle_event({"event": "order.paid", "payload": {}})
        assert result == {"status": "ignored", "event": "order.paid"}
