"""Member-facing membership routes."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from auth import get_current_user
from models import BillingPeriod, User, UserType
from services.exceptions import (
    InvalidPlanDuration,
    LeadLimitReached,
    PlanNotFound,
    PreconditionViolation,
    UpgradeNotAllowed,
)
from services.membership_service import MembershipService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/memberships", tags=["memberships"])

_membership_service = None


def init_router(db):
    """Initialize router with database instance."""
    global _membership_service
    _membership_service = MembershipService(db)


class AutoRenewRequest(BaseModel):
    is_auto_renew: bool


@router.get("/plans")
async def get_plans(
    user_type: Optional[UserType] = None,
    billing_period: Optional[BillingPeriod] = None,
):
    """List active plans, optionally narrowed by user type and billing period."""
    try:
        plan_service = _membership_service.plan_service
        if user_type and billing_period:
            plans = await plan_service.get_plans_by_user_type_and_billing(user_type, billing_period)
        elif user_type:
            plans = await plan_service.get_plans_by_user_type(user_type)
        else:
            plans = await plan_service.get_all_plans()
        return {"plans": plans}
    except Exception as e:
        logger.error(f"Error fetching plans: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to fetch plans")


@router.get("/current")
async def get_current_membership(current_user: User = Depends(get_current_user)):
    try:
        membership = await _membership_service.get_current_membership(current_user.id)
        if not membership:
            raise HTTPException(status_code=404, detail="No active membership found")

        plan = await _membership_service.plan_service.get_plan_by_id(
            membership.plan_id, include_inactive=True
        )
        return {"membership": membership, "plan": plan}

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error fetching membership for user {current_user.id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to fetch membership")


@router.get("/history")
async def get_membership_history(current_user: User = Depends(get_current_user)):
    try:
        history = await _membership_service.get_membership_history(current_user.id)
        return {"memberships": history}
    except Exception as e:
        logger.error(f"Error fetching membership history for user {current_user.id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to fetch membership history")


@router.post("/cancel")
async def cancel_membership(current_user: User = Depends(get_current_user)):
    """Cancel the current membership immediately."""
    try:
        membership = await _membership_service.cancel_membership(current_user.id)
        if not membership:
            raise HTTPException(status_code=404, detail="No active membership found")
        return {
            "success": True,
            "message": "Membership cancelled successfully",
            "membership": membership,
        }

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error cancelling membership for user {current_user.id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to cancel membership")


@router.put("/auto-renew")
async def set_auto_renew(request: AutoRenewRequest, current_user: User = Depends(get_current_user)):
    try:
        membership = await _membership_service.set_auto_renew(current_user.id, request.is_auto_renew)
        if not membership:
            raise HTTPException(status_code=404, detail="No active membership found")
        return {"success": True, "membership": membership}

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error updating auto-renew for user {current_user.id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to update auto-renew")


@router.get("/upgrade-preview")
async def preview_upgrade(
    plan_id: str = Query(..., description="Plan to upgrade to"),
    billing_period: BillingPeriod = Query(BillingPeriod.MONTHLY),
    current_user: User = Depends(get_current_user),
):
    """Show what an upgrade would give before checkout."""
    try:
        return await _membership_service.preview_upgrade(current_user.id, plan_id, billing_period)

    except PreconditionViolation as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PlanNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (UpgradeNotAllowed, InvalidPlanDuration) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error previewing upgrade for user {current_user.id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to preview upgrade")


@router.get("/leads")
async def get_lead_status(current_user: User = Depends(get_current_user)):
    try:
        lead_status = await _membership_service.get_lead_status(current_user.id)
        if not lead_status:
            raise HTTPException(status_code=404, detail="No active membership found")
        return lead_status

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error fetching lead status for user {current_user.id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to fetch lead status")


@router.post("/leads/consume")
async def consume_lead(current_user: User = Depends(get_current_user)):
    """Count one lead access against the member's allowance."""
    try:
        return await _membership_service.record_lead_access(current_user.id)

    except PreconditionViolation as e:
        raise HTTPException(status_code=404, detail=str(e))
    except LeadLimitReached as e:
        raise HTTPException(status_code=403, detail=str(e))
    except Exception as e:
        logger.error(f"Error recording lead access for user {current_user.id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to record lead access")
