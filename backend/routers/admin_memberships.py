from fastapi import APIRouter, Depends, HTTPException
from motor.motor_asyncio import AsyncIOMotorDatabase
from auth import get_current_admin
from models import User
from services.membership_service import MembershipService
from services.membership_term_calculator import MembershipTermCalculator
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/memberships", tags=["admin-memberships"])

_membership_service = None


def init_router(db: AsyncIOMotorDatabase):
    """Initialize router with database instance"""
    global _membership_service
    _membership_service = MembershipService(db)


@router.get("/stats")
async def get_membership_stats(admin: User = Depends(get_current_admin)):
    """
    Membership counts per status, and active memberships per user type and tier
    """
    try:
        return await _membership_service.get_membership_stats()
    except Exception as e:
        logger.error(f"Error fetching membership stats: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error fetching membership stats: {str(e)}")


@router.post("/expire")
async def expire_memberships(admin: User = Depends(get_current_admin)):
    """
    Mark every active membership past its end date as expired
    """
    try:
        expired_count = await _membership_service.expire_old_memberships()
        logger.info(f"Admin {admin.id} expired {expired_count} memberships")
        return {"success": True, "expired_count": expired_count}
    except Exception as e:
        logger.error(f"Error expiring memberships: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Error expiring memberships: {str(e)}")


@router.get("/{user_id}")
async def get_user_membership_details(user_id: str, admin: User = Depends(get_current_admin)):
    """
    Current membership, remaining days and full history for a user
    """
    try:
        membership = await _membership_service.get_current_membership(user_id)
        history = await _membership_service.get_membership_history(user_id)
        if not membership and not history:
            raise HTTPException(status_code=404, detail="No memberships found for user")

        days_remaining = 0
        if membership:
            days_remaining = MembershipTermCalculator.calculate_remaining_days(membership.end_date)

        return {
            "user_id": user_id,
            "membership": membership,
            "days_remaining": days_remaining,
            "history": history,
        }

    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Error fetching membership: {str(e)}")
