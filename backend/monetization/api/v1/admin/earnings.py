from datetime import timedelta
from typing import Optional
from uuid import UUID
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from monetization.api.deps import get_admin_user, get_services
from monetization.models.user import User
from monetization.services.context import ServiceContext

router = APIRouter()


class ViewsRequest(BaseModel):
    creator_id: UUID
    views: int
    region: Optional[str] = None
    video_id: Optional[str] = None


class RejectRequest(BaseModel):
    reason: str


@router.post("/views")
async def record_views(
    data: ViewsRequest,
    admin: User = Depends(get_admin_user),
    services: ServiceContext = Depends(get_services),
):
    event = await services.accrual.record_views(data.creator_id, data.views, region=data.region, video_id=data.video_id)
    return {"ok": True, "earning": event.to_dict() if event else None}


@router.post("/{event_id}/verify")
async def verify_earning(
    event_id: UUID,
    admin: User = Depends(get_admin_user),
    services: ServiceContext = Depends(get_services),
):
    event = await services.accrual.verify_earning(event_id)
    return {"ok": True, "earning": event.to_dict()}


@router.post("/{event_id}/reject")
async def reject_earning(
    event_id: UUID,
    data: RejectRequest,
    admin: User = Depends(get_admin_user),
    services: ServiceContext = Depends(get_services),
):
    event = await services.accrual.reject_earning(event_id, data.reason)
    return {"ok": True, "earning": event.to_dict()}


@router.post("/verify-due")
async def verify_due(
    older_than_hours: Optional[int] = Query(None, ge=0),
    admin: User = Depends(get_admin_user),
    services: ServiceContext = Depends(get_services),
):
    hours = services.settings.REFERRAL_VERIFICATION_DELAY_HOURS if older_than_hours is None else older_than_hours
    verified = await services.accrual.release_due_verifications(timedelta(hours=hours))
    return {"ok": True, "verified": verified}


@router.get("/stats")
async def get_stats(
    days: int = Query(30, ge=1, le=365),
    admin: User = Depends(get_admin_user),
    services: ServiceContext = Depends(get_services),
):
    return {"ok": True, "stats": await services.accrual.earning_statistics(days=days)}


@router.get("/top")
async def get_top_earners(
    limit: int = Query(10, ge=1, le=100),
    days: int = Query(30, ge=1, le=365),
    admin: User = Depends(get_admin_user),
    services: ServiceContext = Depends(get_services),
):
    return {"ok": True, "data": await services.accrual.top_earners(limit=limit, days=days)}
