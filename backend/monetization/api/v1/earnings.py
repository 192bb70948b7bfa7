from decimal import Decimal
from typing import Literal, Optional
from uuid import UUID
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from monetization.api.deps import get_current_user, get_services
from monetization.models.earning import ActivityType
from monetization.models.user import User
from monetization.services.accrual import Rejected
from monetization.services.context import ServiceContext
from monetization.services.policy import from_cents, to_cents

router = APIRouter()

# recorded through their own endpoints
USER_ACTIVITIES = [a for a in ActivityType if a not in (ActivityType.GIFT, ActivityType.TIP, ActivityType.VIEW)]


class ActivityRequest(BaseModel):
    activity: ActivityType
    quantity: int = 1
    video_id: Optional[str] = None
    referred_user_id: Optional[UUID] = None
    reference: Optional[str] = None
    watch_seconds: Optional[int] = None
    comment_length: Optional[int] = None
    task_kind: Optional[str] = None


class GiftRequest(BaseModel):
    creator_id: UUID
    amount: Decimal  # USD paid by the sender
    kind: Literal["gift", "tip"] = "gift"
    reference: Optional[str] = None
    video_id: Optional[str] = None


def balance_payload(balance, ledger) -> dict:
    """Balance as shown to people; day and month totals reset at UTC boundaries."""
    return {
        "total_earned": float(from_cents(balance.total_earned)),
        "total_withdrawn": float(from_cents(balance.total_withdrawn)),
        "pending_balance": float(from_cents(balance.pending_balance)),
        "available": float(from_cents(balance.available)),
        "held": float(from_cents(balance.held)),
        "in_flight": float(from_cents(balance.reserved)),
        "daily_earned": float(from_cents(ledger.daily_earned(balance))),
        "monthly_earned": float(from_cents(ledger.monthly_earned(balance))),
    }


def accrual_payload(result) -> dict:
    if isinstance(result, Rejected):
        return {"ok": False, "rejected": result.to_dict()}
    return {"ok": True, "earning": result.to_dict()}


@router.get("/balance")
async def get_balance(
    current_user: User = Depends(get_current_user),
    services: ServiceContext = Depends(get_services),
):
    balance = await services.accrual.get_balance(current_user.id)
    return {"ok": True, "balance": balance_payload(balance, services.ledger)}


@router.get("/history")
async def get_history(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    activity: Optional[ActivityType] = None,
    current_user: User = Depends(get_current_user),
    services: ServiceContext = Depends(get_services),
):
    events = await services.accrual.get_history(current_user.id, limit=limit, offset=offset, activity=activity)
    return {
        "ok": True,
        "data": [event.to_dict() for event in events],
        "pagination": {"limit": limit, "offset": offset, "count": len(events)},
    }


@router.get("/stats")
async def get_my_stats(
    days: int = Query(30, ge=1, le=365),
    current_user: User = Depends(get_current_user),
    services: ServiceContext = Depends(get_services),
):
    stats = await services.accrual.earning_statistics(days=days, user_id=current_user.id)
    return {"ok": True, "stats": stats}


@router.get("/rates")
async def get_rates(services: ServiceContext = Depends(get_services)):
    policy = services.policy
    limits = policy.daily_limits
    return {
        "ok": True,
        "cpm_by_region": {region: float(cpm) for region, cpm in policy.cpm_by_region.items()},
        "activities": {activity.value: float(rate) for activity, rate in policy.earning_rates.items()},
        "tasks": {kind: float(rate) for kind, rate in policy.task_rates.items()},
        "gift_creator_share": float(policy.gift_creator_share),
        "daily_limits": {
            "max_daily_earnings": float(from_cents(limits.max_daily_earnings)),
            **{activity.value: count for activity, count in limits.per_activity.items()},
        },
    }


@router.get("/programs/{program}/eligibility")
async def get_program_eligibility(
    program: str,
    current_user: User = Depends(get_current_user),
    services: ServiceContext = Depends(get_services),
):
    report = await services.gate.check_program(current_user.id, program)
    return {"ok": True, **report.to_dict()}


@router.post("/activities")
async def record_activity(
    data: ActivityRequest,
    current_user: User = Depends(get_current_user),
    services: ServiceContext = Depends(get_services),
):
    if data.activity not in USER_ACTIVITIES:
        raise HTTPException(status_code=400, detail=f"{data.activity.value} cannot be recorded here")

    result = await services.accrual.record_activity(
        current_user.id,
        data.activity,
        quantity=data.quantity,
        video_id=data.video_id,
        referred_user_id=data.referred_user_id,
        reference=data.reference,
        watch_seconds=data.watch_seconds,
        comment_length=data.comment_length,
        task_kind=data.task_kind,
        region=current_user.region,
    )
    return accrual_payload(result)


@router.post("/gifts")
async def send_gift(
    data: GiftRequest,
    current_user: User = Depends(get_current_user),
    services: ServiceContext = Depends(get_services),
):
    result = await services.accrual.record_activity(
        data.creator_id,
        ActivityType(data.kind),
        sender_id=current_user.id,
        gross_amount=to_cents(data.amount),
        reference=data.reference,
        video_id=data.video_id,
    )
    return accrual_payload(result)
