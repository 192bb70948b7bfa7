from typing import Optional
from uuid import UUID
from fastapi import APIRouter, Depends, Query
from monetization.api.deps import get_admin_user, get_services
from monetization.models.user import User
from monetization.services.context import ServiceContext

router = APIRouter()


@router.post("/reconcile")
async def run_reconciliation(
    admin: User = Depends(get_admin_user),
    services: ServiceContext = Depends(get_services),
):
    summary = await services.payouts.reconcile()
    return {"ok": True, "summary": summary}


@router.get("/stats")
async def get_stats(
    days: Optional[int] = Query(None, ge=1, le=365),
    admin: User = Depends(get_admin_user),
    services: ServiceContext = Depends(get_services),
):
    return {"ok": True, "stats": await services.payouts.withdrawal_statistics(days=days)}


@router.get("/gateways")
async def list_gateways(
    admin: User = Depends(get_admin_user),
    services: ServiceContext = Depends(get_services),
):
    return {"ok": True, "gateways": services.gateways.list_gateways()}


@router.get("/{withdrawal_id}")
async def get_withdrawal(
    withdrawal_id: UUID,
    admin: User = Depends(get_admin_user),
    services: ServiceContext = Depends(get_services),
):
    withdrawal = await services.payouts.get_withdrawal(withdrawal_id)
    return {"ok": True, "withdrawal": {**withdrawal.to_dict(), "user_id": str(withdrawal.user_id)}}


@router.get("/{withdrawal_id}/events")
async def get_withdrawal_events(
    withdrawal_id: UUID,
    admin: User = Depends(get_admin_user),
    services: ServiceContext = Depends(get_services),
):
    await services.payouts.get_withdrawal(withdrawal_id)
    events = await services.payouts.get_events(withdrawal_id)
    return {"ok": True, "data": [event.to_dict() for event in events]}
