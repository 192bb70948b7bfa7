from uuid import UUID
from fastapi import APIRouter, Depends
from monetization.api.deps import get_admin_user, get_services
from monetization.api.v1.earnings import balance_payload
from monetization.models.user import User
from monetization.services.context import ServiceContext

router = APIRouter()


@router.get("/{user_id}/balance")
async def get_user_balance(
    user_id: UUID,
    admin: User = Depends(get_admin_user),
    services: ServiceContext = Depends(get_services),
):
    balance = await services.accrual.get_balance(user_id)
    return {"ok": True, "balance": balance_payload(balance, services.ledger)}


@router.get("/{user_id}/audit")
async def audit_user_ledger(
    user_id: UUID,
    admin: User = Depends(get_admin_user),
    services: ServiceContext = Depends(get_services),
):
    async with services.session_factory() as db:
        report = await services.ledger.audit(db, user_id)
    return {"ok": True, **report}
