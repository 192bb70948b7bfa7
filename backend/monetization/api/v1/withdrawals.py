import hashlib
import hmac
import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, ValidationError as PayloadError

from monetization.api.deps import get_current_user, get_services
from monetization.models.user import User
from monetization.models.withdrawal import WithdrawalChannel, WithdrawalStatus
from monetization.services.context import ServiceContext
from monetization.services.policy import to_cents

logger = logging.getLogger(__name__)

router = APIRouter()


class WithdrawalRequest(BaseModel):
    amount: Decimal  # USD
    country: Optional[str] = None
    provider: Optional[str] = None
    destination: Optional[str] = None
    payout_method_id: Optional[UUID] = None  # saved wallet; the default one when nothing is given


class PayoutMethodRequest(BaseModel):
    country: str
    provider: str
    destination: str
    label: Optional[str] = None
    is_default: bool = False


class EligibilityRequest(BaseModel):
    amount: Decimal
    country: str
    provider: str
    channel: WithdrawalChannel = WithdrawalChannel.STANDARD


class GatewayCallback(BaseModel):
    reference: str
    status: str
    transaction_id: Optional[str] = None
    error_code: Optional[str] = None
    message: Optional[str] = None


def verify_signature(body: bytes, secret: str, received: str) -> bool:
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, received.lower())


@router.get("/countries")
async def get_countries(
    channel: WithdrawalChannel = WithdrawalChannel.STANDARD,
    services: ServiceContext = Depends(get_services),
):
    return {"ok": True, "channel": channel.value, "countries": services.payouts.supported_countries(channel)}


@router.get("/providers")
async def get_providers(
    country: str,
    channel: WithdrawalChannel = WithdrawalChannel.STANDARD,
    services: ServiceContext = Depends(get_services),
):
    providers = services.payouts.list_providers(country, channel)
    if not providers:
        raise HTTPException(status_code=404, detail=f"No payout providers in {country}")
    return {"ok": True, "country": country, "channel": channel.value, "providers": providers}


@router.post("/eligibility")
async def check_eligibility(
    data: EligibilityRequest,
    current_user: User = Depends(get_current_user),
    services: ServiceContext = Depends(get_services),
):
    report = await services.gate.check_eligibility(
        current_user.id, data.channel, to_cents(data.amount), data.country, data.provider
    )
    return {"ok": True, **report.to_dict()}


@router.post("")
async def create_withdrawal(
    data: WithdrawalRequest,
    current_user: User = Depends(get_current_user),
    services: ServiceContext = Depends(get_services),
):
    withdrawal = await services.payouts.initiate_withdrawal(
        current_user.id,
        to_cents(data.amount),
        data.country,
        data.provider,
        data.destination,
        WithdrawalChannel.STANDARD,
        payout_method_id=data.payout_method_id,
    )
    return {"ok": True, "withdrawal": withdrawal.to_dict()}


@router.post("/instant")
async def create_instant_withdrawal(
    data: WithdrawalRequest,
    current_user: User = Depends(get_current_user),
    services: ServiceContext = Depends(get_services),
):
    withdrawal = await services.payouts.initiate_withdrawal(
        current_user.id,
        to_cents(data.amount),
        data.country,
        data.provider,
        data.destination,
        WithdrawalChannel.INSTANT,
        payout_method_id=data.payout_method_id,
    )
    return {"ok": withdrawal.status == WithdrawalStatus.COMPLETED.value, "withdrawal": withdrawal.to_dict()}


@router.get("/history")
async def get_history(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    status: Optional[WithdrawalStatus] = None,
    current_user: User = Depends(get_current_user),
    services: ServiceContext = Depends(get_services),
):
    withdrawals = await services.payouts.get_history(current_user.id, limit=limit, offset=offset, status=status)
    return {
        "ok": True,
        "data": [w.to_dict() for w in withdrawals],
        "pagination": {"limit": limit, "offset": offset, "count": len(withdrawals)},
    }


@router.get("/stats")
async def get_stats(
    current_user: User = Depends(get_current_user),
    services: ServiceContext = Depends(get_services),
):
    stats = await services.payouts.withdrawal_statistics(user_id=current_user.id)
    return {"ok": True, "stats": stats}


@router.get("/methods")
async def list_payout_methods(
    current_user: User = Depends(get_current_user),
    services: ServiceContext = Depends(get_services),
):
    methods = await services.payout_methods.list_methods(current_user.id)
    return {"ok": True, "data": [m.to_dict() for m in methods]}


@router.post("/methods")
async def add_payout_method(
    data: PayoutMethodRequest,
    current_user: User = Depends(get_current_user),
    services: ServiceContext = Depends(get_services),
):
    method = await services.payout_methods.add_method(
        current_user.id, data.country, data.provider, data.destination,
        label=data.label, make_default=data.is_default,
    )
    return {"ok": True, "method": method.to_dict()}


@router.post("/methods/{method_id}/default")
async def set_default_payout_method(
    method_id: UUID,
    current_user: User = Depends(get_current_user),
    services: ServiceContext = Depends(get_services),
):
    method = await services.payout_methods.set_default(current_user.id, method_id)
    return {"ok": True, "method": method.to_dict()}


@router.delete("/methods/{method_id}")
async def remove_payout_method(
    method_id: UUID,
    current_user: User = Depends(get_current_user),
    services: ServiceContext = Depends(get_services),
):
    await services.payout_methods.remove_method(current_user.id, method_id)
    return {"ok": True}


@router.post("/gateway/callback")
async def gateway_callback(
    request: Request,
    services: ServiceContext = Depends(get_services),
):
    secret = services.settings.GATEWAY_WEBHOOK_SECRET
    if not secret:
        raise HTTPException(status_code=503, detail="Gateway callbacks are not configured")

    body = await request.body()
    signature = request.headers.get("X-Signature", "")
    if not verify_signature(body, secret, signature):
        logger.warning("[Callback] Rejected gateway callback with a bad signature")
        raise HTTPException(status_code=403, detail="Invalid signature")

    try:
        data = GatewayCallback.model_validate_json(body)
    except PayloadError:
        raise HTTPException(status_code=400, detail="Malformed callback")

    status = data.status.lower()
    if status in ("success", "completed"):
        if not data.transaction_id:
            raise HTTPException(status_code=400, detail="transaction_id is required")
        withdrawal = await services.state_machine.confirm_transfer(data.reference, data.transaction_id)
    elif status in ("failed", "rejected"):
        try:
            withdrawal_id = UUID(data.reference)
        except ValueError:
            raise HTTPException(status_code=404, detail="Unknown reference")
        withdrawal = await services.state_machine.fail(
            withdrawal_id,
            data.error_code or "TRANSFER_FAILED",
            data.message or "Transfer failed",
            source="callback",
        )
    else:
        logger.info("[Callback] Ignoring %s status for %s", status, data.reference)
        return {"ok": True, "status": "ignored"}

    return {"ok": True, "status": withdrawal.status}


@router.get("/{withdrawal_id}")
async def get_withdrawal(
    withdrawal_id: UUID,
    current_user: User = Depends(get_current_user),
    services: ServiceContext = Depends(get_services),
):
    withdrawal = await services.payouts.get_withdrawal(withdrawal_id, user_id=current_user.id)
    return {"ok": True, "withdrawal": withdrawal.to_dict()}


@router.post("/{withdrawal_id}/retry")
async def retry_withdrawal(
    withdrawal_id: UUID,
    current_user: User = Depends(get_current_user),
    services: ServiceContext = Depends(get_services),
):
    withdrawal = await services.payouts.retry_withdrawal(withdrawal_id, user_id=current_user.id)
    return {"ok": True, "withdrawal": withdrawal.to_dict()}
