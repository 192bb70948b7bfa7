import uuid
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from monetization.models.base import utcnow
from monetization.models.withdrawal_event import WithdrawalEvent


class EventType:
    CREATED = "created"
    DISPATCHED = "dispatched"
    STATUS_CHANGE = "status_change"
    TIMEOUT = "timeout"
    STATUS_CHECK = "status_check"
    REPLAYED_CONFIRMATION = "replayed_confirmation"
    DISCREPANCY = "discrepancy"
    RETRY_CREATED = "retry_created"


async def log_withdrawal_event(
    db: AsyncSession,
    withdrawal_id: Union[str, uuid.UUID],
    event_type: str,
    from_status: Optional[str] = None,
    to_status: Optional[str] = None,
    gateway_status: Optional[str] = None,
    payload: Optional[dict] = None,
    error_message: Optional[str] = None,
    commit: bool = False,
) -> WithdrawalEvent:
    event = WithdrawalEvent(
        id=uuid.uuid4(),
        withdrawal_id=uuid.UUID(withdrawal_id) if isinstance(withdrawal_id, str) else withdrawal_id,
        event_type=event_type,
        from_status=from_status,
        to_status=to_status,
        gateway_status=gateway_status,
        payload=payload,
        error_message=error_message,
        created_at=utcnow(),
    )
    db.add(event)

    if commit:
        await db.commit()
    else:
        await db.flush()

    return event


async def get_withdrawal_events(
    db: AsyncSession,
    withdrawal_id: Union[str, uuid.UUID],
) -> list[WithdrawalEvent]:
    if isinstance(withdrawal_id, str):
        withdrawal_id = uuid.UUID(withdrawal_id)
    result = await db.execute(
        select(WithdrawalEvent)
        .where(WithdrawalEvent.withdrawal_id == withdrawal_id)
        .order_by(WithdrawalEvent.created_at.asc())
    )
    return list(result.scalars().all())


async def log_created(db: AsyncSession, withdrawal_id, channel: str, provider: str, amount: int, fee: int) -> WithdrawalEvent:
    return await log_withdrawal_event(
        db=db,
        withdrawal_id=withdrawal_id,
        event_type=EventType.CREATED,
        to_status="pending",
        payload={"channel": channel, "provider": provider, "amount": amount, "fee": fee},
    )


async def log_transition(
    db: AsyncSession,
    withdrawal_id,
    from_status: str,
    to_status: str,
    gateway_status: Optional[str] = None,
    payload: Optional[dict] = None,
    error_message: Optional[str] = None,
) -> WithdrawalEvent:
    return await log_withdrawal_event(
        db=db,
        withdrawal_id=withdrawal_id,
        event_type=EventType.STATUS_CHANGE,
        from_status=from_status,
        to_status=to_status,
        gateway_status=gateway_status,
        payload=payload,
        error_message=error_message,
    )


async def log_discrepancy(db: AsyncSession, withdrawal_id, status: str, gateway_status: str, message: str, payload: dict = None) -> WithdrawalEvent:
    return await log_withdrawal_event(
        db=db,
        withdrawal_id=withdrawal_id,
        event_type=EventType.DISCREPANCY,
        from_status=status,
        to_status=status,
        gateway_status=gateway_status,
        payload=payload,
        error_message=message,
    )
