"""Withdrawal lifecycle.

    standard:  pending -> processing -> completed | failed
    instant:   pending -> completed | failed

Terminal states are final. Every status change settles or releases the
reserved amount on the balance row in the same transaction and leaves a
``withdrawal_events`` row behind. Notifications go out after commit.
A success reported for a failed request is debited without reopening it.
"""
import logging
import uuid
from datetime import datetime
from typing import Callable, Dict, Optional, Set, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from monetization.errors import InvalidTransition, WithdrawalNotFound
from monetization.gateways.base import (
    TransferFailure,
    TransferStatus,
    TransferSuccess,
    describe,
)
from monetization.models.base import utcnow
from monetization.models.withdrawal import Withdrawal, WithdrawalChannel, WithdrawalStatus
from monetization.services import withdrawal_events
from monetization.services.ledger import BalanceLedger
from monetization.services.notifications import LogNotifier, NotificationType, WithdrawalNotification
from monetization.services.policy import RatePolicy, from_cents

logger = logging.getLogger(__name__)

S = WithdrawalStatus

TRANSITIONS: Dict[WithdrawalChannel, Dict[str, Set[str]]] = {
    WithdrawalChannel.STANDARD: {
        S.PENDING.value: {S.PROCESSING.value, S.FAILED.value},
        S.PROCESSING.value: {S.COMPLETED.value, S.FAILED.value},
    },
    WithdrawalChannel.INSTANT: {
        S.PENDING.value: {S.COMPLETED.value, S.FAILED.value},
    },
}

GATEWAY_TIMEOUT_REASON = "gateway timeout"


def can_transition(withdrawal: Withdrawal, target: Union[WithdrawalStatus, str]) -> bool:
    target = WithdrawalStatus(target).value
    allowed = TRANSITIONS[WithdrawalChannel(withdrawal.channel)].get(withdrawal.status, set())
    return target in allowed


class WithdrawalStateMachine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: BalanceLedger,
        policy: RatePolicy,
        notifier: LogNotifier,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.policy = policy
        self.notifier = notifier
        self.clock = clock

    @staticmethod
    async def lock(db: AsyncSession, withdrawal_id: uuid.UUID) -> Withdrawal:
        result = await db.execute(
            select(Withdrawal)
            .where(Withdrawal.id == withdrawal_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        withdrawal = result.scalar_one_or_none()
        if withdrawal is None:
            raise WithdrawalNotFound(f"Withdrawal {withdrawal_id} not found")
        return withdrawal

    async def transition(
        self,
        db: AsyncSession,
        withdrawal: Withdrawal,
        target: WithdrawalStatus,
        gateway_status: Optional[str] = None,
        payload: Optional[dict] = None,
        error_message: Optional[str] = None,
    ) -> None:
        """Move a locked withdrawal to ``target`` and record the change.

        Ledger effects are the caller's job; this only guards the edge.
        """
        if not can_transition(withdrawal, target):
            raise InvalidTransition(withdrawal.status, WithdrawalStatus(target).value, withdrawal.channel)

        previous = withdrawal.status
        withdrawal.status = WithdrawalStatus(target).value
        withdrawal.updated_at = self.clock()
        await withdrawal_events.log_transition(
            db, withdrawal.id, previous, withdrawal.status,
            gateway_status=gateway_status, payload=payload, error_message=error_message,
        )

    async def _owner(self, withdrawal_id: uuid.UUID) -> uuid.UUID:
        async with self.session_factory() as db:
            result = await db.execute(select(Withdrawal.user_id).where(Withdrawal.id == withdrawal_id))
            user_id = result.scalar_one_or_none()
        if user_id is None:
            raise WithdrawalNotFound(f"Withdrawal {withdrawal_id} not found")
        return user_id

    async def claim_dispatch(self, withdrawal_id: uuid.UUID) -> Withdrawal:
        """Mark a pending withdrawal as handed to the gateway.

        Standard requests move to processing. Instant requests stay pending
        and get ``dispatched_at``. Anything already dispatched is refused, so
        a request is never sent twice.
        """
        user_id = await self._owner(withdrawal_id)
        async with self.ledger.locks.hold(user_id):
            async with self.session_factory() as db:
                async with db.begin():
                    withdrawal = await self.lock(db, withdrawal_id)
                    if withdrawal.status != S.PENDING.value or withdrawal.dispatched_at is not None:
                        raise InvalidTransition(withdrawal.status, "dispatched", withdrawal.channel)

                    withdrawal.dispatched_at = self.clock()
                    if withdrawal.is_instant:
                        withdrawal.updated_at = withdrawal.dispatched_at
                        await withdrawal_events.log_withdrawal_event(
                            db, withdrawal.id, withdrawal_events.EventType.DISPATCHED,
                            from_status=withdrawal.status, to_status=withdrawal.status,
                        )
                    else:
                        await self.transition(db, withdrawal, S.PROCESSING)
        return withdrawal

    async def resolve(self, withdrawal_id: uuid.UUID, result: TransferStatus, source: str = "gateway") -> Withdrawal:
        """Apply a gateway answer to a withdrawal.

        Safe to call any number of times with the same answer.
        """
        user_id = await self._owner(withdrawal_id)
        notification = None
        async with self.ledger.locks.hold(user_id):
            async with self.session_factory() as db:
                async with db.begin():
                    withdrawal = await self.lock(db, withdrawal_id)
                    if isinstance(result, TransferSuccess):
                        notification = await self._apply_success(db, withdrawal, result, source)
                    elif isinstance(result, TransferFailure):
                        notification = await self._apply_failure(db, withdrawal, result, source)
                    else:
                        await withdrawal_events.log_withdrawal_event(
                            db, withdrawal.id, withdrawal_events.EventType.STATUS_CHECK,
                            from_status=withdrawal.status, to_status=withdrawal.status,
                            gateway_status=describe(result), payload={"source": source},
                        )

        if notification:
            self.notifier.send(notification)
        return withdrawal

    async def complete(self, withdrawal_id: uuid.UUID, transaction_id: str, source: str = "gateway") -> Withdrawal:
        return await self.resolve(withdrawal_id, TransferSuccess(transaction_id=transaction_id), source)

    async def fail(self, withdrawal_id: uuid.UUID, code: str, message: str, source: str = "gateway") -> Withdrawal:
        return await self.resolve(withdrawal_id, TransferFailure(code=code, message=message), source)

    async def confirm_transfer(self, reference: str, transaction_id: str) -> Withdrawal:
        """Success confirmation pushed by the gateway; ``reference`` is the withdrawal id."""
        try:
            withdrawal_id = uuid.UUID(reference)
        except ValueError:
            raise WithdrawalNotFound(f"Unknown transfer reference {reference}")
        return await self.complete(withdrawal_id, transaction_id, source="callback")

    async def _apply_success(self, db, withdrawal: Withdrawal, result: TransferSuccess, source: str):
        if withdrawal.status == S.COMPLETED.value or (
            withdrawal.status == S.FAILED.value and withdrawal.transaction_id is not None
        ):
            logger.info(
                "[Payout] Replayed success for %s withdrawal %s (%s), ignoring",
                withdrawal.status, withdrawal.id, source,
            )
            await withdrawal_events.log_withdrawal_event(
                db, withdrawal.id, withdrawal_events.EventType.REPLAYED_CONFIRMATION,
                from_status=withdrawal.status, to_status=withdrawal.status,
                gateway_status="success",
                payload={"source": source, "transaction_id": result.transaction_id},
            )
            return None

        if withdrawal.status == S.FAILED.value:
            return await self._apply_late_success(db, withdrawal, result, source)

        if withdrawal.status == S.PENDING.value and not withdrawal.is_instant:
            # confirmation raced ahead of the processing mark
            await self.transition(db, withdrawal, S.PROCESSING)

        balance = await self.ledger.lock(db, withdrawal.user_id)
        self.ledger.settle(balance, withdrawal.amount)

        withdrawal.transaction_id = result.transaction_id
        withdrawal.completed_at = self.clock()
        await self.transition(
            db, withdrawal, S.COMPLETED,
            gateway_status="success",
            payload={"source": source, "transaction_id": result.transaction_id, "raw": result.raw_response},
        )
        logger.info(
            "[Payout] Withdrawal %s completed: %s cents to %s via %s (tx %s)",
            withdrawal.id, withdrawal.net_amount, withdrawal.destination_hint,
            withdrawal.provider, result.transaction_id,
        )
        return self._notification(withdrawal, NotificationType.SUCCESS)

    async def _apply_late_success(self, db, withdrawal: Withdrawal, result: TransferSuccess, source: str):
        """The money left after the request failed and its reserve was released.

        The request stays failed, but the payout is debited from what the user
        still has and the request can no longer be retried.
        """
        logger.critical(
            "[Reconcile] Gateway reports success for FAILED withdrawal %s (user %s, amount %s, tx %s, source %s)",
            withdrawal.id, withdrawal.user_id, withdrawal.amount, result.transaction_id, source,
        )
        balance = await self.ledger.lock(db, withdrawal.user_id)
        debited = self.ledger.settle_late(balance, withdrawal.amount)
        shortfall = withdrawal.amount - debited
        if shortfall:
            logger.critical(
                "[Ledger] Overdraft for user %s: late payout of withdrawal %s is %s cents short",
                withdrawal.user_id, withdrawal.id, shortfall,
            )

        withdrawal.transaction_id = result.transaction_id
        withdrawal.late_debit = debited
        withdrawal.retryable = False
        withdrawal.updated_at = self.clock()
        await withdrawal_events.log_discrepancy(
            db, withdrawal.id, withdrawal.status, "success",
            "Transfer succeeded after the withdrawal was marked failed",
            payload={
                "source": source,
                "transaction_id": result.transaction_id,
                "debited": debited,
                "shortfall": shortfall,
                "raw": result.raw_response,
            },
        )
        return None

    async def _apply_failure(self, db, withdrawal: Withdrawal, result: TransferFailure, source: str):
        if withdrawal.is_terminal:
            if withdrawal.status == S.COMPLETED.value:
                logger.error(
                    "[Reconcile] Gateway reports failure %s for COMPLETED withdrawal %s (source %s)",
                    result.code, withdrawal.id, source,
                )
                await withdrawal_events.log_discrepancy(
                    db, withdrawal.id, withdrawal.status, "failed",
                    f"{result.code}: {result.message}", payload={"source": source},
                )
            return None

        balance = await self.ledger.lock(db, withdrawal.user_id)
        self.ledger.release(balance, withdrawal.amount)

        withdrawal.failure_code = result.code
        withdrawal.failure_reason = result.message
        withdrawal.retryable = self.policy.is_retryable(result.code)
        withdrawal.completed_at = self.clock()
        await self.transition(
            db, withdrawal, S.FAILED,
            gateway_status="failed",
            payload={"source": source, "code": result.code, "raw": result.raw_response},
            error_message=result.message,
        )
        logger.warning(
            "[Payout] Withdrawal %s failed: %s %s (retryable=%s)",
            withdrawal.id, result.code, result.message, withdrawal.retryable,
        )
        return self._notification(withdrawal, NotificationType.FAILED, result.message)

    @staticmethod
    def _notification(withdrawal: Withdrawal, kind: str, reason: Optional[str] = None) -> WithdrawalNotification:
        return WithdrawalNotification(
            user_id=str(withdrawal.user_id),
            type=kind,
            amount=float(from_cents(withdrawal.amount)),
            provider=withdrawal.provider,
            withdrawal_id=str(withdrawal.id),
            reason=reason,
        )


__all__ = [
    "TRANSITIONS",
    "GATEWAY_TIMEOUT_REASON",
    "can_transition",
    "WithdrawalStateMachine",
]
