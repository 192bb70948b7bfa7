import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Union

from sqlalchemy import select, func, desc, exists, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from monetization.errors import (
    EligibilityError,
    GatewayTimeout,
    InsufficientBalance,
    InvalidTransition,
    ProviderNotSupported,
    ValidationError,
    WithdrawalNotFound,
)
from monetization.gateways.base import (
    TransferFailure,
    TransferNotFound,
    TransferOrder,
    TransferStatus,
    TransferSuccess,
    describe,
)
from monetization.gateways.registry import GatewayRegistry
from monetization.models.base import utcnow
from monetization.models.user import User
from monetization.models.withdrawal import (
    IN_FLIGHT_STATUSES,
    Withdrawal,
    WithdrawalChannel,
    WithdrawalStatus,
)
from monetization.models.withdrawal_event import WithdrawalEvent
from monetization.services import withdrawal_events
from monetization.services.crypto import DestinationCipher, mask_destination, normalize_destination
from monetization.services.eligibility import EligibilityGate
from monetization.services.ledger import BalanceLedger
from monetization.services.notifications import LogNotifier, NotificationType, WithdrawalNotification
from monetization.services.payout_methods import PayoutMethodBook
from monetization.services.policy import RatePolicy, from_cents
from monetization.services.withdrawals import GATEWAY_TIMEOUT_REASON, WithdrawalStateMachine

logger = logging.getLogger(__name__)

TIMEOUT_CODE = "TIMEOUT"


class PayoutRouter:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: BalanceLedger,
        policy: RatePolicy,
        gate: EligibilityGate,
        state_machine: WithdrawalStateMachine,
        gateways: GatewayRegistry,
        cipher: DestinationCipher,
        notifier: LogNotifier,
        clock: Callable[[], datetime] = utcnow,
        gateway_timeout: float = 5.0,
        currency: str = "USD",
        description: str = "Creator earnings withdrawal",
        reconcile_grace_seconds: int = 30,
        reconcile_max_age_minutes: int = 60,
        reconcile_batch_size: int = 100,
        max_auto_retries: int = 3,
        methods: Optional[PayoutMethodBook] = None,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.policy = policy
        self.gate = gate
        self.state_machine = state_machine
        self.gateways = gateways
        self.cipher = cipher
        self.notifier = notifier
        self.clock = clock
        self.gateway_timeout = gateway_timeout
        self.currency = currency
        self.description = description
        self.reconcile_grace = timedelta(seconds=reconcile_grace_seconds)
        self.reconcile_max_age = timedelta(minutes=reconcile_max_age_minutes)
        self.reconcile_batch_size = reconcile_batch_size
        self.max_auto_retries = max_auto_retries
        self.methods = methods

    # --- create & dispatch ---

    async def initiate_withdrawal(
        self,
        user_id: uuid.UUID,
        amount: int,
        country: Optional[str] = None,
        provider: Optional[str] = None,
        destination: Optional[str] = None,
        channel: Union[WithdrawalChannel, str] = WithdrawalChannel.STANDARD,
        payout_method_id: Optional[uuid.UUID] = None,
    ) -> Withdrawal:
        """Reserve ``amount`` and send it to the gateway.

        The wallet is either given in full (country, provider, destination),
        taken from a saved payout method, or, when nothing is given, the
        user's default saved method.
        """
        method = None
        if payout_method_id is not None:
            method = await self.methods.get_method(user_id, payout_method_id)
        elif destination is None and self.methods is not None:
            method = await self.methods.default_method(user_id)
            if method is None:
                raise ValidationError("No destination given and no saved payout method")

        if method is not None:
            country, provider = method.country, method.provider
            destination = self.cipher.decrypt(method.destination)
        elif not (country and provider and destination):
            raise ValidationError("Country, provider and destination are required")

        withdrawal = await self._create(user_id, amount, country, provider, destination, WithdrawalChannel(channel))
        if method is not None:
            await self.methods.mark_used(method.id)
        return await self.dispatch(withdrawal.id)

    async def _create(
        self,
        user_id: uuid.UUID,
        amount: int,
        country: str,
        provider: str,
        destination: str,
        channel: WithdrawalChannel,
        parent: Optional[Withdrawal] = None,
    ) -> Withdrawal:
        if not isinstance(amount, int) or amount <= 0:
            raise ValidationError("Amount must be greater than zero")
        if not self.policy.is_provider_supported(channel, country, provider):
            raise ProviderNotSupported(provider, country)
        destination = normalize_destination(destination)

        fee, net = self.policy.compute_fee(channel, provider, amount)
        if net <= 0:
            raise ValidationError("Amount does not cover the provider fee")

        now = self.clock()
        async with self.ledger.locks.hold(user_id):
            async with self.session_factory() as db:
                async with db.begin():
                    user = await db.get(User, user_id)
                    if user is None:
                        raise ValidationError("User not found")
                    if user.is_blocked:
                        raise EligibilityError(["Account is blocked"])

                    balance = await self.ledger.lock(db, user_id)
                    report = await self.gate.evaluate(db, user, balance, channel, amount, country, provider)
                    if not report.eligible:
                        raise EligibilityError(report.reasons)
                    if amount > balance.available:
                        raise InsufficientBalance(amount, balance.available)

                    withdrawal = Withdrawal(
                        id=uuid.uuid4(),
                        user_id=user_id,
                        channel=channel.value,
                        amount=amount,
                        fee=fee,
                        net_amount=net,
                        currency=self.currency,
                        country=country,
                        provider=provider,
                        destination=self.cipher.encrypt(destination),
                        destination_hint=mask_destination(destination),
                        status=WithdrawalStatus.PENDING.value,
                        retryable=False,
                        parent_withdrawal_id=parent.id if parent else None,
                        attempt=parent.attempt + 1 if parent else 1,
                        created_at=now,
                        updated_at=now,
                    )
                    db.add(withdrawal)
                    await db.flush()

                    self.ledger.reserve(balance, amount)
                    await withdrawal_events.log_created(db, withdrawal.id, channel.value, provider, amount, fee)
                    if parent:
                        await withdrawal_events.log_withdrawal_event(
                            db, withdrawal.id, withdrawal_events.EventType.RETRY_CREATED,
                            payload={"parent_withdrawal_id": str(parent.id), "attempt": withdrawal.attempt},
                        )

        logger.info(
            "[Payout] Created %s withdrawal %s: %s cents (fee %s) via %s/%s for %s",
            channel.value, withdrawal.id, amount, fee, provider, country, user_id,
        )
        self.notifier.send(self._notification(withdrawal, NotificationType.INITIATED))
        return withdrawal

    async def dispatch(self, withdrawal_id: uuid.UUID) -> Withdrawal:
        """Send a pending withdrawal to its gateway and apply the answer.

        Raises ``InvalidTransition`` if the request was already dispatched.
        """
        withdrawal = await self.state_machine.claim_dispatch(withdrawal_id)
        gateway = self.gateways.for_provider(withdrawal.provider)
        order = TransferOrder(
            reference=withdrawal.reference,
            provider=withdrawal.provider,
            country=withdrawal.country,
            destination=self.cipher.decrypt(withdrawal.destination),
            amount=withdrawal.net_amount,
            currency=withdrawal.currency,
            description=self.description,
        )

        result: Optional[TransferStatus]
        try:
            result = await asyncio.wait_for(gateway.send_transfer(order), timeout=self.gateway_timeout)
        except (asyncio.TimeoutError, GatewayTimeout) as e:
            logger.warning("[Payout] Gateway timeout for withdrawal %s: %s", withdrawal.id, str(e) or "no answer")
            result = None
        except Exception:
            logger.exception("[Payout] Gateway error for withdrawal %s, outcome unknown", withdrawal.id)
            result = None

        if result is None or not isinstance(result, (TransferSuccess, TransferFailure)):
            await self._log_timeout(withdrawal, result)
            result = await self._check_status(gateway, withdrawal)

        if isinstance(result, (TransferSuccess, TransferFailure)):
            return await self.state_machine.resolve(withdrawal.id, result, source="dispatch")

        if withdrawal.is_instant:
            # instant requests resolve in one step; the sweep re-checks late successes
            return await self.state_machine.fail(
                withdrawal.id, TIMEOUT_CODE, GATEWAY_TIMEOUT_REASON, source="dispatch"
            )

        logger.info("[Payout] Withdrawal %s left processing for reconciliation", withdrawal.id)
        return await self.get_withdrawal(withdrawal.id)

    async def _check_status(self, gateway, withdrawal: Withdrawal) -> Optional[TransferStatus]:
        try:
            return await asyncio.wait_for(
                gateway.get_transfer_status(withdrawal.reference), timeout=self.gateway_timeout
            )
        except (asyncio.TimeoutError, GatewayTimeout):
            logger.warning("[Payout] Status check for withdrawal %s timed out", withdrawal.id)
            return None
        except Exception:
            logger.exception("[Payout] Status check for withdrawal %s failed", withdrawal.id)
            return None

    async def _log_timeout(self, withdrawal: Withdrawal, result: Optional[TransferStatus]) -> None:
        async with self.session_factory() as db:
            await withdrawal_events.log_withdrawal_event(
                db, withdrawal.id, withdrawal_events.EventType.TIMEOUT,
                from_status=withdrawal.status, to_status=withdrawal.status,
                gateway_status=describe(result) if result is not None else "no_answer",
                error_message=GATEWAY_TIMEOUT_REASON,
                commit=True,
            )

    # --- retries ---

    async def retry_withdrawal(self, withdrawal_id: uuid.UUID, user_id: Optional[uuid.UUID] = None) -> Withdrawal:
        """Create and dispatch a new request for a retryable failure.

        The failed request itself is never touched.
        """
        async with self.session_factory() as db:
            original = await db.get(Withdrawal, withdrawal_id)
            if original is None or (user_id is not None and original.user_id != user_id):
                raise WithdrawalNotFound(f"Withdrawal {withdrawal_id} not found")
            if original.status != WithdrawalStatus.FAILED.value:
                raise ValidationError(f"Only failed withdrawals can be retried, this one is {original.status}")
            if not original.retryable:
                raise ValidationError(f"Withdrawal failed with {original.failure_code} and cannot be retried")

            result = await db.execute(
                select(Withdrawal.id).where(Withdrawal.parent_withdrawal_id == original.id).limit(1)
            )
            if result.first() is not None:
                raise ValidationError("Withdrawal was already retried")

        if original.failure_code == TIMEOUT_CODE and original.dispatched_at is not None:
            await self._ensure_not_paid(original)

        try:
            withdrawal = await self._create(
                original.user_id,
                original.amount,
                original.country,
                original.provider,
                self.cipher.decrypt(original.destination),
                WithdrawalChannel(original.channel),
                parent=original,
            )
        except IntegrityError:
            raise ValidationError("Withdrawal was already retried")
        logger.info("[Payout] Retrying withdrawal %s as %s (attempt %s)", original.id, withdrawal.id, withdrawal.attempt)
        return await self.dispatch(withdrawal.id)

    async def _ensure_not_paid(self, withdrawal: Withdrawal) -> None:
        # a timed-out transfer can still land, so only a definite "no" from the gateway allows a retry
        status = await self._check_status(self.gateways.for_provider(withdrawal.provider), withdrawal)
        if isinstance(status, TransferSuccess):
            await self.state_machine.resolve(withdrawal.id, status, source="retry")
            raise ValidationError("Withdrawal was paid out after all and cannot be retried")
        if not isinstance(status, (TransferFailure, TransferNotFound)):
            raise ValidationError("Outcome of the original transfer is still unknown, try again later")

    async def auto_retry_candidates(self, now: Optional[datetime] = None) -> List[uuid.UUID]:
        """Recent retryable instant failures that have no retry yet."""
        now = now or self.clock()
        child = aliased(Withdrawal)
        async with self.session_factory() as db:
            result = await db.execute(
                select(Withdrawal.id)
                .where(
                    Withdrawal.channel == WithdrawalChannel.INSTANT.value,
                    Withdrawal.status == WithdrawalStatus.FAILED.value,
                    Withdrawal.retryable.is_(True),
                    Withdrawal.attempt <= self.max_auto_retries,
                    Withdrawal.completed_at >= now - self.reconcile_max_age,
                    ~exists().where(child.parent_withdrawal_id == Withdrawal.id),
                )
                .order_by(Withdrawal.completed_at)
                .limit(self.reconcile_batch_size)
            )
            return list(result.scalars().all())

    # --- reconciliation ---

    async def reconcile(self, now: Optional[datetime] = None) -> dict:
        """Resolve requests stuck in flight and re-check recent timeout failures."""
        now = now or self.clock()
        summary = {"checked": 0, "completed": 0, "failed": 0, "waiting": 0, "discrepancies": 0, "errors": 0}

        async with self.session_factory() as db:
            result = await db.execute(
                select(Withdrawal.id)
                .where(
                    Withdrawal.status.in_(IN_FLIGHT_STATUSES),
                    Withdrawal.updated_at <= now - self.reconcile_grace - timedelta(seconds=self.gateway_timeout),
                )
                .order_by(Withdrawal.created_at)
                .limit(self.reconcile_batch_size)
            )
            stuck = list(result.scalars().all())

            result = await db.execute(
                select(Withdrawal.id)
                .where(
                    Withdrawal.channel == WithdrawalChannel.INSTANT.value,
                    Withdrawal.status == WithdrawalStatus.FAILED.value,
                    Withdrawal.failure_code == TIMEOUT_CODE,
                    Withdrawal.transaction_id.is_(None),
                    Withdrawal.completed_at >= now - self.reconcile_max_age,
                    ~exists().where(
                        and_(
                            WithdrawalEvent.withdrawal_id == Withdrawal.id,
                            WithdrawalEvent.event_type == withdrawal_events.EventType.DISCREPANCY,
                        )
                    ),
                )
                .limit(self.reconcile_batch_size)
            )
            timed_out = list(result.scalars().all())

        for withdrawal_id in stuck:
            summary["checked"] += 1
            try:
                outcome = await self._reconcile_in_flight(withdrawal_id, now)
            except InvalidTransition as e:
                logger.info("[Reconcile] Withdrawal %s moved on during the sweep: %s", withdrawal_id, e)
                continue
            except Exception:
                logger.exception("[Reconcile] Could not reconcile withdrawal %s", withdrawal_id)
                summary["errors"] += 1
                continue
            summary[outcome] += 1

        for withdrawal_id in timed_out:
            summary["checked"] += 1
            try:
                if await self._recheck_timed_out(withdrawal_id):
                    summary["discrepancies"] += 1
            except Exception:
                logger.exception("[Reconcile] Could not re-check withdrawal %s", withdrawal_id)
                summary["errors"] += 1

        if summary["checked"]:
            logger.info("[Reconcile] Sweep done: %s", summary)
        return summary

    async def _reconcile_in_flight(self, withdrawal_id: uuid.UUID, now: datetime) -> str:
        withdrawal = await self.get_withdrawal(withdrawal_id)
        expired = withdrawal.created_at <= now - self.reconcile_max_age

        if withdrawal.dispatched_at is None:
            # never left the building, safe to send or to drop
            if expired:
                await self.state_machine.fail(withdrawal.id, TIMEOUT_CODE, GATEWAY_TIMEOUT_REASON, source="reconcile")
                return "failed"
            withdrawal = await self.dispatch(withdrawal.id)
            return self._outcome(withdrawal)

        gateway = self.gateways.for_provider(withdrawal.provider)
        status = await self._check_status(gateway, withdrawal)
        logger.info("[Reconcile] Withdrawal %s is %s at the gateway", withdrawal.id, describe(status))

        if isinstance(status, (TransferSuccess, TransferFailure)):
            withdrawal = await self.state_machine.resolve(withdrawal.id, status, source="reconcile")
            return self._outcome(withdrawal)
        if isinstance(status, TransferNotFound):
            await self.state_machine.fail(withdrawal.id, TIMEOUT_CODE, GATEWAY_TIMEOUT_REASON, source="reconcile")
            return "failed"
        if expired:
            logger.warning("[Reconcile] Giving up on withdrawal %s after %s", withdrawal.id, self.reconcile_max_age)
            await self.state_machine.fail(withdrawal.id, TIMEOUT_CODE, GATEWAY_TIMEOUT_REASON, source="reconcile")
            return "failed"
        if status is not None:
            await self.state_machine.resolve(withdrawal.id, status, source="reconcile")
        return "waiting"

    async def _recheck_timed_out(self, withdrawal_id: uuid.UUID) -> bool:
        withdrawal = await self.get_withdrawal(withdrawal_id)
        status = await self._check_status(self.gateways.for_provider(withdrawal.provider), withdrawal)
        if isinstance(status, TransferSuccess):
            # debited and flagged, the failed request stays failed
            await self.state_machine.resolve(withdrawal.id, status, source="reconcile")
            return True
        return False

    @staticmethod
    def _outcome(withdrawal: Withdrawal) -> str:
        if withdrawal.status == WithdrawalStatus.COMPLETED.value:
            return "completed"
        if withdrawal.status == WithdrawalStatus.FAILED.value:
            return "failed"
        return "waiting"

    # --- reads ---

    async def get_withdrawal(self, withdrawal_id: uuid.UUID, user_id: Optional[uuid.UUID] = None) -> Withdrawal:
        async with self.session_factory() as db:
            withdrawal = await db.get(Withdrawal, withdrawal_id)
        if withdrawal is None or (user_id is not None and withdrawal.user_id != user_id):
            raise WithdrawalNotFound(f"Withdrawal {withdrawal_id} not found")
        return withdrawal

    async def get_history(
        self,
        user_id: uuid.UUID,
        limit: int = 20,
        offset: int = 0,
        status: Optional[WithdrawalStatus] = None,
    ) -> List[Withdrawal]:
        async with self.session_factory() as db:
            query = select(Withdrawal).where(Withdrawal.user_id == user_id)
            if status:
                query = query.where(Withdrawal.status == WithdrawalStatus(status).value)
            query = query.order_by(desc(Withdrawal.created_at)).offset(offset).limit(limit)
            result = await db.execute(query)
            return list(result.scalars().all())

    async def get_events(self, withdrawal_id: uuid.UUID) -> list:
        async with self.session_factory() as db:
            return await withdrawal_events.get_withdrawal_events(db, withdrawal_id)

    def list_providers(self, country: str, channel: Union[WithdrawalChannel, str] = WithdrawalChannel.STANDARD) -> List[dict]:
        channel = WithdrawalChannel(channel)
        return [
            {"name": provider, "fee_rate": float(self.policy.fee_rate(channel, provider))}
            for provider in self.policy.providers_for(channel, country)
        ]

    def supported_countries(self, channel: Union[WithdrawalChannel, str] = WithdrawalChannel.STANDARD) -> dict:
        return self.policy.supported_countries(WithdrawalChannel(channel))

    async def withdrawal_statistics(self, user_id: Optional[uuid.UUID] = None, days: Optional[int] = None) -> dict:
        async with self.session_factory() as db:
            query = select(
                Withdrawal.status,
                func.count(Withdrawal.id),
                func.coalesce(func.sum(Withdrawal.amount), 0),
                func.coalesce(func.sum(Withdrawal.fee), 0),
                func.coalesce(func.sum(Withdrawal.late_debit), 0),
            ).group_by(Withdrawal.status)
            if user_id:
                query = query.where(Withdrawal.user_id == user_id)
            if days:
                query = query.where(Withdrawal.created_at >= self.clock() - timedelta(days=days))
            rows = (await db.execute(query)).all()

        by_status = {
            status: {"count": count, "amount": float(from_cents(int(amount)))}
            for status, count, amount, _, _ in rows
        }
        completed = [row for row in rows if row[0] == WithdrawalStatus.COMPLETED.value]
        total_count = sum(row[1] for row in rows)
        completed_count = completed[0][1] if completed else 0
        return {
            "total_requests": total_count,
            "by_status": by_status,
            "total_withdrawn": float(from_cents(int(completed[0][2]))) if completed else 0.0,
            "total_fees": float(from_cents(int(completed[0][3]))) if completed else 0.0,
            "late_debited": float(from_cents(sum(int(row[4]) for row in rows))),
            "success_rate": round(completed_count / total_count, 4) if total_count else 0.0,
        }

    @staticmethod
    def _notification(withdrawal: Withdrawal, kind: str) -> WithdrawalNotification:
        return WithdrawalNotification(
            user_id=str(withdrawal.user_id),
            type=kind,
            amount=float(from_cents(withdrawal.amount)),
            provider=withdrawal.provider,
            withdrawal_id=str(withdrawal.id),
        )
