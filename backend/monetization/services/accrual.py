import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Union

from sqlalchemy import select, func, desc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from monetization.errors import EarningNotFound, InvalidTransition, ValidationError
from monetization.models.base import utcnow
from monetization.models.earning import ActivityType, EarningEvent, EarningStatus
from monetization.models.user import User
from monetization.models.balance import UserBalance
from monetization.services.ledger import BalanceLedger
from monetization.services.policy import (
    MIN_COMMENT_LENGTH,
    MIN_LIVE_WATCH_MINUTES,
    MIN_WATCH_SECONDS,
    RatePolicy,
    from_cents,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Rejected:
    """Why an activity earned nothing. Returned, never raised."""

    code: str
    message: str

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


def start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


class AccrualEngine:
    """Turns qualifying activity into earning events and balance credits."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: BalanceLedger,
        policy: RatePolicy,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.policy = policy
        self.clock = clock

    async def record_activity(
        self,
        user_id: uuid.UUID,
        activity: Union[ActivityType, str],
        *,
        quantity: int = 1,
        video_id: Optional[str] = None,
        referred_user_id: Optional[uuid.UUID] = None,
        sender_id: Optional[uuid.UUID] = None,
        reference: Optional[str] = None,
        watch_seconds: Optional[int] = None,
        comment_length: Optional[int] = None,
        gross_amount: Optional[int] = None,
        task_kind: Optional[str] = None,
        region: Optional[str] = None,
    ) -> Union[EarningEvent, Rejected]:
        activity = ActivityType(activity)
        if activity == ActivityType.VIEW:
            event = await self.record_views(user_id, quantity, region=region, video_id=video_id)
            return event or Rejected("BELOW_MINIMUM_UNIT", "View revenue carried to the next batch")

        rejected = self._check_guards(
            user_id, activity, quantity, referred_user_id, sender_id,
            reference, watch_seconds, comment_length, gross_amount, task_kind,
        )
        if rejected:
            return rejected

        amount = self._amount_for(activity, quantity, gross_amount, task_kind)
        if amount <= 0:
            return Rejected("ZERO_AMOUNT", "Activity earns nothing")

        now = self.clock()
        dedupe_key = self._dedupe_key(user_id, activity, referred_user_id, reference, now)

        async with self.ledger.locks.hold(user_id):
            async with self.session_factory() as db:
                try:
                    async with db.begin():
                        user = await db.get(User, user_id)
                        if user is None:
                            return Rejected("USER_NOT_FOUND", "User not found")
                        if user.is_blocked:
                            return Rejected("USER_BLOCKED", "Account is blocked")

                        if dedupe_key and await self._exists(db, dedupe_key):
                            return self._duplicate(activity)

                        balance = await self.ledger.lock(db, user_id)

                        rejected = await self._check_limits(db, balance, user_id, activity, quantity, amount, now)
                        if rejected:
                            return rejected

                        held = self.policy.is_held(activity)
                        event = EarningEvent(
                            user_id=user_id,
                            activity=activity.value,
                            amount=amount,
                            quantity=quantity,
                            video_id=video_id,
                            referred_user_id=referred_user_id,
                            reference=reference or (str(sender_id) if sender_id else None),
                            region=region or user.region,
                            description=self._describe(activity, quantity, watch_seconds, task_kind),
                            dedupe_key=dedupe_key,
                            status=EarningStatus.PENDING.value if held else EarningStatus.COMPLETED.value,
                            created_at=now,
                        )
                        db.add(event)
                        self.ledger.credit(balance, amount, held=held, capped=self.policy.is_capped(activity))
                        await db.flush()
                except IntegrityError:
                    # lost the dedupe race against another process
                    logger.info("[Accrual] Duplicate %s for %s rejected by constraint", activity.value, user_id)
                    return self._duplicate(activity)

        logger.info(
            "[Accrual] %s +%s cents for %s%s",
            activity.value, amount, user_id, " (held)" if event.is_held else "",
        )
        return event

    async def record_views(
        self,
        creator_id: uuid.UUID,
        views: int,
        region: Optional[str] = None,
        video_id: Optional[str] = None,
    ) -> Optional[EarningEvent]:
        """Accrue CPM revenue for a batch of views.

        Returns None when the batch is worth less than a cent; the sub-cent
        part is kept on the balance row and paid out with a later batch.
        """
        if views <= 0:
            raise ValidationError("Views must be positive")

        now = self.clock()
        async with self.ledger.locks.hold(creator_id):
            async with self.session_factory() as db:
                async with db.begin():
                    user = await db.get(User, creator_id)
                    if user is None:
                        raise ValidationError("Creator not found")
                    region = region or user.region

                    balance = await self.ledger.lock(db, creator_id)
                    cents, remainder = self.policy.view_revenue(views, region, balance.view_remainder_millicents)
                    balance.view_remainder_millicents = remainder
                    if cents == 0:
                        return None

                    event = EarningEvent(
                        user_id=creator_id,
                        activity=ActivityType.VIEW.value,
                        amount=cents,
                        quantity=views,
                        video_id=video_id,
                        region=region,
                        description=f"{views} views at ${self.policy.cpm_for_region(region)} CPM",
                        status=EarningStatus.COMPLETED.value,
                        created_at=now,
                    )
                    db.add(event)
                    self.ledger.credit(balance, cents)
                    await db.flush()

        logger.info("[Accrual] %s views +%s cents for creator %s", views, cents, creator_id)
        return event

    # --- held earnings ---

    async def verify_earning(self, event_id: uuid.UUID) -> EarningEvent:
        return await self._resolve_held(event_id, EarningStatus.VERIFIED)

    async def reject_earning(self, event_id: uuid.UUID, reason: str) -> EarningEvent:
        return await self._resolve_held(event_id, EarningStatus.REJECTED, reason)

    async def _resolve_held(
        self, event_id: uuid.UUID, target: EarningStatus, reason: Optional[str] = None
    ) -> EarningEvent:
        async with self.session_factory() as db:
            event = await db.get(EarningEvent, event_id)
            if event is None:
                raise EarningNotFound(f"Earning {event_id} not found")
            user_id = event.user_id

        async with self.ledger.locks.hold(user_id):
            async with self.session_factory() as db:
                async with db.begin():
                    result = await db.execute(
                        select(EarningEvent)
                        .where(EarningEvent.id == event_id)
                        .with_for_update()
                        .execution_options(populate_existing=True)
                    )
                    event = result.scalar_one()
                    if event.status != EarningStatus.PENDING.value:
                        raise InvalidTransition(event.status, target.value)

                    balance = await self.ledger.lock(db, user_id)
                    if target == EarningStatus.VERIFIED:
                        self.ledger.release_hold(balance, event.amount)
                    else:
                        self.ledger.reverse_held(balance, event.amount)
                        event.rejection_reason = reason

                    event.status = target.value
                    event.verified_at = self.clock()

        if target == EarningStatus.REJECTED:
            logger.warning("[Accrual] Rejected %s earning %s for %s: %s", event.activity, event_id, user_id, reason)
        else:
            logger.info("[Accrual] Verified %s earning %s for %s", event.activity, event_id, user_id)
        return event

    async def release_due_verifications(self, older_than: timedelta, limit: int = 100) -> int:
        """Verify held earnings that outlived the review window."""
        cutoff = self.clock() - older_than
        async with self.session_factory() as db:
            result = await db.execute(
                select(EarningEvent.id)
                .where(
                    EarningEvent.status == EarningStatus.PENDING.value,
                    EarningEvent.created_at <= cutoff,
                )
                .order_by(EarningEvent.created_at)
                .limit(limit)
            )
            due = list(result.scalars().all())

        verified = 0
        for event_id in due:
            try:
                await self.verify_earning(event_id)
                verified += 1
            except InvalidTransition:
                logger.info("[Accrual] Earning %s resolved before auto-verification", event_id)
        return verified

    # --- reads ---

    async def get_balance(self, user_id: uuid.UUID) -> UserBalance:
        async with self.session_factory() as db:
            return await self.ledger.get(db, user_id)

    async def get_history(
        self,
        user_id: uuid.UUID,
        limit: int = 50,
        offset: int = 0,
        activity: Optional[ActivityType] = None,
    ) -> List[EarningEvent]:
        async with self.session_factory() as db:
            query = select(EarningEvent).where(EarningEvent.user_id == user_id)
            if activity:
                query = query.where(EarningEvent.activity == ActivityType(activity).value)
            query = query.order_by(desc(EarningEvent.created_at)).offset(offset).limit(limit)
            result = await db.execute(query)
            return list(result.scalars().all())

    async def earning_statistics(self, days: int = 30, user_id: Optional[uuid.UUID] = None) -> dict:
        since = self.clock() - timedelta(days=days)
        async with self.session_factory() as db:
            query = (
                select(
                    EarningEvent.activity,
                    EarningEvent.status,
                    func.count(EarningEvent.id),
                    func.coalesce(func.sum(EarningEvent.amount), 0),
                )
                .where(EarningEvent.created_at >= since)
                .group_by(EarningEvent.activity, EarningEvent.status)
            )
            if user_id:
                query = query.where(EarningEvent.user_id == user_id)
            rows = (await db.execute(query)).all()

        counts, amounts = {}, {}
        total = held = rejected = 0
        for activity, status, count, amount in rows:
            amount = int(amount)
            counts[activity] = counts.get(activity, 0) + count
            amounts.setdefault(activity, 0)
            if status == EarningStatus.REJECTED.value:
                rejected += amount
                continue
            amounts[activity] += amount
            total += amount
            if status == EarningStatus.PENDING.value:
                held += amount

        return {
            "days": days,
            "total_earned": float(from_cents(total)),
            "held": float(from_cents(held)),
            "rejected": float(from_cents(rejected)),
            "by_activity": {
                activity: {"count": counts[activity], "amount": float(from_cents(amounts[activity]))}
                for activity in counts
            },
        }

    async def top_earners(self, limit: int = 10, days: int = 30) -> List[dict]:
        since = self.clock() - timedelta(days=days)
        async with self.session_factory() as db:
            total = func.sum(EarningEvent.amount).label("total")
            result = await db.execute(
                select(EarningEvent.user_id, total)
                .where(
                    EarningEvent.created_at >= since,
                    EarningEvent.status != EarningStatus.REJECTED.value,
                )
                .group_by(EarningEvent.user_id)
                .order_by(desc(total))
                .limit(limit)
            )
            return [
                {"user_id": str(user_id), "total_earned": float(from_cents(int(amount)))}
                for user_id, amount in result.all()
            ]

    # --- helpers ---

    def _check_guards(
        self, user_id, activity, quantity, referred_user_id, sender_id,
        reference, watch_seconds, comment_length, gross_amount, task_kind,
    ) -> Optional[Rejected]:
        if quantity < 1:
            return Rejected("INVALID_QUANTITY", "Quantity must be at least 1")

        if activity == ActivityType.WATCH and (watch_seconds or 0) < MIN_WATCH_SECONDS:
            return Rejected("WATCH_TOO_SHORT", f"Watch at least {MIN_WATCH_SECONDS}s to earn")
        if activity == ActivityType.COMMENT and (comment_length or 0) < MIN_COMMENT_LENGTH:
            return Rejected("COMMENT_TOO_SHORT", f"Comments need at least {MIN_COMMENT_LENGTH} characters")
        if activity == ActivityType.LIVE_WATCH and quantity < MIN_LIVE_WATCH_MINUTES:
            return Rejected("LIVE_WATCH_TOO_SHORT", f"Watch at least {MIN_LIVE_WATCH_MINUTES} minute to earn")

        if activity == ActivityType.INVITE:
            if referred_user_id is None:
                return Rejected("MISSING_REFERENCE", "Referred user is required")
            if referred_user_id == user_id:
                return Rejected("SELF_REFERRAL", "Cannot refer yourself")
        if activity in (ActivityType.POLL_VOTE, ActivityType.CHALLENGE) and not reference:
            return Rejected("MISSING_REFERENCE", f"{activity.value} requires a reference")
        if activity == ActivityType.TASK and self.policy.task_rate(task_kind or "") is None:
            return Rejected("UNKNOWN_TASK", f"Unknown task: {task_kind}")

        if activity in (ActivityType.GIFT, ActivityType.TIP):
            if sender_id is not None and sender_id == user_id:
                return Rejected("SELF_GIFT", "Cannot send a gift to yourself")
            if not gross_amount or gross_amount <= 0:
                return Rejected("ZERO_AMOUNT", "Gift amount must be positive")
        return None

    def _amount_for(self, activity, quantity, gross_amount, task_kind) -> int:
        if activity in (ActivityType.GIFT, ActivityType.TIP):
            return self.policy.creator_share(gross_amount)
        if activity == ActivityType.TASK:
            return self.policy.task_rate(task_kind) * quantity
        return self.policy.rate_for(activity) * quantity

    @staticmethod
    def _dedupe_key(user_id, activity, referred_user_id, reference, now) -> Optional[str]:
        if activity == ActivityType.INVITE:
            return f"invite:{referred_user_id}"
        if activity == ActivityType.POLL_VOTE:
            return f"poll:{user_id}:{reference}"
        if activity == ActivityType.CHALLENGE:
            return f"challenge:{user_id}:{reference}:{now.date().isoformat()}"
        if activity == ActivityType.TASK and reference:
            return f"task:{user_id}:{reference}"
        if activity in (ActivityType.GIFT, ActivityType.TIP) and reference:
            return f"{activity.value}:{reference}"
        return None

    @staticmethod
    async def _exists(db: AsyncSession, dedupe_key: str) -> bool:
        result = await db.execute(select(EarningEvent.id).where(EarningEvent.dedupe_key == dedupe_key))
        return result.first() is not None

    @staticmethod
    def _duplicate(activity: ActivityType) -> Rejected:
        messages = {
            ActivityType.INVITE: "User was already referred",
            ActivityType.POLL_VOTE: "Already voted in this poll",
            ActivityType.CHALLENGE: "Already joined this challenge today",
            ActivityType.TASK: "Task already rewarded",
        }
        return Rejected("DUPLICATE", messages.get(activity, "Already recorded"))

    async def _check_limits(self, db, balance, user_id, activity, quantity, amount, now) -> Optional[Rejected]:
        limit = self.policy.daily_count_limit(activity)
        if limit is not None:
            result = await db.execute(
                select(func.coalesce(func.sum(EarningEvent.quantity), 0)).where(
                    EarningEvent.user_id == user_id,
                    EarningEvent.activity == activity.value,
                    EarningEvent.created_at >= start_of_day(now),
                )
            )
            done = int(result.scalar_one())
            if done + quantity > limit:
                return Rejected("DAILY_COUNT_LIMIT", f"Daily {activity.value} limit reached: {done}/{limit}")

        if self.policy.is_capped(activity):
            cap = self.policy.daily_limits.max_daily_earnings
            earned = self.ledger.daily_earned(balance)
            if earned + amount > cap:
                return Rejected(
                    "DAILY_CAP",
                    f"Daily earnings limit reached: ${from_cents(earned)}/${from_cents(cap)}",
                )
        return None

    @staticmethod
    def _describe(activity, quantity, watch_seconds, task_kind) -> str:
        if activity == ActivityType.WATCH:
            return f"Watched video for {watch_seconds}s"
        if activity == ActivityType.LIVE_WATCH:
            return f"Watched live for {quantity} min"
        if activity == ActivityType.TASK:
            return f"Completed task {task_kind}"
        return activity.value.replace("_", " ").capitalize()
