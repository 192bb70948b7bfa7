import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Union

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from monetization.errors import ValidationError
from monetization.models.balance import UserBalance
from monetization.models.base import utcnow
from monetization.models.earning import EarningEvent, EarningStatus
from monetization.models.user import User
from monetization.models.withdrawal import Withdrawal, WithdrawalChannel, WithdrawalStatus
from monetization.services.ledger import BalanceLedger
from monetization.services.policy import RatePolicy, from_cents, to_cents

logger = logging.getLogger(__name__)

MAX_RISK_SCORE = 100


@dataclass
class EligibilityReport:
    eligible: bool
    reasons: List[str] = field(default_factory=list)
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"eligible": self.eligible, "reasons": self.reasons, **self.details}


class EligibilityGate:
    """Read-only withdrawal preconditions, one profile per channel."""

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

    async def check_eligibility(
        self,
        user_id: uuid.UUID,
        channel: Union[WithdrawalChannel, str],
        amount: int,
        country: str,
        provider: str,
    ) -> EligibilityReport:
        async with self.session_factory() as db:
            user = await db.get(User, user_id)
            if user is None:
                return EligibilityReport(False, ["User not found"])
            balance = await self.ledger.get(db, user_id)
            return await self.evaluate(db, user, balance, channel, amount, country, provider)

    async def evaluate(
        self,
        db: AsyncSession,
        user: User,
        balance: UserBalance,
        channel: Union[WithdrawalChannel, str],
        amount: int,
        country: str,
        provider: str,
    ) -> EligibilityReport:
        channel = WithdrawalChannel(channel)
        if channel == WithdrawalChannel.INSTANT:
            return self._instant(amount, country, provider)
        return await self._standard(db, user, balance, amount, country, provider)

    def _instant(self, amount: int, country: str, provider: str) -> EligibilityReport:
        # instant payouts skip age, activity, frequency and risk checks on purpose
        rules = self.policy.rules_for(WithdrawalChannel.INSTANT)
        reasons = []
        if amount <= 0:
            reasons.append("Amount must be greater than zero")
        elif amount > rules.max_amount:
            reasons.append(f"Maximum instant withdrawal is ${from_cents(rules.max_amount)}")
        if not self.policy.is_provider_supported(WithdrawalChannel.INSTANT, country, provider):
            reasons.append(f"{provider} not available in {country}")
        return EligibilityReport(not reasons, reasons)

    async def _standard(
        self, db: AsyncSession, user: User, balance: UserBalance, amount: int, country: str, provider: str
    ) -> EligibilityReport:
        rules = self.policy.rules_for(WithdrawalChannel.STANDARD)
        now = self.clock()
        reasons = []

        if amount < rules.min_amount:
            reasons.append(f"Minimum withdrawal is ${from_cents(rules.min_amount)}")
        if amount > rules.max_amount:
            reasons.append(f"Maximum withdrawal is ${from_cents(rules.max_amount)}")
        if amount > balance.available:
            reasons.append(
                f"Insufficient balance. Available: ${from_cents(balance.available)}, "
                f"requested: ${from_cents(max(amount, 0))}"
            )
        if not self.policy.is_provider_supported(WithdrawalChannel.STANDARD, country, provider):
            reasons.append(f"{provider} not available in {country}")

        age = user.account_age_days(now)
        if age < rules.min_account_age_days:
            reasons.append(f"Account too young: {age}/{rules.min_account_age_days} days")

        activities = await self.activity_count(db, user.id)
        if activities < rules.min_activities:
            reasons.append(f"Not enough activity: {activities}/{rules.min_activities}")

        today = await self.withdrawal_count(db, user.id, now.replace(hour=0, minute=0, second=0, microsecond=0))
        if rules.daily_limit is not None and today >= rules.daily_limit:
            reasons.append(f"Daily withdrawal limit reached: {today}/{rules.daily_limit}")

        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        this_month = await self.withdrawal_count(db, user.id, month_start)
        if rules.monthly_limit is not None and this_month >= rules.monthly_limit:
            reasons.append(f"Monthly withdrawal limit reached: {this_month}/{rules.monthly_limit}")

        risk = await self.risk_score(db, user)
        if rules.max_risk_score is not None and risk > rules.max_risk_score:
            reasons.append(f"Risk score too high: {risk}/{rules.max_risk_score}")

        if reasons:
            logger.info("[Eligibility] %s not eligible for standard withdrawal: %s", user.id, "; ".join(reasons))
        return EligibilityReport(
            not reasons,
            reasons,
            {
                "account_age_days": age,
                "activities": activities,
                "withdrawals_today": today,
                "withdrawals_this_month": this_month,
                "risk_score": risk,
                "available": float(from_cents(balance.available)),
            },
        )

    @staticmethod
    async def activity_count(db: AsyncSession, user_id: uuid.UUID) -> int:
        result = await db.execute(
            select(func.count(EarningEvent.id)).where(
                EarningEvent.user_id == user_id,
                EarningEvent.status != EarningStatus.REJECTED.value,
            )
        )
        return int(result.scalar_one())

    @staticmethod
    async def withdrawal_count(
        db: AsyncSession,
        user_id: uuid.UUID,
        since: datetime,
        channel: WithdrawalChannel = WithdrawalChannel.STANDARD,
    ) -> int:
        """``channel`` withdrawals since ``since`` that were not refused by the gateway.

        Instant payouts have no frequency limits and never count against the
        standard ones.
        """
        result = await db.execute(
            select(func.count(Withdrawal.id)).where(
                Withdrawal.user_id == user_id,
                Withdrawal.channel == WithdrawalChannel(channel).value,
                Withdrawal.created_at >= since,
                Withdrawal.status != WithdrawalStatus.FAILED.value,
            )
        )
        return int(result.scalar_one())

    async def risk_score(self, db: AsyncSession, user: User) -> int:
        """0 (clean) to 100 (block). See the risk table in DESIGN.md."""
        now = self.clock()
        score = 0

        age = user.account_age_days(now)
        if age < 7:
            score += 20
        elif age < 30:
            score += 10
        if not user.phone_verified:
            score += 10
        if not user.email_verified:
            score += 5

        result = await db.execute(
            select(func.count(Withdrawal.id)).where(
                Withdrawal.user_id == user.id,
                Withdrawal.status == WithdrawalStatus.FAILED.value,
                Withdrawal.retryable.is_(False),
                Withdrawal.transaction_id.is_(None),
                Withdrawal.created_at >= now - timedelta(days=30),
            )
        )
        score += 20 * int(result.scalar_one())

        result = await db.execute(
            select(EarningEvent.id)
            .where(
                EarningEvent.user_id == user.id,
                EarningEvent.status == EarningStatus.REJECTED.value,
            )
            .limit(1)
        )
        if result.first() is not None:
            score += 40

        return min(score, MAX_RISK_SCORE)

    async def check_program(self, user_id: uuid.UUID, program_name: str) -> EligibilityReport:
        program = self.policy.program(program_name)
        if program is None:
            raise ValidationError(f"Unknown payout program: {program_name}")

        async with self.session_factory() as db:
            user = await db.get(User, user_id)
            if user is None:
                return EligibilityReport(False, ["User not found"])
            balance = await self.ledger.get(db, user_id)

        reasons = []
        age = user.account_age_days(self.clock())
        if age < program.minimum_account_age:
            reasons.append(f"Account too young: {age}/{program.minimum_account_age} days")
        if user.followers_count < program.minimum_followers:
            reasons.append(f"Not enough followers: {user.followers_count}/{program.minimum_followers}")
        if user.engagement_rate < program.minimum_engagement_rate:
            reasons.append(
                f"Engagement rate too low: {user.engagement_rate}%/{program.minimum_engagement_rate}%"
            )
        threshold = to_cents(program.minimum_threshold)
        if balance.available < threshold:
            reasons.append(
                f"Earnings below threshold: ${from_cents(balance.available)}/${program.minimum_threshold}"
            )

        return EligibilityReport(
            not reasons,
            reasons,
            {"program": program.name, "payment_frequency": program.payment_frequency},
        )
