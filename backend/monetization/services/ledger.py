"""Balance row access for the two components allowed to write it.

Every mutation runs on a row fetched with ``SELECT ... FOR UPDATE`` inside
the caller's transaction and is checked by ``check_invariants`` before the
caller flushes. ``UserLocks`` additionally serializes same-user work inside
one process in arrival order.
"""
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Callable, Dict

from sqlalchemy import select, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from monetization.errors import LedgerInvariantError
from monetization.models.balance import UserBalance
from monetization.models.base import utcnow
from monetization.models.earning import EarningEvent, EarningStatus
from monetization.models.withdrawal import Withdrawal, WithdrawalStatus, IN_FLIGHT_STATUSES

logger = logging.getLogger(__name__)


class UserLocks:
    """Per-user asyncio locks, dropped once nobody waits on them."""

    def __init__(self):
        self._locks: Dict[uuid.UUID, asyncio.Lock] = {}
        self._waiters: Dict[uuid.UUID, int] = {}

    @asynccontextmanager
    async def hold(self, user_id: uuid.UUID) -> AsyncIterator[None]:
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._waiters[user_id] = self._waiters.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[user_id] -= 1
            if self._waiters[user_id] == 0:
                del self._waiters[user_id]
                self._locks.pop(user_id, None)


class BalanceLedger:
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self.locks = UserLocks()

    async def lock(self, db: AsyncSession, user_id: uuid.UUID) -> UserBalance:
        """Fetch the user's balance row for update, creating it on first use."""
        balance = await self._select_for_update(db, user_id)
        if balance is not None:
            return balance

        # first writer wins, a concurrent creator just falls through to the select
        insert = pg_insert if db.get_bind().dialect.name == "postgresql" else sqlite_insert
        await db.execute(
            insert(UserBalance)
            .values(
                user_id=user_id,
                total_earned=0,
                total_withdrawn=0,
                reserved=0,
                held=0,
                daily_earned=0,
                monthly_earned=0,
                view_remainder_millicents=0,
                updated_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["user_id"])
        )

        balance = await self._select_for_update(db, user_id)
        if balance is None:
            raise LedgerInvariantError(f"Balance row for {user_id} could not be created")
        return balance

    @staticmethod
    async def _select_for_update(db: AsyncSession, user_id: uuid.UUID):
        result = await db.execute(
            select(UserBalance)
            .where(UserBalance.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def empty(user_id: uuid.UUID) -> UserBalance:
        return UserBalance(
            user_id=user_id,
            total_earned=0,
            total_withdrawn=0,
            reserved=0,
            held=0,
            daily_earned=0,
            monthly_earned=0,
            view_remainder_millicents=0,
        )

    async def get(self, db: AsyncSession, user_id: uuid.UUID) -> UserBalance:
        """Read-only snapshot; an unknown user gets an all-zero balance."""
        result = await db.execute(select(UserBalance).where(UserBalance.user_id == user_id))
        return result.scalar_one_or_none() or self.empty(user_id)

    def roll_periods(self, balance: UserBalance) -> None:
        now = self.clock()
        today = now.date()
        period = now.strftime("%Y-%m")
        if balance.daily_date != today:
            balance.daily_date = today
            balance.daily_earned = 0
        if balance.monthly_period != period:
            balance.monthly_period = period
            balance.monthly_earned = 0

    def daily_earned(self, balance: UserBalance) -> int:
        if balance.daily_date != self.clock().date():
            return 0
        return balance.daily_earned

    def monthly_earned(self, balance: UserBalance) -> int:
        if balance.monthly_period != self.clock().strftime("%Y-%m"):
            return 0
        return balance.monthly_earned

    # --- mutations ---

    def credit(self, balance: UserBalance, amount: int, *, held: bool = False, capped: bool = False) -> None:
        if amount <= 0:
            raise LedgerInvariantError(f"Credit must be positive, got {amount}")
        self.roll_periods(balance)
        balance.total_earned += amount
        balance.monthly_earned += amount
        if capped:
            balance.daily_earned += amount
        if held:
            balance.held += amount
        self.check_invariants(balance)

    def release_hold(self, balance: UserBalance, amount: int) -> None:
        balance.held -= amount
        self.check_invariants(balance)

    def reverse_held(self, balance: UserBalance, amount: int) -> None:
        """Remove a held credit that failed fraud review."""
        balance.held -= amount
        balance.total_earned -= amount
        self.check_invariants(balance)

    def reserve(self, balance: UserBalance, amount: int) -> None:
        if amount <= 0 or amount > balance.available:
            raise LedgerInvariantError(
                f"Reserve of {amount} exceeds available {balance.available} for {balance.user_id}"
            )
        balance.reserved += amount
        self.check_invariants(balance)

    def settle(self, balance: UserBalance, amount: int) -> None:
        """Turn a reserved amount into a completed debit."""
        if amount > balance.reserved:
            raise LedgerInvariantError(
                f"Settling {amount} but only {balance.reserved} reserved for {balance.user_id}"
            )
        balance.reserved -= amount
        balance.total_withdrawn += amount
        self.check_invariants(balance)

    def settle_late(self, balance: UserBalance, amount: int) -> int:
        """Debit a payout the gateway confirmed after its reservation was released.

        Only what is still available can be taken; the return value is the
        debited part and anything short of ``amount`` is an overdraft.
        """
        covered = min(amount, max(balance.available, 0))
        if covered:
            balance.total_withdrawn += covered
            self.check_invariants(balance)
        return covered

    def release(self, balance: UserBalance, amount: int) -> None:
        """Return a reserved amount after a failed payout."""
        if amount > balance.reserved:
            raise LedgerInvariantError(
                f"Releasing {amount} but only {balance.reserved} reserved for {balance.user_id}"
            )
        balance.reserved -= amount
        self.check_invariants(balance)

    @staticmethod
    def check_invariants(balance: UserBalance) -> None:
        problems = []
        for name in ("total_earned", "total_withdrawn", "reserved", "held", "daily_earned", "monthly_earned"):
            if getattr(balance, name) < 0:
                problems.append(f"{name} is negative")
        if balance.pending_balance < 0:
            problems.append("pending balance is negative")
        if balance.held > balance.pending_balance:
            problems.append("held exceeds pending balance")
        if problems:
            logger.critical(
                "[Ledger] Invariant violation for %s: %s (%s)",
                balance.user_id, ", ".join(problems), balance.to_dict(),
            )
            raise LedgerInvariantError(f"Ledger invariant violated for {balance.user_id}: {', '.join(problems)}")

    # --- audit ---

    async def audit(self, db: AsyncSession, user_id: uuid.UUID) -> dict:
        """Recompute the balance from earning events and withdrawals."""
        balance = await self.get(db, user_id)

        earned = await db.execute(
            select(func.coalesce(func.sum(EarningEvent.amount), 0)).where(
                EarningEvent.user_id == user_id,
                EarningEvent.status != EarningStatus.REJECTED.value,
            )
        )
        held = await db.execute(
            select(func.coalesce(func.sum(EarningEvent.amount), 0)).where(
                EarningEvent.user_id == user_id,
                EarningEvent.status == EarningStatus.PENDING.value,
            )
        )
        withdrawn = await db.execute(
            select(func.coalesce(func.sum(Withdrawal.amount), 0)).where(
                Withdrawal.user_id == user_id,
                Withdrawal.status == WithdrawalStatus.COMPLETED.value,
            )
        )
        late = await db.execute(
            select(func.coalesce(func.sum(Withdrawal.late_debit), 0)).where(Withdrawal.user_id == user_id)
        )
        in_flight = await db.execute(
            select(func.coalesce(func.sum(Withdrawal.amount), 0)).where(
                Withdrawal.user_id == user_id,
                Withdrawal.status.in_(IN_FLIGHT_STATUSES),
            )
        )

        expected = {
            "total_earned": int(earned.scalar_one()),
            "held": int(held.scalar_one()),
            "total_withdrawn": int(withdrawn.scalar_one()) + int(late.scalar_one()),
            "reserved": int(in_flight.scalar_one()),
        }
        actual = {key: getattr(balance, key) for key in expected}
        mismatches = {key: {"expected": expected[key], "actual": actual[key]}
                      for key in expected if expected[key] != actual[key]}
        if mismatches:
            logger.critical("[Ledger] Audit mismatch for %s: %s", user_id, mismatches)

        return {
            "user_id": str(user_id),
            "consistent": not mismatches,
            "mismatches": mismatches,
            "balance": balance.to_dict(),
        }
