import uuid
from datetime import date, datetime
from typing import Optional
from sqlalchemy import BigInteger, Date, DateTime, ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship
from monetization.database import Base
from monetization.models.base import utcnow


class UserBalance(Base):
    """Per-user ledger row. All amounts are in cents.

    pending_balance = total_earned - total_withdrawn - reserved, where
    ``reserved`` is the gross amount of in-flight withdrawals. ``held`` is the
    part of pending_balance still waiting on fraud review and therefore not
    available for withdrawal.
    """

    __tablename__ = "user_balances"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), primary_key=True)

    total_earned: Mapped[int] = mapped_column(BigInteger, default=0)
    total_withdrawn: Mapped[int] = mapped_column(BigInteger, default=0)
    reserved: Mapped[int] = mapped_column(BigInteger, default=0)
    held: Mapped[int] = mapped_column(BigInteger, default=0)

    daily_earned: Mapped[int] = mapped_column(BigInteger, default=0)
    daily_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    monthly_earned: Mapped[int] = mapped_column(BigInteger, default=0)
    monthly_period: Mapped[Optional[str]] = mapped_column(String(7), nullable=True)  # YYYY-MM

    # sub-cent CPM revenue carried between view batches
    view_remainder_millicents: Mapped[int] = mapped_column(BigInteger, default=0)

    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    user: Mapped["User"] = relationship(back_populates="balance")

    @property
    def pending_balance(self) -> int:
        return self.total_earned - self.total_withdrawn - self.reserved

    @property
    def available(self) -> int:
        return self.pending_balance - self.held

    def to_dict(self) -> dict:
        return {
            "total_earned": self.total_earned,
            "total_withdrawn": self.total_withdrawn,
            "reserved": self.reserved,
            "held": self.held,
            "pending_balance": self.pending_balance,
            "available": self.available,
            "daily_earned": self.daily_earned,
            "monthly_earned": self.monthly_earned,
        }
