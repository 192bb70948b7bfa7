from datetime import datetime
from typing import Optional
from sqlalchemy import String, Boolean, Integer, Float, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from monetization.database import Base
from monetization.models.base import UUIDMixin, TimestampMixin


class User(Base, UUIDMixin, TimestampMixin):
    """Identity mirror written by the account service; the ledger only reads it."""

    __tablename__ = "users"

    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    country: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)
    region: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)

    followers_count: Mapped[int] = mapped_column(Integer, default=0)
    engagement_rate: Mapped[float] = mapped_column(Float, default=0.0)  # percent

    phone_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    email_verified: Mapped[bool] = mapped_column(Boolean, default=False)

    role: Mapped[str] = mapped_column(String(20), default="user")
    is_blocked: Mapped[bool] = mapped_column(Boolean, default=False)
    blocked_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    balance: Mapped[Optional["UserBalance"]] = relationship(back_populates="user", uselist=False)
    earnings: Mapped[list["EarningEvent"]] = relationship(back_populates="user")
    withdrawals: Mapped[list["Withdrawal"]] = relationship(back_populates="user")
    payout_methods: Mapped[list["PayoutMethod"]] = relationship(back_populates="user")

    def account_age_days(self, now: datetime) -> int:
        if not self.created_at:
            return 0
        return max((now - self.created_at).days, 0)
