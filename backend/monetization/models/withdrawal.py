import uuid
from datetime import datetime
from enum import Enum
from typing import Optional
from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship
from monetization.database import Base
from monetization.models.base import UUIDMixin, TimestampMixin


class WithdrawalChannel(str, Enum):
    STANDARD = "standard"
    INSTANT = "instant"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = {WithdrawalStatus.COMPLETED.value, WithdrawalStatus.FAILED.value}
IN_FLIGHT_STATUSES = {WithdrawalStatus.PENDING.value, WithdrawalStatus.PROCESSING.value}


class Withdrawal(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "withdrawals"
    __table_args__ = (
        Index("ix_withdrawals_status_updated", "status", "updated_at"),
        Index("ix_withdrawals_user_created", "user_id", "created_at"),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"))
    channel: Mapped[str] = mapped_column(String(20), default=WithdrawalChannel.STANDARD.value)

    # cents; amount is gross, net_amount is what the gateway sends
    amount: Mapped[int] = mapped_column(BigInteger)
    fee: Mapped[int] = mapped_column(BigInteger, default=0)
    net_amount: Mapped[int] = mapped_column(BigInteger)
    currency: Mapped[str] = mapped_column(String(3), default="USD")

    country: Mapped[str] = mapped_column(String(2))
    provider: Mapped[str] = mapped_column(String(50))
    destination: Mapped[str] = mapped_column(Text)  # Fernet token
    destination_hint: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    status: Mapped[str] = mapped_column(String(20), default=WithdrawalStatus.PENDING.value)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    failure_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retryable: Mapped[bool] = mapped_column(Boolean, default=False)
    # confirmed by the gateway after the request had already failed
    late_debit: Mapped[int] = mapped_column(BigInteger, default=0)

    # at most one retry per failed request
    parent_withdrawal_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("withdrawals.id"), unique=True, nullable=True
    )
    attempt: Mapped[int] = mapped_column(Integer, default=1)

    dispatched_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    user: Mapped["User"] = relationship(back_populates="withdrawals")
    events: Mapped[list["WithdrawalEvent"]] = relationship(
        back_populates="withdrawal", order_by="WithdrawalEvent.created_at"
    )

    @property
    def is_instant(self) -> bool:
        return self.channel == WithdrawalChannel.INSTANT.value

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def reference(self) -> str:
        """Idempotency reference handed to the gateway."""
        return str(self.id)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "channel": self.channel,
            "amount": self.amount / 100,
            "fee": self.fee / 100,
            "net_amount": self.net_amount / 100,
            "currency": self.currency,
            "country": self.country,
            "provider": self.provider,
            "destination": self.destination_hint,
            "status": self.status,
            "transaction_id": self.transaction_id,
            "failure_code": self.failure_code,
            "failure_reason": self.failure_reason,
            "retryable": self.retryable,
            "late_debit": (self.late_debit or 0) / 100,
            "parent_withdrawal_id": str(self.parent_withdrawal_id) if self.parent_withdrawal_id else None,
            "attempt": self.attempt,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
