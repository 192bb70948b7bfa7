import uuid
from datetime import datetime
from typing import Optional
from sqlalchemy import String, Text, DateTime, ForeignKey, JSON, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship
from monetization.database import Base
from monetization.models.base import utcnow


class WithdrawalEvent(Base):
    __tablename__ = "withdrawal_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    withdrawal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("withdrawals.id", ondelete="CASCADE"), index=True
    )

    event_type: Mapped[str] = mapped_column(String(50))
    from_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    to_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    gateway_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    withdrawal: Mapped["Withdrawal"] = relationship(back_populates="events")

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "event_type": self.event_type,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "gateway_status": self.gateway_status,
            "payload": self.payload,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
