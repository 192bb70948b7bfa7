import uuid
from datetime import datetime
from typing import Optional
from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship
from monetization.database import Base
from monetization.models.base import UUIDMixin, TimestampMixin


class PayoutMethod(Base, UUIDMixin, TimestampMixin):
    """A mobile money wallet the user saved for withdrawals."""

    __tablename__ = "payout_methods"
    __table_args__ = (
        UniqueConstraint("user_id", "fingerprint", name="uq_payout_methods_user_fingerprint"),
        Index("ix_payout_methods_user", "user_id"),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"))
    country: Mapped[str] = mapped_column(String(2))
    provider: Mapped[str] = mapped_column(String(50))
    destination: Mapped[str] = mapped_column(Text)  # Fernet token
    destination_hint: Mapped[str] = mapped_column(String(32))
    fingerprint: Mapped[str] = mapped_column(String(64))  # keyed digest of the normalized number
    label: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    user: Mapped["User"] = relationship(back_populates="payout_methods")

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "country": self.country,
            "provider": self.provider,
            "destination": self.destination_hint,
            "label": self.label or f"{self.provider} {self.destination_hint[-4:]}",
            "is_default": self.is_default,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
