import uuid
from datetime import datetime
from enum import Enum
from typing import Optional
from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship
from monetization.database import Base
from monetization.models.base import UUIDMixin, utcnow


class ActivityType(str, Enum):
    WATCH = "watch"
    LIKE = "like"
    COMMENT = "comment"
    SHARE = "share"
    INVITE = "invite"
    LIVE_WATCH = "live_watch"
    POLL_VOTE = "poll_vote"
    CHALLENGE = "challenge"
    TASK = "task"
    GIFT = "gift"
    TIP = "tip"
    VIEW = "view"


class EarningStatus(str, Enum):
    PENDING = "pending"  # held until fraud review
    COMPLETED = "completed"
    VERIFIED = "verified"
    REJECTED = "rejected"


class EarningEvent(Base, UUIDMixin):
    __tablename__ = "earning_events"
    __table_args__ = (
        Index("ix_earning_events_user_activity_created", "user_id", "activity", "created_at"),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), index=True)
    activity: Mapped[str] = mapped_column(String(20))
    amount: Mapped[int] = mapped_column(BigInteger)  # cents
    quantity: Mapped[int] = mapped_column(Integer, default=1)

    video_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    referred_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    region: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # uniqueness for one-shot activities (poll votes, referrals, tasks, challenges)
    dedupe_key: Mapped[Optional[str]] = mapped_column(String(200), unique=True, nullable=True)

    status: Mapped[str] = mapped_column(String(20), default=EarningStatus.COMPLETED.value)
    rejection_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    user: Mapped["User"] = relationship(back_populates="earnings")

    @property
    def is_held(self) -> bool:
        return self.status == EarningStatus.PENDING.value

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "activity": self.activity,
            "amount": self.amount / 100,
            "quantity": self.quantity,
            "video_id": self.video_id,
            "referred_user_id": str(self.referred_user_id) if self.referred_user_id else None,
            "reference": self.reference,
            "description": self.description,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
        }
