from monetization.models.base import Base, TimestampMixin, UUIDMixin
from monetization.models.user import User
from monetization.models.balance import UserBalance
from monetization.models.earning import EarningEvent, ActivityType, EarningStatus
from monetization.models.withdrawal import Withdrawal, WithdrawalChannel, WithdrawalStatus
from monetization.models.withdrawal_event import WithdrawalEvent
from monetization.models.payout_method import PayoutMethod

__all__ = [
    "Base",
    "TimestampMixin",
    "UUIDMixin",
    "User",
    "UserBalance",
    "EarningEvent",
    "ActivityType",
    "EarningStatus",
    "Withdrawal",
    "WithdrawalChannel",
    "WithdrawalStatus",
    "WithdrawalEvent",
    "PayoutMethod",
]
