from monetization.services.policy import RatePolicy
from monetization.services.ledger import BalanceLedger, UserLocks
from monetization.services.accrual import AccrualEngine, Rejected
from monetization.services.eligibility import EligibilityGate, EligibilityReport
from monetization.services.withdrawals import WithdrawalStateMachine
from monetization.services.payout_methods import PayoutMethodBook
from monetization.services.payouts import PayoutRouter
from monetization.services.auth import auth_service, AuthService

__all__ = [
    "RatePolicy",
    "BalanceLedger", "UserLocks",
    "AccrualEngine", "Rejected",
    "EligibilityGate", "EligibilityReport",
    "WithdrawalStateMachine",
    "PayoutRouter",
    "PayoutMethodBook",
    "auth_service", "AuthService",
]
