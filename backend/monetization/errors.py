from typing import List, Optional


class LedgerError(Exception):
    """Base class for monetization errors."""

    code = "LEDGER_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(LedgerError):
    code = "VALIDATION_ERROR"


class ProviderNotSupported(ValidationError):
    code = "PROVIDER_NOT_SUPPORTED"

    def __init__(self, provider: str, country: str):
        super().__init__(f"{provider} not available in {country}")
        self.provider = provider
        self.country = country


class EligibilityError(LedgerError):
    code = "NOT_ELIGIBLE"

    def __init__(self, reasons: List[str]):
        super().__init__("; ".join(reasons))
        self.reasons = reasons


class InsufficientBalance(LedgerError):
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, requested: int, available: int):
        super().__init__(
            f"Insufficient balance. Available: ${available / 100:.2f}, requested: ${requested / 100:.2f}"
        )
        self.requested = requested
        self.available = available


class WithdrawalNotFound(LedgerError):
    code = "NOT_FOUND"


class InvalidTransition(LedgerError):
    code = "INVALID_TRANSITION"

    def __init__(self, current: str, target: str, channel: Optional[str] = None):
        suffix = f" for {channel} withdrawal" if channel else ""
        super().__init__(f"Cannot move from {current} to {target}{suffix}")
        self.current = current
        self.target = target


class LedgerInvariantError(LedgerError):
    """A write would break the ledger. Always a bug, never a user error."""

    code = "LEDGER_INVARIANT"


class GatewayTimeout(LedgerError):
    code = "TIMEOUT"


class EarningNotFound(LedgerError):
    code = "NOT_FOUND"


class PayoutMethodNotFound(LedgerError):
    code = "NOT_FOUND"
