from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Union


@dataclass(frozen=True)
class TransferOrder:
    reference: str  # withdrawal id, doubles as idempotency key
    provider: str
    country: str
    destination: str
    amount: int  # net cents
    currency: str = "USD"
    description: str = ""


@dataclass(frozen=True)
class TransferSuccess:
    transaction_id: str
    raw_response: Optional[dict] = None


@dataclass(frozen=True)
class TransferFailure:
    code: str
    message: str
    raw_response: Optional[dict] = None


@dataclass(frozen=True)
class TransferPending:
    """Gateway accepted the order but has no final answer yet."""

    raw_response: Optional[dict] = None


@dataclass(frozen=True)
class TransferNotFound:
    """Gateway has no record of the reference, so nothing was sent."""

    raw_response: Optional[dict] = None


TransferResult = Union[TransferSuccess, TransferFailure, TransferPending]
TransferStatus = Union[TransferSuccess, TransferFailure, TransferPending, TransferNotFound]


def describe(result) -> str:
    """Short status label stored on withdrawal events."""
    return {
        TransferSuccess: "success",
        TransferFailure: "failed",
        TransferPending: "pending",
        TransferNotFound: "not_found",
    }.get(type(result), "unknown")


class BaseGateway(ABC):
    """Base class for mobile-money payout gateways."""

    name: str  # sandbox, http
    display_name: str
    providers: List[str] = []  # empty means every provider

    def __init__(self, api_key: str = "", **kwargs):
        self.api_key = api_key
        self.config = kwargs

    @abstractmethod
    async def send_transfer(self, order: TransferOrder) -> TransferResult:
        """Send ``order.amount`` to ``order.destination``.

        Raises ``GatewayTimeout`` when the outcome is unknown.
        """
        pass

    @abstractmethod
    async def get_transfer_status(self, reference: str) -> TransferStatus:
        """Look up an earlier order by its reference."""
        pass

    async def aclose(self) -> None:
        pass

    def get_capabilities(self) -> dict:
        return {"name": self.name, "display_name": self.display_name, "providers": list(self.providers)}
