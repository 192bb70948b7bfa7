import uuid
from typing import Dict

from monetization.gateways.base import (
    BaseGateway,
    TransferFailure,
    TransferNotFound,
    TransferOrder,
    TransferResult,
    TransferStatus,
    TransferSuccess,
)


class SandboxGateway(BaseGateway):
    """In-memory gateway for development.

    Destinations ending in 0000 are rejected as invalid, ending in 9999 fail
    with a retryable outage; everything else succeeds. Replaying a reference
    returns the first answer.
    """

    name = "sandbox"
    display_name = "Sandbox"

    def __init__(self, api_key: str = "", **kwargs):
        super().__init__(api_key, **kwargs)
        self.transfers: Dict[str, TransferResult] = {}

    async def send_transfer(self, order: TransferOrder) -> TransferResult:
        if order.reference in self.transfers:
            return self.transfers[order.reference]

        if order.destination.endswith("0000"):
            result = TransferFailure(code="INVALID_DESTINATION", message="Destination account does not exist")
        elif order.destination.endswith("9999"):
            result = TransferFailure(code="PROVIDER_UNAVAILABLE", message=f"{order.provider} is temporarily unavailable")
        else:
            result = TransferSuccess(transaction_id=f"SBX-{uuid.uuid4().hex[:12].upper()}")

        self.transfers[order.reference] = result
        return result

    async def get_transfer_status(self, reference: str) -> TransferStatus:
        return self.transfers.get(reference, TransferNotFound())
