import logging
from typing import Optional

import httpx

from monetization.errors import GatewayTimeout
from monetization.gateways.base import (
    BaseGateway,
    TransferFailure,
    TransferNotFound,
    TransferOrder,
    TransferPending,
    TransferResult,
    TransferStatus,
    TransferSuccess,
)

logger = logging.getLogger(__name__)


class HttpMobileMoneyGateway(BaseGateway):
    name = "http"
    display_name = "Mobile Money Aggregator"

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
        **kwargs,
    ):
        super().__init__(api_key, **kwargs)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    def _get_headers(self, idempotency_key: Optional[str] = None) -> dict:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def send_transfer(self, order: TransferOrder) -> TransferResult:
        payload = {
            "reference": order.reference,
            "provider": order.provider,
            "country": order.country,
            "destination": order.destination,
            "amount": f"{order.amount // 100}.{order.amount % 100:02d}",
            "currency": order.currency,
            "description": order.description,
        }

        try:
            response = await self.client.post(
                f"{self.base_url}/transfers",
                headers=self._get_headers(order.reference),
                json=payload,
            )
        except httpx.ConnectError as e:
            # connection never opened, the order cannot have been received
            return TransferFailure(code="CONNECTION_ERROR", message=str(e))
        except httpx.TimeoutException:
            raise GatewayTimeout(f"Gateway did not answer within {self.timeout}s")
        except httpx.TransportError as e:
            raise GatewayTimeout(f"Gateway connection lost: {e}")

        if response.status_code >= 500:
            raise GatewayTimeout(f"Gateway returned HTTP {response.status_code}")

        data = self._json(response)
        if response.status_code not in (200, 201, 202):
            return TransferFailure(
                code=data.get("error_code") or f"HTTP_{response.status_code}",
                message=data.get("message") or response.text,
                raw_response=data,
            )
        return self._parse(data)

    async def get_transfer_status(self, reference: str) -> TransferStatus:
        try:
            response = await self.client.get(
                f"{self.base_url}/transfers/{reference}",
                headers=self._get_headers(),
            )
        except httpx.TimeoutException:
            raise GatewayTimeout(f"Status lookup for {reference} timed out")
        except httpx.TransportError as e:
            raise GatewayTimeout(f"Status lookup for {reference} failed: {e}")

        if response.status_code == 404:
            return TransferNotFound()
        if response.status_code >= 500:
            raise GatewayTimeout(f"Gateway returned HTTP {response.status_code}")

        data = self._json(response)
        if response.status_code != 200:
            logger.warning("[Gateway] Unexpected status lookup answer %s: %s", response.status_code, data)
            return TransferPending(raw_response=data)
        return self._parse(data)

    @staticmethod
    def _json(response: httpx.Response) -> dict:
        try:
            data = response.json() if response.text else {}
        except ValueError:
            return {"message": response.text}
        return data if isinstance(data, dict) else {"data": data}

    @staticmethod
    def _parse(data: dict) -> TransferStatus:
        status = (data.get("status") or "").lower()
        if status in ("success", "successful", "completed"):
            if not data.get("transaction_id"):
                return TransferPending(raw_response=data)
            return TransferSuccess(transaction_id=data["transaction_id"], raw_response=data)
        if status in ("failed", "rejected", "cancelled"):
            return TransferFailure(
                code=data.get("error_code") or "TRANSFER_FAILED",
                message=data.get("message") or "Transfer failed",
                raw_response=data,
            )
        if status == "not_found":
            return TransferNotFound(raw_response=data)
        return TransferPending(raw_response=data)

    async def aclose(self) -> None:
        await self.client.aclose()
