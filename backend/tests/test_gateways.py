import json

import httpx
import pytest

from monetization.config import settings
from monetization.errors import GatewayTimeout
from monetization.gateways import (
    GatewayRegistry,
    HttpMobileMoneyGateway,
    SandboxGateway,
    TransferFailure,
    TransferNotFound,
    TransferOrder,
    TransferPending,
    TransferSuccess,
    build_gateways,
)

ORDER = TransferOrder(
    reference="wd-1",
    provider="MTN",
    country="NG",
    destination="+2348012345678",
    amount=980,
)


def http_gateway(handler) -> HttpMobileMoneyGateway:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpMobileMoneyGateway(api_key="key", base_url="https://gw.test/v1/", client=client)


class TestHttpGateway:
    async def test_successful_transfer(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"status": "success", "transaction_id": "GW-1"})

        result = await http_gateway(handler).send_transfer(ORDER)

        assert result == TransferSuccess(transaction_id="GW-1", raw_response={"status": "success", "transaction_id": "GW-1"})
        request = seen[0]
        assert str(request.url) == "https://gw.test/v1/transfers"
        assert request.headers["Idempotency-Key"] == "wd-1"
        assert request.headers["Authorization"] == "Bearer key"
        assert json.loads(request.content)["amount"] == "9.80"

    async def test_rejected_transfer(self):
        def handler(request):
            return httpx.Response(422, json={"error_code": "INVALID_DESTINATION", "message": "No wallet"})

        result = await http_gateway(handler).send_transfer(ORDER)

        assert isinstance(result, TransferFailure)
        assert (result.code, result.message) == ("INVALID_DESTINATION", "No wallet")

    async def test_failed_status_in_body(self):
        def handler(request):
            return httpx.Response(200, json={"status": "failed", "error_code": "LIMIT_EXCEEDED"})

        result = await http_gateway(handler).send_transfer(ORDER)
        assert result.code == "LIMIT_EXCEEDED"

    async def test_accepted_without_answer(self):
        def handler(request):
            return httpx.Response(202, json={"status": "queued"})

        assert isinstance(await http_gateway(handler).send_transfer(ORDER), TransferPending)

    async def test_server_error_means_unknown_outcome(self):
        def handler(request):
            return httpx.Response(503, text="upstream down")

        with pytest.raises(GatewayTimeout):
            await http_gateway(handler).send_transfer(ORDER)

    async def test_read_timeout_means_unknown_outcome(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(GatewayTimeout):
            await http_gateway(handler).send_transfer(ORDER)

    async def test_connect_error_is_a_clean_failure(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        result = await http_gateway(handler).send_transfer(ORDER)
        assert result.code == "CONNECTION_ERROR"

    async def test_status_lookup(self):
        def handler(request):
            if request.url.path.endswith("/wd-1"):
                return httpx.Response(200, json={"status": "completed", "transaction_id": "GW-9"})
            return httpx.Response(404)

        gateway = http_gateway(handler)
        assert (await gateway.get_transfer_status("wd-1")).transaction_id == "GW-9"
        assert isinstance(await gateway.get_transfer_status("wd-2"), TransferNotFound)


class TestSandboxGateway:
    async def test_outcomes_by_destination(self):
        gateway = SandboxGateway()

        ok = await gateway.send_transfer(ORDER)
        bad = await gateway.send_transfer(TransferOrder("wd-2", "MTN", "NG", "+2348010000", 100))
        down = await gateway.send_transfer(TransferOrder("wd-3", "MTN", "NG", "+2348019999", 100))

        assert ok.transaction_id.startswith("SBX-")
        assert bad.code == "INVALID_DESTINATION"
        assert down.code == "PROVIDER_UNAVAILABLE"

    async def test_replay_returns_first_answer(self):
        gateway = SandboxGateway()
        first = await gateway.send_transfer(ORDER)

        assert await gateway.send_transfer(ORDER) == first
        assert await gateway.get_transfer_status(ORDER.reference) == first
        assert isinstance(await gateway.get_transfer_status("unknown"), TransferNotFound)


class TestRegistry:
    def test_routes_by_provider(self):
        default = SandboxGateway()
        mpesa = SandboxGateway()
        registry = GatewayRegistry(default)
        registry.register(mpesa, providers=["Safaricom"])

        assert registry.for_provider("Safaricom") is mpesa
        assert registry.for_provider("MTN") is default
        assert len(registry.all()) == 2

    def test_build_from_settings(self):
        registry = build_gateways(settings.model_copy(update={"GATEWAY_MODE": "sandbox"}))
        assert isinstance(registry.default, SandboxGateway)

        with pytest.raises(ValueError):
            build_gateways(settings.model_copy(update={"GATEWAY_MODE": "carrier-pigeon"}))
