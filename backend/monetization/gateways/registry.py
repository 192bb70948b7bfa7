from typing import Dict, Optional, Type

from monetization.config import Settings
from monetization.gateways.base import BaseGateway
from monetization.gateways.http import HttpMobileMoneyGateway
from monetization.gateways.sandbox import SandboxGateway


class GatewayRegistry:
    """Maps payout providers to the gateway that serves them."""

    _gateway_types: Dict[str, Type[BaseGateway]] = {}

    @classmethod
    def register_type(cls, gateway_class: Type[BaseGateway]):
        cls._gateway_types[gateway_class.name] = gateway_class
        return gateway_class

    @classmethod
    def gateway_type(cls, name: str) -> Optional[Type[BaseGateway]]:
        return cls._gateway_types.get(name)

    def __init__(self, default: BaseGateway):
        self.default = default
        self._by_provider: Dict[str, BaseGateway] = {}

    def register(self, gateway: BaseGateway, providers=None) -> BaseGateway:
        for provider in providers or gateway.providers:
            self._by_provider[provider] = gateway
        return gateway

    def for_provider(self, provider: str) -> BaseGateway:
        return self._by_provider.get(provider, self.default)

    def all(self) -> list:
        seen = {id(self.default): self.default}
        for gateway in self._by_provider.values():
            seen.setdefault(id(gateway), gateway)
        return list(seen.values())

    def list_gateways(self) -> list:
        routes = {}
        for provider, gateway in self._by_provider.items():
            routes.setdefault(gateway.name, []).append(provider)
        return [
            {**gateway.get_capabilities(), "routed_providers": sorted(routes.get(gateway.name, []))}
            for gateway in self.all()
        ]

    async def aclose(self) -> None:
        for gateway in self.all():
            await gateway.aclose()


GatewayRegistry.register_type(SandboxGateway)
GatewayRegistry.register_type(HttpMobileMoneyGateway)


def build_gateways(settings: Settings) -> GatewayRegistry:
    gateway_class = GatewayRegistry.gateway_type(settings.GATEWAY_MODE)
    if gateway_class is None:
        raise ValueError(f"Unknown GATEWAY_MODE: {settings.GATEWAY_MODE}")

    if gateway_class is HttpMobileMoneyGateway:
        default = HttpMobileMoneyGateway(
            api_key=settings.GATEWAY_API_KEY,
            base_url=settings.GATEWAY_BASE_URL,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        )
    else:
        default = gateway_class(api_key=settings.GATEWAY_API_KEY)
    return GatewayRegistry(default)
