from monetization.gateways.base import (
    BaseGateway,
    TransferOrder,
    TransferSuccess,
    TransferFailure,
    TransferPending,
    TransferNotFound,
)
from monetization.gateways.registry import GatewayRegistry, build_gateways
from monetization.gateways.http import HttpMobileMoneyGateway
from monetization.gateways.sandbox import SandboxGateway

__all__ = [
    "BaseGateway",
    "TransferOrder",
    "TransferSuccess",
    "TransferFailure",
    "TransferPending",
    "TransferNotFound",
    "GatewayRegistry",
    "build_gateways",
    "HttpMobileMoneyGateway",
    "SandboxGateway",
]
