"""Payment gateway adapters."""

from billing_engine.gateways.base import (
    CallbackReference,
    ChargeRequest,
    ChargeResult,
    GatewayCapabilities,
    GatewayClient,
    InitResponse,
    PaymentContext,
    RefundRequest,
    RefundResponse,
    StatusResult,
)
from billing_engine.gateways.bkash import BkashClient
from billing_engine.gateways.nagad import NagadClient
from billing_engine.gateways.registry import ClientRegistry, GatewayRegistry
from billing_engine.gateways.rocket import RocketClient
from billing_engine.gateways.stub import StubGatewayClient

__all__ = [
    "CallbackReference",
    "ChargeRequest",
    "ChargeResult",
    "GatewayCapabilities",
    "GatewayClient",
    "InitResponse",
    "PaymentContext",
    "RefundRequest",
    "RefundResponse",
    "StatusResult",
    "BkashClient",
    "NagadClient",
    "RocketClient",
    "StubGatewayClient",
    "ClientRegistry",
    "GatewayRegistry",
]
