"""Gateway configuration lookup and adapter registry.

``GatewayRegistry`` reads PaymentGateway rows; every lookup goes to the
database so rotated credentials are picked up immediately.
``ClientRegistry`` maps gateway codes to adapter instances registered at
startup.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_engine.config import GatewayClientConfig
from billing_engine.exceptions import (
    GatewayInactiveError,
    GatewayMisconfiguredError,
    GatewayNotFoundError,
    UnsupportedOperationError,
)
from billing_engine.gateways.base import GatewayClient
from billing_engine.models import PaymentGateway, normalize_gateway_code

logger = logging.getLogger(__name__)


class GatewayRegistry:
    """Read-only access to gateway configuration."""

    def __init__(self, session: Session):
        self.session = session

    def find(self, code: str) -> PaymentGateway | None:
        """Fetch the current row for ``code`` (None if missing or deleted)."""
        stmt = (
            select(PaymentGateway)
            .where(
                PaymentGateway.code == normalize_gateway_code(code),
                PaymentGateway.deleted_at.is_(None),
            )
            .execution_options(populate_existing=True)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def get(self, code: str) -> PaymentGateway:
        """Fetch a gateway or raise GatewayNotFoundError."""
        gateway = self.find(code)
        if gateway is None:
            raise GatewayNotFoundError(code)
        return gateway

    def get_usable(self, code: str) -> PaymentGateway:
        """Fetch a gateway that is active and, if online, configured."""
        gateway = self.get(code)
        if not gateway.is_active:
            raise GatewayInactiveError(gateway.code)
        if not gateway.is_offline and not gateway.is_configured:
            raise GatewayMisconfiguredError(gateway.code, "missing credentials")
        return gateway

    def list_active(self) -> list[PaymentGateway]:
        stmt = (
            select(PaymentGateway)
            .where(PaymentGateway.is_active.is_(True), PaymentGateway.deleted_at.is_(None))
            .order_by(PaymentGateway.sort_order, PaymentGateway.name)
        )
        return list(self.session.execute(stmt).scalars())

    def list_all(self) -> list[PaymentGateway]:
        stmt = (
            select(PaymentGateway)
            .where(PaymentGateway.deleted_at.is_(None))
            .order_by(PaymentGateway.sort_order, PaymentGateway.name)
        )
        return list(self.session.execute(stmt).scalars())


class ClientRegistry:
    """Explicit map of gateway code → adapter."""

    def __init__(self) -> None:
        self._clients: dict[str, GatewayClient] = {}

    def register(self, client: GatewayClient, code: str | None = None) -> None:
        """Register an adapter under its own code (or an explicit one)."""
        key = normalize_gateway_code(code or client.code)
        if key in self._clients:
            logger.warning("Replacing gateway adapter for %s", key)
        self._clients[key] = client

    def find(self, code: str | None) -> GatewayClient | None:
        if not code:
            return None
        return self._clients.get(normalize_gateway_code(code))

    def get(self, code: str) -> GatewayClient:
        client = self.find(code)
        if client is None:
            raise GatewayMisconfiguredError(code, "no adapter registered")
        return client

    def supports_refunds(self, code: str | None) -> bool:
        client = self.find(code)
        return client is not None and client.capabilities().refunds

    def require(self, code: str, operation: str) -> GatewayClient:
        """Fetch an adapter that declares ``operation`` ('recurring' or 'refunds')."""
        client = self.get(code)
        if not getattr(client.capabilities(), operation):
            raise UnsupportedOperationError(code, operation)
        return client

    @property
    def codes(self) -> list[str]:
        return sorted(self._clients)

    def close(self) -> None:
        for client in self._clients.values():
            close = getattr(client, "close", None)
            if close is not None:
                close()

    @classmethod
    def default(cls, config: GatewayClientConfig | None = None) -> ClientRegistry:
        """Registry with the production adapters."""
        from billing_engine.gateways.bkash import BkashClient
        from billing_engine.gateways.nagad import NagadClient
        from billing_engine.gateways.rocket import RocketClient

        registry = cls()
        for client_class in (BkashClient, NagadClient, RocketClient):
            registry.register(client_class(config))
        return registry
