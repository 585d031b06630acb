"""Shared HTTP plumbing for gateway adapters.

Every outbound call has an explicit timeout. Anything short of a 2xx JSON
object (transport error, timeout, bad status, unparseable body) becomes a
retryable GatewayCommunicationError. Request bodies and headers are never
logged because they carry credentials.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

import httpx

from billing_engine.config import GatewayClientConfig
from billing_engine.exceptions import (
    GatewayCommunicationError,
    GatewayMisconfiguredError,
    UnsupportedOperationError,
)
from billing_engine.gateways.base import (
    CallbackReference,
    ChargeRequest,
    ChargeResult,
    GatewayCapabilities,
    RefundCallbackReference,
    RefundRequest,
    RefundResponse,
)

if TYPE_CHECKING:
    from billing_engine.models import PaymentGateway

logger = logging.getLogger(__name__)

_ERROR_MESSAGE_KEYS = ("statusMessage", "errorMessage", "message", "reason", "error")


class HttpGatewayClient:
    """Base class for adapters that speak HTTP/JSON to a provider."""

    code: str = ""

    def __init__(
        self,
        config: GatewayClientConfig | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._config = config or GatewayClientConfig()
        self._http = http_client or httpx.Client(
            timeout=httpx.Timeout(
                self._config.timeout_seconds,
                connect=self._config.connect_timeout_seconds,
            ),
            headers={
                "User-Agent": self._config.user_agent,
                "Accept": "application/json",
            },
            transport=transport,
        )

    def capabilities(self) -> GatewayCapabilities:
        return GatewayCapabilities()

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> HttpGatewayClient:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Defaults for optional operations
    # ------------------------------------------------------------------

    def charge_recurring(
        self, gateway: PaymentGateway, request: ChargeRequest
    ) -> ChargeResult:
        raise UnsupportedOperationError(self.code, "recurring charges")

    def refund(self, gateway: PaymentGateway, request: RefundRequest) -> RefundResponse:
        raise UnsupportedOperationError(self.code, "refunds")

    def query_refund(
        self, gateway: PaymentGateway, request: RefundRequest
    ) -> RefundResponse:
        raise UnsupportedOperationError(self.code, "refund status queries")

    def refund_callback_reference(
        self, payload: dict[str, Any]
    ) -> RefundCallbackReference:
        return RefundCallbackReference(
            refund_reference=_first(payload, "refund_reference", "sku", "reference"),
            refund_transaction_id=_first(payload, "refundTrxID", "refund_trx_id", "refund_id"),
        )

    def callback_reference(self, payload: dict[str, Any]) -> CallbackReference:
        return CallbackReference(
            invoice_number=_first(payload, "invoice_number", "invoice"),
            correlation_id=_first(payload, "payment_id", "paymentID"),
        )

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _base_url(self, gateway: PaymentGateway) -> str:
        base = gateway.base_url
        if not base:
            raise GatewayMisconfiguredError(
                gateway.code,
                "no sandbox URL" if gateway.test_mode else "no live URL",
            )
        return base.rstrip("/")

    def _post(
        self,
        url: str,
        *,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        return self._request("POST", url, json=json, headers=headers)

    def _get(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        return self._request("GET", url, headers=headers)

    def _request(
        self,
        method: str,
        url: str,
        *,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            response = self._http.request(method, url, json=json, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning("%s %s %s timed out", self.code, method, _path(url))
            raise GatewayCommunicationError(self.code, f"request timed out: {e}") from e
        except httpx.HTTPError as e:
            logger.warning("%s %s %s failed: %s", self.code, method, _path(url), type(e).__name__)
            raise GatewayCommunicationError(self.code, f"request failed: {e}") from e

        logger.debug("%s %s %s -> %s", self.code, method, _path(url), response.status_code)

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.is_error:
            message = _error_message(body) or response.reason_phrase or "HTTP error"
            raise GatewayCommunicationError(
                self.code,
                f"HTTP {response.status_code}: {message}",
                status_code=response.status_code,
            )
        if not isinstance(body, dict):
            raise GatewayCommunicationError(
                self.code,
                "response was not a JSON object",
                status_code=response.status_code,
            )
        return body

    @staticmethod
    def _require(body: dict[str, Any], key: str, gateway_code: str) -> Any:
        """Fetch a mandatory response field or fail as a malformed response."""
        value = body.get(key)
        if value in (None, ""):
            message = _error_message(body) or f"missing '{key}' in response"
            raise GatewayCommunicationError(gateway_code, message)
        return value


def _first(payload: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def _error_message(body: Any) -> str | None:
    if not isinstance(body, dict):
        return None
    for key in _ERROR_MESSAGE_KEYS:
        value = body.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _path(url: str) -> str:
    # Query strings can carry identifiers; log the path only.
    return httpx.URL(url).path


def parse_provider_time(value: Any) -> datetime | None:
    """Parse provider timestamps such as '2025-01-02T10:00:00:123 GMT+0600'.

    Returns a naive UTC datetime, or None when the value cannot be read.
    """
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    for fmt in ("%Y-%m-%dT%H:%M:%S:%f GMT%z", "%Y-%m-%dT%H:%M:%S%z", "%Y%m%d%H%M%S"):
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed



def parse_provider_amount(value: Any, gateway_code: str) -> Decimal | None:
    """Read an amount echoed by the provider; absent is None, garbage is an error."""
    if value in (None, ""):
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation as e:
        raise GatewayCommunicationError(gateway_code, f"unreadable amount {value!r}") from e
    if not amount.is_finite():
        raise GatewayCommunicationError(gateway_code, f"unreadable amount {value!r}")
    return amount
