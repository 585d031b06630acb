"""Rocket (DBBL mobile banking) adapter.

Checkout is USSD driven: initialize only mints a merchant transaction
reference and returns dialing instructions. Status, refunds and refund
status go through the bearer-token API.
"""

from __future__ import annotations

import secrets
import time
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

from billing_engine.gateways.base import (
    CallbackReference,
    GatewayCapabilities,
    InitResponse,
    PaymentContext,
    RefundRequest,
    RefundResponse,
    StatusResult,
    map_refund_status,
    map_status,
)
from billing_engine.gateways.http import (
    HttpGatewayClient,
    parse_provider_amount,
    parse_provider_time,
)
from billing_engine.models.enums import PaymentStatus, RefundStatus

if TYPE_CHECKING:
    from billing_engine.models import PaymentGateway

STATUS_MAP: dict[str, PaymentStatus] = {
    "pending": PaymentStatus.PENDING,
    "processing": PaymentStatus.PROCESSING,
    "completed": PaymentStatus.COMPLETED,
    "success": PaymentStatus.COMPLETED,
    "failed": PaymentStatus.FAILED,
    "cancelled": PaymentStatus.CANCELLED,
    "expired": PaymentStatus.EXPIRED,
}

REFUND_STATUS_MAP: dict[str, RefundStatus] = {
    "completed": RefundStatus.COMPLETED,
    "success": RefundStatus.COMPLETED,
    "failed": RefundStatus.FAILED,
}


def generate_transaction_reference() -> str:
    return f"TXN{int(time.time())}{secrets.randbelow(1_000_000):06d}"


class RocketClient(HttpGatewayClient):
    """Rocket USSD checkout with API-side verification."""

    code = "rocket"

    def capabilities(self) -> GatewayCapabilities:
        return GatewayCapabilities(recurring=False, refunds=True)

    def _access_token(self, gateway: PaymentGateway) -> str:
        body = self._post(
            f"{self._base_url(gateway)}/token",
            json={"client_id": gateway.api_key, "client_secret": gateway.api_secret},
        )
        return str(self._require(body, "access_token", self.code))

    def _auth(self, gateway: PaymentGateway) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token(gateway)}"}

    def initialize(
        self,
        gateway: PaymentGateway,
        payment: PaymentContext,
        options: dict[str, Any],
    ) -> InitResponse:
        config = gateway.api_config()
        reference = generate_transaction_reference()
        biller_id = config.get("biller_id") or "SCHOOL"
        success_url = options.get("success_url") or gateway.success_url
        redirect_url = (
            f"{success_url}?{urlencode({'payment_id': payment.payment_id})}"
            if success_url
            else None
        )
        return InitResponse(
            correlation_id=reference,
            redirect_url=redirect_url,
            details={
                "rocket_transaction_id": reference,
                "biller_id": biller_id,
                "bill_number": payment.invoice_number,
                "amount": f"{Decimal(payment.amount):.2f}",
                "instructions": (
                    f"Dial *322#, choose Bill Pay, enter biller ID {biller_id} "
                    f"and bill number {payment.invoice_number}"
                ),
            },
        )

    def callback_reference(self, payload: dict[str, Any]) -> CallbackReference:
        return CallbackReference(
            invoice_number=payload.get("bill_number") or None,
            correlation_id=payload.get("transaction_id") or payload.get("txn_id") or None,
        )

    def confirm_callback(
        self,
        gateway: PaymentGateway,
        payment: PaymentContext,
        payload: dict[str, Any],
    ) -> StatusResult:
        return self.query_status(gateway, payment)

    def query_status(
        self,
        gateway: PaymentGateway,
        payment: PaymentContext,
    ) -> StatusResult:
        if not payment.gateway_reference:
            return StatusResult(PaymentStatus.PENDING, "unknown", message="no transaction id")
        body = self._get(
            f"{self._base_url(gateway)}/transaction/status/{payment.gateway_reference}",
            headers=self._auth(gateway),
        )
        provider_status = body.get("status") or ""
        return StatusResult(
            status=map_status(STATUS_MAP, provider_status),
            provider_status=provider_status or "unknown",
            transaction_id=body.get("rocket_trx_id") or body.get("trx_id") or None,
            message=body.get("message") or provider_status,
            paid_at=parse_provider_time(body.get("completed_at")),
            invoice_number=body.get("bill_number") or None,
            amount=parse_provider_amount(body.get("amount"), self.code),
        )

    def refund(self, gateway: PaymentGateway, request: RefundRequest) -> RefundResponse:
        body = self._post(
            f"{self._base_url(gateway)}/refund",
            json={
                "transaction_id": request.payment.transaction_id
                or request.payment.gateway_reference,
                "refund_amount": f"{Decimal(request.amount):.2f}",
                "reason": request.reason or "Refund",
                "reference": request.refund_reference,
            },
            headers=self._auth(gateway),
        )
        return self._refund_from(body)

    def query_refund(
        self, gateway: PaymentGateway, request: RefundRequest
    ) -> RefundResponse:
        body = self._get(
            f"{self._base_url(gateway)}/refund/status/{request.refund_reference}",
            headers=self._auth(gateway),
        )
        return self._refund_from(body)

    def _refund_from(self, body: dict[str, Any]) -> RefundResponse:
        provider_status = body.get("status")
        return RefundResponse(
            status=map_refund_status(REFUND_STATUS_MAP, provider_status),
            refund_transaction_id=body.get("refund_id") or None,
            message=body.get("message") or provider_status or "",
            details={"provider_status": provider_status},
        )
