"""Nagad remote payment gateway adapter."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

from billing_engine.gateways.base import (
    CallbackReference,
    GatewayCapabilities,
    InitResponse,
    PaymentContext,
    RefundCallbackReference,
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
    "initiated": PaymentStatus.PENDING,
    "ready": PaymentStatus.PENDING,
    "inprogress": PaymentStatus.PROCESSING,
    "success": PaymentStatus.COMPLETED,
    "failed": PaymentStatus.FAILED,
    "aborted": PaymentStatus.CANCELLED,
    "cancelled": PaymentStatus.CANCELLED,
    "expired": PaymentStatus.EXPIRED,
}

REFUND_STATUS_MAP: dict[str, RefundStatus] = {
    "success": RefundStatus.COMPLETED,
    "completed": RefundStatus.COMPLETED,
    "failed": RefundStatus.FAILED,
    "rejected": RefundStatus.FAILED,
}

# Nagad expects merchant-local (Asia/Dhaka) timestamps.
_DHAKA = timezone(timedelta(hours=6))


class NagadClient(HttpGatewayClient):
    """Nagad checkout (initialize → redirect → verify)."""

    code = "nagad"

    def capabilities(self) -> GatewayCapabilities:
        return GatewayCapabilities(recurring=False, refunds=True)

    def _headers(self, options: dict[str, Any] | None = None) -> dict[str, str]:
        return {
            "X-KM-Client-Type": "PC_WEB",
            "X-KM-Api-Version": "v-0.2.0",
            "X-KM-IP-V4": (options or {}).get("client_ip", "127.0.0.1"),
        }

    def initialize(
        self,
        gateway: PaymentGateway,
        payment: PaymentContext,
        options: dict[str, Any],
    ) -> InitResponse:
        config = gateway.api_config()
        body = self._post(
            f"{self._base_url(gateway)}/checkout/initialize/",
            json={
                "accountNumber": config.get("merchant_account") or config["api_key"],
                "dateTime": datetime.now(_DHAKA).strftime("%Y%m%d%H%M%S"),
                "additionalMerchantInfo": {
                    "invoice": payment.invoice_number,
                    "description": payment.description,
                },
                "amount": f"{Decimal(payment.amount):.2f}",
                "orderId": payment.invoice_number,
                "reference": options.get("reference") or payment.invoice_number,
            },
            headers=self._headers(options),
        )
        reference = str(self._require(body, "paymentReferenceId", self.code))
        callback_base = body.get("callBackUrl") or options.get("callback_url") or gateway.callback_url
        redirect_url = (
            f"{callback_base}?{urlencode({'paymentRefId': reference})}" if callback_base else None
        )
        return InitResponse(
            correlation_id=reference,
            redirect_url=redirect_url,
            details={
                "nagad_payment_ref_id": reference,
                "nagad_order_id": body.get("orderId") or payment.invoice_number,
            },
        )

    def callback_reference(self, payload: dict[str, Any]) -> CallbackReference:
        return CallbackReference(
            invoice_number=payload.get("order_id") or payload.get("orderId") or None,
            correlation_id=payload.get("payment_ref_id") or payload.get("paymentRefId") or None,
        )

    def confirm_callback(
        self,
        gateway: PaymentGateway,
        payment: PaymentContext,
        payload: dict[str, Any],
    ) -> StatusResult:
        return self._verify(gateway, payment.gateway_reference)

    def query_status(
        self,
        gateway: PaymentGateway,
        payment: PaymentContext,
    ) -> StatusResult:
        return self._verify(gateway, payment.gateway_reference)

    def _verify(self, gateway: PaymentGateway, reference: str | None) -> StatusResult:
        if not reference:
            return StatusResult(PaymentStatus.PENDING, "unknown", message="no paymentRefId")
        body = self._post(
            f"{self._base_url(gateway)}/verify/payment/",
            json={"paymentRefId": reference},
            headers=self._headers(),
        )
        provider_status = body.get("status") or ""
        return StatusResult(
            status=map_status(STATUS_MAP, provider_status),
            provider_status=provider_status or "unknown",
            transaction_id=body.get("issuerPaymentRefNo") or body.get("paymentId") or None,
            message=body.get("statusMessage") or body.get("message") or provider_status,
            paid_at=parse_provider_time(body.get("issuerPaymentDateTime")),
            details={"nagad_payment_ref_id": reference},
            invoice_number=body.get("orderId") or None,
            amount=parse_provider_amount(body.get("amount"), self.code),
        )

    def refund(self, gateway: PaymentGateway, request: RefundRequest) -> RefundResponse:
        config = gateway.api_config()
        body = self._post(
            f"{self._base_url(gateway)}/refund/initialize",
            json={
                "merchantId": config.get("merchant_id") or config["api_key"],
                "paymentRefId": request.payment.gateway_reference,
                "originalTrxId": request.payment.transaction_id,
                "refundAmount": f"{Decimal(request.amount):.2f}",
                "referenceNo": request.refund_reference,
                "referenceMessage": (request.reason or "Refund")[:255],
            },
            headers=self._headers(),
        )
        return self._refund_from(body, body.get("status"))

    def query_refund(
        self, gateway: PaymentGateway, request: RefundRequest
    ) -> RefundResponse:
        body = self._get(
            f"{self._base_url(gateway)}/refund/status/{request.refund_reference}",
            headers=self._headers(),
        )
        return self._refund_from(body, body.get("refundStatus") or body.get("status"))

    def _refund_from(self, body: dict[str, Any], provider_status: str | None) -> RefundResponse:
        return RefundResponse(
            status=map_refund_status(REFUND_STATUS_MAP, provider_status),
            refund_transaction_id=body.get("refundTrxID") or body.get("refundRefNo") or None,
            message=body.get("message") or provider_status or "",
            details={"provider_status": provider_status},
        )

    def refund_callback_reference(
        self, payload: dict[str, Any]
    ) -> RefundCallbackReference:
        return RefundCallbackReference(
            refund_reference=payload.get("referenceNo") or payload.get("refundRefNo") or None,
            refund_transaction_id=payload.get("refundTrxID") or None,
        )
