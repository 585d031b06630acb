"""bKash tokenized checkout adapter.

Every call grants a fresh id_token from the gateway's current credentials;
tokens are never persisted on the payment.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from billing_engine.gateways.base import (
    CallbackReference,
    ChargeRequest,
    ChargeResult,
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

logger = logging.getLogger(__name__)

STATUS_MAP: dict[str, PaymentStatus] = {
    "initiated": PaymentStatus.PENDING,
    "incomplete": PaymentStatus.PROCESSING,
    "completed": PaymentStatus.COMPLETED,
    "failed": PaymentStatus.FAILED,
    "cancelled": PaymentStatus.CANCELLED,
    "canceled": PaymentStatus.CANCELLED,
    "expired": PaymentStatus.EXPIRED,
    # The payment settled; the refund itself is tracked on the Refund rows.
    "refunded": PaymentStatus.COMPLETED,
}

REFUND_STATUS_MAP: dict[str, RefundStatus] = {
    "completed": RefundStatus.COMPLETED,
    "failed": RefundStatus.FAILED,
    "declined": RefundStatus.FAILED,
}

SUCCESS_CODE = "0000"


def _money(amount: Decimal) -> str:
    return f"{Decimal(amount):.2f}"


class BkashClient(HttpGatewayClient):
    """bKash tokenized checkout (grant → create → execute/status)."""

    code = "bkash"

    def capabilities(self) -> GatewayCapabilities:
        return GatewayCapabilities(recurring=True, refunds=True)

    def _grant_token(self, gateway: PaymentGateway) -> str:
        config = gateway.api_config()
        body = self._post(
            f"{self._base_url(gateway)}/checkout/token/grant",
            json={"app_key": config["api_key"], "app_secret": config["api_secret"]},
            headers={
                "username": config.get("username") or "",
                "password": config.get("password") or "",
            },
        )
        return str(self._require(body, "id_token", self.code))

    def _auth_headers(self, gateway: PaymentGateway, token: str) -> dict[str, str]:
        return {"Authorization": token, "X-APP-Key": gateway.api_key or ""}

    def initialize(
        self,
        gateway: PaymentGateway,
        payment: PaymentContext,
        options: dict[str, Any],
    ) -> InitResponse:
        token = self._grant_token(gateway)
        callback_url = options.get("callback_url") or gateway.callback_url
        body = self._post(
            f"{self._base_url(gateway)}/checkout/create",
            json={
                "mode": options.get("mode", "0011"),
                "payerReference": options.get("payer_reference")
                or f"INV{payment.invoice_number}",
                "callbackURL": callback_url,
                "amount": _money(payment.amount),
                "currency": payment.currency,
                "intent": "sale",
                "merchantInvoiceNumber": payment.invoice_number,
            },
            headers=self._auth_headers(gateway, token),
        )
        payment_id = str(self._require(body, "paymentID", self.code))
        redirect_url = str(self._require(body, "bkashURL", self.code))
        return InitResponse(
            correlation_id=payment_id,
            redirect_url=redirect_url,
            details={
                "bkash_payment_id": payment_id,
                "bkash_create_time": body.get("paymentCreateTime") or body.get("createTime"),
            },
        )

    def callback_reference(self, payload: dict[str, Any]) -> CallbackReference:
        return CallbackReference(
            invoice_number=payload.get("merchantInvoiceNumber") or None,
            correlation_id=payload.get("paymentID") or None,
        )

    def confirm_callback(
        self,
        gateway: PaymentGateway,
        payment: PaymentContext,
        payload: dict[str, Any],
    ) -> StatusResult:
        """Execute the approved payment; fall back to a status query.

        Execute is what captures the funds. When it answers with an error
        code (already executed, cancelled by the user, expired) the status
        query is the authority.

        Only the paymentID stored at initialize is executed; a paymentID in
        the payload may belong to someone else's checkout.
        """
        payment_id = payment.gateway_reference
        if not payment_id:
            return StatusResult(PaymentStatus.PENDING, "unknown", message="no paymentID")

        token = self._grant_token(gateway)
        body = self._post(
            f"{self._base_url(gateway)}/checkout/execute",
            json={"paymentID": payment_id},
            headers=self._auth_headers(gateway, token),
        )
        if body.get("transactionStatus"):
            return self._status_from(body)

        logger.info(
            "bkash execute for %s returned %s; querying status",
            payment.invoice_number,
            body.get("statusCode"),
        )
        return self._query(gateway, payment_id, token)

    def query_status(
        self,
        gateway: PaymentGateway,
        payment: PaymentContext,
    ) -> StatusResult:
        if not payment.gateway_reference:
            return StatusResult(PaymentStatus.PENDING, "unknown", message="no paymentID")
        token = self._grant_token(gateway)
        return self._query(gateway, payment.gateway_reference, token)

    def _query(self, gateway: PaymentGateway, payment_id: str, token: str) -> StatusResult:
        body = self._post(
            f"{self._base_url(gateway)}/checkout/payment/status",
            json={"paymentID": payment_id},
            headers=self._auth_headers(gateway, token),
        )
        return self._status_from(body)

    def _status_from(self, body: dict[str, Any]) -> StatusResult:
        provider_status = body.get("transactionStatus") or ""
        return StatusResult(
            status=map_status(STATUS_MAP, provider_status),
            provider_status=provider_status or "unknown",
            transaction_id=body.get("trxID") or None,
            message=body.get("statusMessage") or provider_status,
            paid_at=parse_provider_time(
                body.get("completedTime") or body.get("paymentExecuteTime")
            ),
            details={"bkash_payment_id": body.get("paymentID")} if body.get("paymentID") else {},
            invoice_number=body.get("merchantInvoiceNumber") or None,
            amount=parse_provider_amount(body.get("amount"), self.code),
        )

    def charge_recurring(
        self, gateway: PaymentGateway, request: ChargeRequest
    ) -> ChargeResult:
        """Charge against a tokenized agreement (agreementID on file)."""
        if not request.payment_method_token:
            return ChargeResult(
                success=False,
                status=PaymentStatus.FAILED,
                message="No bKash agreement on file",
            )

        token = self._grant_token(gateway)
        headers = self._auth_headers(gateway, token)
        created = self._post(
            f"{self._base_url(gateway)}/checkout/create",
            json={
                "mode": "0001",
                "agreementID": request.payment_method_token,
                "payerReference": request.profile_id,
                "callbackURL": gateway.callback_url,
                "amount": _money(request.amount),
                "currency": request.currency,
                "intent": "sale",
                "merchantInvoiceNumber": request.invoice_number,
            },
            headers=headers,
        )
        payment_id = created.get("paymentID")
        if not payment_id:
            return ChargeResult(
                success=False,
                status=PaymentStatus.FAILED,
                message=created.get("statusMessage") or "bKash rejected the charge",
            )

        executed = self._post(
            f"{self._base_url(gateway)}/checkout/execute",
            json={"paymentID": payment_id},
            headers=headers,
        )
        result = self._status_from(executed)
        return ChargeResult(
            success=result.status is PaymentStatus.COMPLETED,
            status=result.status,
            transaction_id=result.transaction_id,
            reference=payment_id,
            message=result.message,
            details={"bkash_payment_id": payment_id, "provider_status": result.provider_status},
        )

    def refund(self, gateway: PaymentGateway, request: RefundRequest) -> RefundResponse:
        token = self._grant_token(gateway)
        body = self._post(
            f"{self._base_url(gateway)}/checkout/payment/refund",
            json={
                "paymentID": request.payment.gateway_reference,
                "trxID": request.payment.transaction_id,
                "amount": _money(request.amount),
                "reason": (request.reason or "Refund")[:255],
                "sku": request.refund_reference,
            },
            headers=self._auth_headers(gateway, token),
        )
        return self._refund_from(body)

    def query_refund(
        self, gateway: PaymentGateway, request: RefundRequest
    ) -> RefundResponse:
        # Same endpoint without an amount returns the refund record.
        token = self._grant_token(gateway)
        body = self._post(
            f"{self._base_url(gateway)}/checkout/payment/refund",
            json={
                "paymentID": request.payment.gateway_reference,
                "trxID": request.payment.transaction_id,
                "sku": request.refund_reference,
            },
            headers=self._auth_headers(gateway, token),
        )
        if not _is_same_refund(body, request):
            # A payment can carry several refunds; never settle ours from another.
            logger.warning(
                "bkash refund query for %s returned a different refund record",
                request.refund_reference,
            )
            return RefundResponse(
                status=RefundStatus.PENDING,
                message="Provider returned a different refund record",
                details={"provider_status": body.get("transactionStatus")},
            )
        return self._refund_from(body)

    def _refund_from(self, body: dict[str, Any]) -> RefundResponse:
        provider_status = body.get("transactionStatus")
        if not provider_status and body.get("statusCode") not in (None, SUCCESS_CODE):
            return RefundResponse(
                status=RefundStatus.FAILED,
                message=body.get("statusMessage") or f"bKash error {body.get('statusCode')}",
                details={"status_code": body.get("statusCode")},
            )
        return RefundResponse(
            status=map_refund_status(REFUND_STATUS_MAP, provider_status),
            refund_transaction_id=body.get("refundTrxID") or None,
            message=body.get("statusMessage") or provider_status or "",
            details={"provider_status": provider_status},
        )


def _is_same_refund(body: dict[str, Any], request: RefundRequest) -> bool:
    """The refund record names our reference or our known refund transaction."""
    sku = body.get("sku")
    if sku:
        return sku == request.refund_reference
    refund_trx = body.get("refundTrxID")
    return bool(
        refund_trx
        and request.refund_transaction_id
        and refund_trx == request.refund_transaction_id
    )
