"""In-memory gateway for local development and testing.

Behaves like a provider with a checkout page, unattended token charges and
refunds, all backed by dictionaries. The ``simulate_*`` helpers change what
the "provider" will answer on the next query.
"""

from __future__ import annotations

import itertools
import threading
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from billing_engine.exceptions import GatewayCommunicationError
from billing_engine.gateways.base import (
    CallbackReference,
    ChargeRequest,
    ChargeResult,
    GatewayCapabilities,
    InitResponse,
    PaymentContext,
    RefundCallbackReference,
    RefundRequest,
    RefundResponse,
    StatusResult,
)
from billing_engine.models.enums import PaymentStatus, RefundStatus

if TYPE_CHECKING:
    from billing_engine.models import PaymentGateway


class StubGatewayClient:
    """Stub provider for development.

    Args:
        code: Gateway code this stub is registered under
        auto_complete: Checkout sessions report completed immediately
        declined_tokens: Payment-method tokens whose charges are declined
    """

    def __init__(
        self,
        code: str = "stub",
        *,
        auto_complete: bool = False,
        declined_tokens: set[str] | None = None,
    ) -> None:
        self.code = code
        self.auto_complete = auto_complete
        self.declined_tokens = set(declined_tokens or ())
        self._sessions: dict[str, dict[str, Any]] = {}
        self._charges: list[ChargeRequest] = []
        self._refunds: dict[str, dict[str, Any]] = {}
        self._fail_next: list[str] = []
        self._decline_refunds = False
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def capabilities(self) -> GatewayCapabilities:
        return GatewayCapabilities(recurring=True, refunds=True)

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def initialize(
        self,
        gateway: PaymentGateway,
        payment: PaymentContext,
        options: dict[str, Any],
    ) -> InitResponse:
        self._maybe_fail("initialize")
        with self._lock:
            session_id = f"STUB-{next(self._ids):06d}"
            self._sessions[session_id] = {
                "invoice_number": payment.invoice_number,
                "amount": Decimal(payment.amount),
                "status": "completed" if self.auto_complete else "initiated",
                "trx_id": f"TRX{session_id[5:]}" if self.auto_complete else None,
            }
        return InitResponse(
            correlation_id=session_id,
            redirect_url=f"https://stub.invalid/checkout/{session_id}",
            details={"stub_session_id": session_id},
        )

    def callback_reference(self, payload: dict[str, Any]) -> CallbackReference:
        return CallbackReference(
            invoice_number=payload.get("invoice_number") or None,
            correlation_id=payload.get("session_id") or None,
        )

    def confirm_callback(
        self,
        gateway: PaymentGateway,
        payment: PaymentContext,
        payload: dict[str, Any],
    ) -> StatusResult:
        # Deliberately ignores anything the payload claims about status.
        return self.query_status(gateway, payment)

    def query_status(
        self,
        gateway: PaymentGateway,
        payment: PaymentContext,
    ) -> StatusResult:
        self._maybe_fail("query_status")
        session = self._sessions.get(payment.gateway_reference or "")
        if session is None:
            return StatusResult(PaymentStatus.PENDING, "unknown", message="session not found")
        status = {
            "initiated": PaymentStatus.PENDING,
            "processing": PaymentStatus.PROCESSING,
            "completed": PaymentStatus.COMPLETED,
            "failed": PaymentStatus.FAILED,
            "cancelled": PaymentStatus.CANCELLED,
            "expired": PaymentStatus.EXPIRED,
        }.get(session["status"], PaymentStatus.PENDING)
        return StatusResult(
            status=status,
            provider_status=session["status"],
            transaction_id=session["trx_id"],
            message=session.get("message", session["status"]),
            invoice_number=session["invoice_number"],
            amount=session["amount"],
        )

    # ------------------------------------------------------------------
    # Recurring
    # ------------------------------------------------------------------

    def charge_recurring(
        self, gateway: PaymentGateway, request: ChargeRequest
    ) -> ChargeResult:
        self._maybe_fail("charge_recurring")
        with self._lock:
            self._charges.append(request)
            number = next(self._ids)
        if not request.payment_method_token or request.payment_method_token in self.declined_tokens:
            return ChargeResult(
                success=False,
                status=PaymentStatus.FAILED,
                message="Card declined",
                details={"decline_code": "do_not_honor"},
            )
        return ChargeResult(
            success=True,
            status=PaymentStatus.COMPLETED,
            transaction_id=f"CHG{number:06d}",
            message="Approved",
        )

    @property
    def charges(self) -> list[ChargeRequest]:
        """Every charge request received, in order."""
        return list(self._charges)

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    def refund(self, gateway: PaymentGateway, request: RefundRequest) -> RefundResponse:
        self._maybe_fail("refund")
        if self._decline_refunds:
            return RefundResponse(status=RefundStatus.FAILED, message="Refund declined")
        with self._lock:
            refund_id = f"RFD{next(self._ids):06d}"
            self._refunds[request.refund_reference] = {
                "refund_id": refund_id,
                "amount": Decimal(request.amount),
                "status": RefundStatus.COMPLETED,
            }
        return RefundResponse(
            status=RefundStatus.COMPLETED,
            refund_transaction_id=refund_id,
            message="Refunded",
        )

    def query_refund(
        self, gateway: PaymentGateway, request: RefundRequest
    ) -> RefundResponse:
        self._maybe_fail("query_refund")
        record = self._refunds.get(request.refund_reference)
        if record is None:
            return RefundResponse(status=RefundStatus.PENDING, message="refund not found")
        return RefundResponse(
            status=record["status"],
            refund_transaction_id=record["refund_id"],
            message=record["status"].value,
        )

    def refund_callback_reference(
        self, payload: dict[str, Any]
    ) -> RefundCallbackReference:
        return RefundCallbackReference(
            refund_reference=payload.get("refund_reference") or None,
            refund_transaction_id=payload.get("refund_id") or None,
        )

    # ------------------------------------------------------------------
    # Test controls
    # ------------------------------------------------------------------

    def simulate_payment(
        self,
        session_id: str,
        status: str,
        *,
        trx_id: str | None = None,
        message: str | None = None,
        amount: Decimal | None = None,
    ) -> None:
        """Set what the provider reports for a checkout session."""
        session = self._sessions[session_id]
        if amount is not None:
            session["amount"] = Decimal(amount)
        session["status"] = status
        session["trx_id"] = trx_id or session["trx_id"]
        if message:
            session["message"] = message

    def simulate_refund(
        self,
        refund_reference: str,
        status: RefundStatus,
        refund_id: str | None = None,
    ) -> None:
        """Record a refund as the provider sees it (e.g. one whose reply was lost)."""
        self._refunds[refund_reference] = {
            "refund_id": refund_id or f"RFD{next(self._ids):06d}",
            "amount": Decimal("0"),
            "status": status,
        }

    def decline_refunds(self, decline: bool = True) -> None:
        self._decline_refunds = decline

    def fail_next(self, operation: str) -> None:
        """Make the next call of ``operation`` raise a communication error."""
        self._fail_next.append(operation)

    def _maybe_fail(self, operation: str) -> None:
        with self._lock:
            if operation in self._fail_next:
                self._fail_next.remove(operation)
                raise GatewayCommunicationError(self.code, f"{operation} timed out")
