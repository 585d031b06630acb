"""Base protocol and types for payment gateway adapters.

All gateway adapters must implement the GatewayClient protocol. The payment,
recurring and refund services talk to providers only through it and only
ever see the post-mapping results defined here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Protocol

from billing_engine.models.enums import PaymentStatus, RefundStatus

if TYPE_CHECKING:
    from billing_engine.models import Payment, PaymentGateway

# Keys every adapter-confirmed status writes into Payment.payment_details.
PROVIDER_TRANSACTION_ID = "provider_transaction_id"
PROVIDER_STATUS = "provider_status"


@dataclass(frozen=True)
class GatewayCapabilities:
    """Operations a gateway adapter supports."""

    initialize: bool = True
    callbacks: bool = True
    status_query: bool = True
    recurring: bool = False
    refunds: bool = False


@dataclass(frozen=True)
class PaymentContext:
    """Read-only view of a payment handed to adapters."""

    payment_id: int
    invoice_number: str
    amount: Decimal
    currency: str
    description: str
    gateway_reference: str | None = None
    transaction_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payment(cls, payment: Payment) -> PaymentContext:
        return cls(
            payment_id=payment.id,
            invoice_number=payment.invoice_number,
            amount=payment.total_amount,
            currency=payment.currency,
            description=payment.description,
            gateway_reference=payment.gateway_reference,
            transaction_id=payment.transaction_id,
            details=dict(payment.payment_details or {}),
        )


@dataclass(frozen=True)
class InitResponse:
    """Result of a provider checkout handshake."""

    correlation_id: str | None
    redirect_url: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CallbackReference:
    """Identifiers pulled from an inbound callback, used only for lookup."""

    invoice_number: str | None = None
    correlation_id: str | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.invoice_number or self.correlation_id)


@dataclass(frozen=True)
class StatusResult:
    """Authoritative provider status, already mapped to PaymentStatus."""

    status: PaymentStatus
    provider_status: str
    transaction_id: str | None = None
    message: str = ""
    paid_at: datetime | None = None
    details: dict[str, Any] = field(default_factory=dict)
    # What the provider says the result is about, when it says so.
    invoice_number: str | None = None
    amount: Decimal | None = None

    def mismatch(self, payment: PaymentContext) -> str | None:
        """Describe how this result disagrees with ``payment``, if it does."""
        if self.invoice_number and self.invoice_number != payment.invoice_number:
            return f"provider result is for invoice {self.invoice_number}"
        if self.amount is not None and self.amount != Decimal(payment.amount):
            return f"provider result is for amount {self.amount}"
        return None

    def audit_details(self) -> dict[str, Any]:
        """Details to merge into the payment, including the contract keys."""
        data = dict(self.details)
        data[PROVIDER_STATUS] = self.provider_status
        if self.transaction_id:
            data[PROVIDER_TRANSACTION_ID] = self.transaction_id
        return data


@dataclass(frozen=True)
class ChargeRequest:
    """Unattended charge against a stored payment method."""

    profile_id: str
    invoice_number: str
    amount: Decimal
    currency: str
    payment_method_token: str | None
    description: str
    gateway_profile_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ChargeResult:
    """Outcome of a recurring charge."""

    success: bool
    status: PaymentStatus
    transaction_id: str | None = None
    reference: str | None = None
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RefundRequest:
    """Refund of part or all of a settled payment."""

    refund_reference: str
    amount: Decimal
    currency: str
    reason: str | None
    payment: PaymentContext
    refund_transaction_id: str | None = None


@dataclass(frozen=True)
class RefundResponse:
    """Provider view of a refund, mapped to RefundStatus."""

    status: RefundStatus
    refund_transaction_id: str | None = None
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status is RefundStatus.COMPLETED


@dataclass(frozen=True)
class RefundCallbackReference:
    """Identifiers pulled from a refund callback."""

    refund_reference: str | None = None
    refund_transaction_id: str | None = None


def map_status(
    status_map: dict[str, PaymentStatus], provider_status: str | None
) -> PaymentStatus:
    """Map a provider status; anything unknown is pending, never success."""
    if not provider_status:
        return PaymentStatus.PENDING
    return status_map.get(provider_status.strip().lower(), PaymentStatus.PENDING)


def map_refund_status(
    status_map: dict[str, RefundStatus], provider_status: str | None
) -> RefundStatus:
    """Map a provider refund status; unknown stays pending."""
    if not provider_status:
        return RefundStatus.PENDING
    return status_map.get(provider_status.strip().lower(), RefundStatus.PENDING)


class GatewayClient(Protocol):
    """Protocol for payment gateway adapters.

    One adapter per provider, registered by gateway code. Adapters receive
    the PaymentGateway row on every call so credentials are never cached.
    Adapters never write to the database; they return results and the
    services apply them.
    """

    code: str

    def capabilities(self) -> GatewayCapabilities:
        """Return the operations supported by this adapter."""
        ...

    def initialize(
        self,
        gateway: PaymentGateway,
        payment: PaymentContext,
        options: dict[str, Any],
    ) -> InitResponse:
        """Open a checkout session with the provider.

        Args:
            gateway: Current gateway configuration (credentials, URLs)
            payment: The payment being paid
            options: Caller options (e.g. callback overrides, client IP)

        Returns:
            InitResponse with the provider correlation id and redirect URL.

        Raises:
            GatewayCommunicationError: transport/HTTP/JSON failure
        """
        ...

    def callback_reference(self, payload: dict[str, Any]) -> CallbackReference:
        """Extract lookup identifiers from a callback payload.

        The payload is untrusted; nothing but these identifiers is read.
        """
        ...

    def confirm_callback(
        self,
        gateway: PaymentGateway,
        payment: PaymentContext,
        payload: dict[str, Any],
    ) -> StatusResult:
        """Ask the provider for the authoritative result a callback announced.

        Only the payment's stored provider reference is queried. Without one
        the result is pending; identifiers in the payload are never used.
        """
        ...

    def query_status(
        self,
        gateway: PaymentGateway,
        payment: PaymentContext,
    ) -> StatusResult:
        """Poll the provider for the payment's current status."""
        ...

    def charge_recurring(
        self,
        gateway: PaymentGateway,
        request: ChargeRequest,
    ) -> ChargeResult:
        """Charge a stored payment method without user interaction.

        Raises:
            UnsupportedOperationError: adapter cannot charge unattended
            GatewayCommunicationError: transport/HTTP/JSON failure
        """
        ...

    def refund(
        self,
        gateway: PaymentGateway,
        request: RefundRequest,
    ) -> RefundResponse:
        """Refund part or all of a completed payment."""
        ...

    def query_refund(
        self,
        gateway: PaymentGateway,
        request: RefundRequest,
    ) -> RefundResponse:
        """Ask the provider for the state of a previously requested refund."""
        ...

    def refund_callback_reference(
        self, payload: dict[str, Any]
    ) -> RefundCallbackReference:
        """Extract lookup identifiers from a refund callback payload."""
        ...
