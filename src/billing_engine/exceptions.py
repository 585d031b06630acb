"""Typed errors raised by the billing engine.

Every error carries a stable machine-readable ``code`` so that callers
(API routes, CLI, schedulers) can map it without string matching.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any


class BillingError(Exception):
    """Base class for all billing engine errors."""

    code = "billing_error"

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API and CLI output."""
        data: dict[str, Any] = {"code": self.code, "message": self.message}
        for key, value in self.details.items():
            data[key] = str(value) if isinstance(value, Decimal) else value
        return data


class GatewayNotFoundError(BillingError):
    """No gateway is configured under the requested code."""

    code = "gateway_not_found"

    def __init__(self, gateway_code: str):
        self.gateway_code = gateway_code
        super().__init__(f"Payment gateway '{gateway_code}' not found", gateway=gateway_code)


class GatewayInactiveError(BillingError):
    """The gateway exists but is switched off."""

    code = "gateway_inactive"

    def __init__(self, gateway_code: str):
        self.gateway_code = gateway_code
        super().__init__(f"Payment gateway '{gateway_code}' is not active", gateway=gateway_code)


class GatewayMisconfiguredError(BillingError):
    """An online gateway is missing credentials or endpoints."""

    code = "gateway_misconfigured"

    def __init__(self, gateway_code: str, reason: str | None = None):
        self.gateway_code = gateway_code
        msg = f"Payment gateway '{gateway_code}' is not properly configured"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, gateway=gateway_code)


class GatewayCommunicationError(BillingError):
    """Transport failure, timeout, bad status or malformed provider response.

    Always retryable: the remote side may or may not have acted, so the
    caller must re-verify before concluding failure.
    """

    code = "gateway_communication_error"
    retryable = True

    def __init__(
        self,
        gateway_code: str,
        message: str,
        *,
        status_code: int | None = None,
    ):
        self.gateway_code = gateway_code
        self.status_code = status_code
        super().__init__(
            f"{gateway_code}: {message}",
            gateway=gateway_code,
            status_code=status_code,
            retryable=True,
        )


class UnsupportedOperationError(BillingError):
    """The gateway adapter does not implement the requested operation."""

    code = "unsupported_operation"

    def __init__(self, gateway_code: str, operation: str):
        self.gateway_code = gateway_code
        self.operation = operation
        super().__init__(
            f"Gateway '{gateway_code}' does not support {operation}",
            gateway=gateway_code,
            operation=operation,
        )


class PaymentNotFoundError(BillingError):
    """No payment matches the callback or lookup identifiers."""

    code = "payment_not_found"


class InvalidAmountError(BillingError):
    """An amount is non-positive or outside the gateway limits."""

    code = "invalid_amount"


class NotRefundableError(BillingError):
    """The payment is not completed or its gateway cannot refund."""

    code = "not_refundable"


class AmountExceedsLimitError(BillingError):
    """A refund would exceed the remaining refundable balance."""

    code = "amount_exceeds_limit"

    def __init__(self, requested: Decimal, max_amount: Decimal):
        self.requested = requested
        self.max_amount = max_amount
        super().__init__(
            "Refund amount exceeds refundable amount",
            requested=requested,
            max_amount=max_amount,
        )


class InvalidTransitionError(BillingError):
    """A payment status change not allowed by the transition table."""

    code = "invalid_transition"

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, from_status=from_status, to_status=to_status)


class AlreadyProcessedError(InvalidTransitionError):
    """The payment already reached a terminal status."""

    code = "already_processed"

    def __init__(self, from_status: str, to_status: str | None = None):
        super().__init__(
            from_status,
            to_status or from_status,
            reason="payment already processed",
        )


class ProfileSuspendedError(BillingError):
    """The recurring profile is suspended and cannot be charged."""

    code = "profile_suspended"


class RefundNotCancellableError(BillingError):
    """Only pending refunds can be cancelled."""

    code = "refund_not_cancellable"

    def __init__(self, refund_id: int, status: str):
        self.refund_id = refund_id
        self.status = status
        super().__init__(
            f"Refund {refund_id} is {status}; only pending refunds can be cancelled",
            refund_id=refund_id,
            status=status,
        )


class RefundNotFoundError(BillingError):
    """No refund matches the callback identifiers."""

    code = "refund_not_found"


class ProfileNotFoundError(BillingError):
    """No recurring profile matches the given id."""

    code = "profile_not_found"


class ProviderMismatchError(BillingError):
    """The provider answered about a different invoice or amount.

    The result is discarded and the payment is left as it was.
    """

    code = "provider_mismatch"
