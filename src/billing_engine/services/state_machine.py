"""Payment state machine with transition validation.

The state machine is the only code that writes ``payment_status`` and the
settlement fields that go with it. Services lock the payment row, then
call one of the ``complete``/``fail``/``move_to`` helpers.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from billing_engine.exceptions import AlreadyProcessedError, InvalidTransitionError
from billing_engine.models.base import utcnow
from billing_engine.models.enums import PaymentStatus

if TYPE_CHECKING:
    from billing_engine.models import Payment


class PaymentStateMachine:
    """State machine for payment status transitions.

    Allowed transitions:
    - pending → processing
    - pending | processing → completed | failed | cancelled | expired

    completed, failed, cancelled, expired (and legacy refunded) are terminal.
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        PaymentStatus.PENDING: [
            PaymentStatus.PROCESSING,
            PaymentStatus.COMPLETED,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
            PaymentStatus.EXPIRED,
        ],
        PaymentStatus.PROCESSING: [
            PaymentStatus.COMPLETED,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
            PaymentStatus.EXPIRED,
        ],
        PaymentStatus.COMPLETED: [],
        PaymentStatus.FAILED: [],
        PaymentStatus.CANCELLED: [],
        PaymentStatus.EXPIRED: [],
        PaymentStatus.REFUNDED: [],
    }

    TERMINAL = frozenset(
        {
            PaymentStatus.COMPLETED,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
            PaymentStatus.EXPIRED,
            PaymentStatus.REFUNDED,
        }
    )

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return PaymentStatus(status) in cls.TERMINAL

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(PaymentStatus(from_status), [])
        return PaymentStatus(to_status) in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition.

        Raises:
            AlreadyProcessedError: from_status is terminal
            InvalidTransitionError: the table does not allow the move
        """
        if cls.is_terminal(from_status):
            raise AlreadyProcessedError(
                PaymentStatus(from_status).value, PaymentStatus(to_status).value
            )
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(
                PaymentStatus(from_status).value, PaymentStatus(to_status).value
            )

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        return [s.value for s in cls.VALID_TRANSITIONS.get(PaymentStatus(current_status), [])]

    @classmethod
    def move_to(
        cls,
        payment: Payment,
        to_status: PaymentStatus | str,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Apply a non-settling transition (processing, cancelled, expired)."""
        to_status = PaymentStatus(to_status)
        if to_status in (PaymentStatus.COMPLETED, PaymentStatus.FAILED):
            raise ValueError(f"use complete()/fail() to move to {to_status.value}")
        cls.validate_transition(payment.payment_status, to_status)
        payment.payment_status = to_status.value
        if to_status in cls.TERMINAL:
            cls._settle_unpaid(payment)
        payment.merge_details(details)

    @classmethod
    def complete(
        cls,
        payment: Payment,
        *,
        transaction_id: str | None,
        paid_at: datetime | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Mark the payment fully paid."""
        cls.validate_transition(payment.payment_status, PaymentStatus.COMPLETED)
        payment.payment_status = PaymentStatus.COMPLETED.value
        payment.paid_amount = payment.total_amount
        payment.due_amount = Decimal("0.00")
        payment.payment_date = paid_at or utcnow()
        payment.failure_reason = None
        if transaction_id:
            payment.transaction_id = transaction_id
        payment.merge_details(details)

    @classmethod
    def fail(
        cls,
        payment: Payment,
        *,
        reason: str,
        transaction_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Mark the payment failed with a reason."""
        cls.validate_transition(payment.payment_status, PaymentStatus.FAILED)
        payment.payment_status = PaymentStatus.FAILED.value
        payment.failure_reason = reason
        if transaction_id:
            payment.transaction_id = transaction_id
        cls._settle_unpaid(payment)
        payment.merge_details({**(details or {}), "failure_reason": reason})

    @staticmethod
    def _settle_unpaid(payment: Payment) -> None:
        # No money moved: paid + due must still equal total.
        payment.paid_amount = Decimal("0.00")
        payment.due_amount = payment.total_amount
