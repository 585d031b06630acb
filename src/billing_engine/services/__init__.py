"""Billing engine services."""

from billing_engine.services.payment_service import InitResult, PaymentService, VerificationSummary
from billing_engine.services.recurring_service import (
    BillingRunResult,
    OutcomeStatus,
    ProfileOutcome,
    RecurringBillingService,
)
from billing_engine.services.refund_service import RefundResult, RefundService, RefundSweepSummary
from billing_engine.services.state_machine import PaymentStateMachine

__all__ = [
    "PaymentStateMachine",
    "PaymentService",
    "InitResult",
    "VerificationSummary",
    "RecurringBillingService",
    "BillingRunResult",
    "OutcomeStatus",
    "ProfileOutcome",
    "RefundService",
    "RefundResult",
    "RefundSweepSummary",
]
