"""ORM models for the billing engine."""

from billing_engine.models.base import Base, utcnow
from billing_engine.models.enums import (
    PAYABLE_DESCRIPTIONS,
    BillingPeriod,
    GatewayType,
    PayableKind,
    PaymentRefundStatus,
    PaymentStatus,
    ProfileStatus,
    RefundStatus,
)
from billing_engine.models.gateway import (
    OFFLINE_GATEWAY_CODES,
    PaymentGateway,
    normalize_gateway_code,
)
from billing_engine.models.payment import (
    LIVE_REFUND_STATUSES,
    Payment,
    Refund,
    generate_invoice_number,
    live_refund_total,
)
from billing_engine.models.recurring import RecurringPaymentProfile, generate_profile_id

__all__ = [
    "Base",
    "utcnow",
    # Enums
    "BillingPeriod",
    "GatewayType",
    "PayableKind",
    "PAYABLE_DESCRIPTIONS",
    "PaymentRefundStatus",
    "PaymentStatus",
    "ProfileStatus",
    "RefundStatus",
    # Gateways
    "OFFLINE_GATEWAY_CODES",
    "PaymentGateway",
    "normalize_gateway_code",
    # Payments
    "LIVE_REFUND_STATUSES",
    "Payment",
    "Refund",
    "generate_invoice_number",
    "live_refund_total",
    # Recurring
    "RecurringPaymentProfile",
    "generate_profile_id",
]
