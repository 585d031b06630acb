"""Status and classification enums shared by models and services."""

from __future__ import annotations

from enum import Enum


class PaymentStatus(str, Enum):
    """Lifecycle status of a payment."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    # Legacy rows only; provider-side refunds are tracked on refund_status.
    REFUNDED = "refunded"


class PaymentRefundStatus(str, Enum):
    """Refund position of a payment, derived from its refunds."""

    NONE = "none"
    PARTIALLY_REFUNDED = "partially_refunded"
    FULLY_REFUNDED = "fully_refunded"


class RefundStatus(str, Enum):
    """Lifecycle status of a single refund."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ProfileStatus(str, Enum):
    """Recurring profile status."""

    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class BillingPeriod(str, Enum):
    """Unit of a recurring billing cadence."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class GatewayType(str, Enum):
    """Kind of payment channel."""

    BANK = "bank"
    MOBILE_FINANCIAL_SERVICE = "mobile_financial_service"
    ONLINE_PAYMENT = "online_payment"
    OTHER = "other"


class PayableKind(str, Enum):
    """What a payment pays for."""

    STUDENT_FEE = "student_fee"
    ADMISSION = "admission"
    RECURRING_SUBSCRIPTION = "recurring_subscription"
    OTHER = "other"


PAYABLE_DESCRIPTIONS: dict[PayableKind, str] = {
    PayableKind.STUDENT_FEE: "Student fee",
    PayableKind.ADMISSION: "Admission fee",
    PayableKind.RECURRING_SUBSCRIPTION: "Recurring subscription",
    PayableKind.OTHER: "Payment",
}


def sql_in_list(values: type[Enum]) -> str:
    """Render enum values for a CHECK ... IN (...) constraint."""
    return ", ".join(f"'{member.value}'" for member in values)  # type: ignore[attr-defined]
