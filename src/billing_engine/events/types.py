"""Domain event types for billing operations.

All events are:
- Immutable (frozen dataclasses)
- Typed with explicit payloads
- Traceable via metadata
- Serializable for delivery to the notification subsystem
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from billing_engine.models.base import utcnow


class EventCategory(str, Enum):
    """Event categories for routing and filtering."""

    PAYMENT = "payment"
    RECURRING = "recurring"
    REFUND = "refund"


@dataclass(frozen=True)
class EventMetadata:
    """Metadata attached to every domain event."""

    event_id: UUID
    timestamp: datetime
    correlation_id: UUID  # Links related events
    causation_id: UUID | None  # Event that caused this one
    actor_id: str | None  # Operator or system that triggered
    actor_type: str  # 'operator', 'system', 'scheduler', 'callback'
    source_service: str  # Service that emitted
    version: int = 1  # Schema version for evolution

    @classmethod
    def create(
        cls,
        correlation_id: UUID | None = None,
        causation_id: UUID | None = None,
        actor_id: str | None = None,
        actor_type: str = "system",
        source_service: str = "billing",
    ) -> EventMetadata:
        """Create metadata with auto-generated fields."""
        return cls(
            event_id=uuid4(),
            timestamp=utcnow(),
            correlation_id=correlation_id or uuid4(),
            causation_id=causation_id,
            actor_id=actor_id,
            actor_type=actor_type,
            source_service=source_service,
        )


@dataclass(frozen=True)
class DomainEvent:
    """Base class for all domain events."""

    metadata: EventMetadata

    @property
    def event_type(self) -> str:
        """Event type name for routing."""
        return self.__class__.__name__

    @property
    def category(self) -> EventCategory:
        """Event category for filtering."""
        raise NotImplementedError("Subclasses must define category")

    def to_dict(self) -> dict[str, Any]:
        """Serialize event to dictionary."""
        data = _serialize_dict(asdict(self))
        data["event_type"] = self.event_type
        data["category"] = self.category.value
        return data

    def to_json(self) -> str:
        """Serialize event to JSON string."""
        return json.dumps(self.to_dict(), default=str)


def _serialize_dict(obj: Any) -> Any:
    """Recursively serialize objects for JSON compatibility."""
    if isinstance(obj, dict):
        return {k: _serialize_dict(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_serialize_dict(v) for v in obj]
    elif isinstance(obj, UUID):
        return str(obj)
    elif isinstance(obj, (datetime, date)):
        return obj.isoformat()
    elif isinstance(obj, Decimal):
        return str(obj)
    elif isinstance(obj, Enum):
        return obj.value
    return obj


# =============================================================================
# Payment Events
# =============================================================================


@dataclass(frozen=True)
class PaymentProcessed(DomainEvent):
    """A payment was newly confirmed as completed by its provider."""

    payment_id: int
    invoice_number: str
    gateway: str | None
    amount: Decimal
    currency: str
    transaction_id: str | None
    paid_at: datetime | None
    payable_kind: str
    payable_id: int | None
    user_id: int | None

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYMENT


@dataclass(frozen=True)
class PaymentFailed(DomainEvent):
    """A payment was confirmed failed by its provider."""

    payment_id: int
    invoice_number: str
    gateway: str | None
    amount: Decimal
    currency: str
    failure_reason: str
    provider_status: str | None

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYMENT


# =============================================================================
# Recurring Events
# =============================================================================


@dataclass(frozen=True)
class RecurringChargeSucceeded(DomainEvent):
    """A recurring profile was charged for a billing cycle."""

    profile_id: str
    payment_id: int
    amount: Decimal
    currency: str
    billing_cycle_date: datetime
    next_billing_date: datetime

    @property
    def category(self) -> EventCategory:
        return EventCategory.RECURRING


@dataclass(frozen=True)
class RecurringChargeFailed(DomainEvent):
    """A recurring charge was declined or could not be completed."""

    profile_id: str
    amount: Decimal
    currency: str
    failure_reason: str
    failure_count: int
    retryable: bool
    payment_id: int | None = None

    @property
    def category(self) -> EventCategory:
        return EventCategory.RECURRING


@dataclass(frozen=True)
class ProfileSuspended(DomainEvent):
    """A recurring profile hit its failure limit and was suspended."""

    profile_id: str
    failure_count: int
    max_failures: int
    reason: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.RECURRING


# =============================================================================
# Refund Events
# =============================================================================


@dataclass(frozen=True)
class RefundCompleted(DomainEvent):
    """The provider confirmed a refund."""

    refund_id: int
    payment_id: int
    amount: Decimal
    currency: str
    refund_transaction_id: str | None
    payment_refund_status: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.REFUND


@dataclass(frozen=True)
class RefundFailed(DomainEvent):
    """A refund attempt failed."""

    refund_id: int
    payment_id: int
    amount: Decimal
    currency: str
    error: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.REFUND


@dataclass(frozen=True)
class RefundCancelled(DomainEvent):
    """An operator cancelled a pending refund."""

    refund_id: int
    payment_id: int
    amount: Decimal
    reason: str | None

    @property
    def category(self) -> EventCategory:
        return EventCategory.REFUND
