"""Domain events for billing operations.

Events are published after the owning transaction commits and are the
only channel through which the notification subsystem learns about
payments, recurring charges and refunds.
"""

from billing_engine.events.emitter import EventBatch, EventEmitter, EventHandler
from billing_engine.events.types import (
    DomainEvent,
    EventCategory,
    EventMetadata,
    PaymentFailed,
    PaymentProcessed,
    ProfileSuspended,
    RecurringChargeFailed,
    RecurringChargeSucceeded,
    RefundCancelled,
    RefundCompleted,
    RefundFailed,
)

__all__ = [
    # Base types
    "DomainEvent",
    "EventCategory",
    "EventMetadata",
    # Emitter
    "EventBatch",
    "EventEmitter",
    "EventHandler",
    # Payment events
    "PaymentFailed",
    "PaymentProcessed",
    # Recurring events
    "ProfileSuspended",
    "RecurringChargeFailed",
    "RecurringChargeSucceeded",
    # Refund events
    "RefundCancelled",
    "RefundCompleted",
    "RefundFailed",
]
