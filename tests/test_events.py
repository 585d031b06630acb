"""Tests for domain events and the event emitter.

Tests verify:
1. Events are immutable and serializable
2. The emitter routes by type and by category
3. Batches deliver only when the block succeeds
4. Handler errors are isolated
"""

import json
from dataclasses import FrozenInstanceError
from datetime import datetime
from decimal import Decimal
from uuid import uuid4

import pytest

from billing_engine.events import (
    EventCategory,
    EventEmitter,
    EventMetadata,
    PaymentFailed,
    PaymentProcessed,
    RefundCompleted,
)


def _processed(**overrides):
    values = {
        "metadata": EventMetadata.create(),
        "payment_id": 1,
        "invoice_number": "INV20250101-ABC123",
        "gateway": "bkash",
        "amount": Decimal("1050.00"),
        "currency": "BDT",
        "transaction_id": "BK123",
        "paid_at": datetime(2025, 1, 1, 10, 0),
        "payable_kind": "fee",
        "payable_id": 12,
        "user_id": 7,
    }
    values.update(overrides)
    return PaymentProcessed(**values)


def _refund_completed():
    return RefundCompleted(
        metadata=EventMetadata.create(),
        refund_id=3,
        payment_id=1,
        amount=Decimal("300.00"),
        currency="BDT",
        refund_transaction_id="RFD1",
        payment_refund_status="partially_refunded",
    )


class TestEventMetadata:
    def test_create_generates_ids(self):
        meta = EventMetadata.create()

        assert meta.event_id is not None
        assert meta.correlation_id is not None
        assert meta.causation_id is None
        assert meta.actor_type == "system"
        assert meta.source_service == "billing"

    def test_correlation_is_kept(self):
        correlation = uuid4()

        meta = EventMetadata.create(correlation_id=correlation, actor_type="callback")

        assert meta.correlation_id == correlation
        assert meta.actor_type == "callback"


class TestDomainEvent:
    def test_events_are_immutable(self):
        event = _processed()

        with pytest.raises(FrozenInstanceError):
            event.amount = Decimal("1")

    def test_to_dict_serializes_values(self):
        data = _processed().to_dict()

        assert data["event_type"] == "PaymentProcessed"
        assert data["category"] == "payment"
        assert data["amount"] == "1050.00"
        assert data["paid_at"] == "2025-01-01T10:00:00"
        assert isinstance(data["metadata"]["event_id"], str)

    def test_to_json_round_trips_through_json(self):
        data = json.loads(_refund_completed().to_json())

        assert data["category"] == "refund"
        assert data["payment_refund_status"] == "partially_refunded"


class TestEventEmitter:
    def test_type_handlers(self):
        emitter = EventEmitter()
        received = []
        emitter.on(PaymentProcessed, received.append)

        emitter.emit(_processed())
        emitter.emit(_refund_completed())

        assert [e.event_type for e in received] == ["PaymentProcessed"]

    def test_multiple_types(self):
        emitter = EventEmitter()
        received = []
        emitter.on([PaymentProcessed, PaymentFailed], received.append)

        emitter.emit(_processed())
        emitter.emit(
            PaymentFailed(
                metadata=EventMetadata.create(),
                payment_id=2,
                invoice_number="INV2",
                gateway="nagad",
                amount=Decimal("10"),
                currency="BDT",
                failure_reason="Cancelled",
                provider_status="Aborted",
            )
        )

        assert len(received) == 2

    def test_category_handlers(self):
        emitter = EventEmitter()
        refunds = []
        emitter.on_category(EventCategory.REFUND, refunds.append)

        emitter.emit(_processed())
        emitter.emit(_refund_completed())

        assert [e.event_type for e in refunds] == ["RefundCompleted"]

    def test_off_unregisters(self):
        emitter = EventEmitter()
        received = []
        handler = received.append
        emitter.on_all(handler)
        emitter.off(handler)

        emitter.emit(_processed())

        assert received == []

    def test_handler_errors_are_isolated(self):
        """A failing handler does not stop the others."""
        emitter = EventEmitter()
        received = []

        def broken(event):
            raise RuntimeError("mail server down")

        emitter.on_all(broken)
        emitter.on_all(received.append)

        errors = emitter.emit(_processed())

        assert len(received) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], RuntimeError)


class TestEventBatch:
    def test_batch_delivers_on_exit(self):
        emitter = EventEmitter()
        received = []
        emitter.on_all(received.append)

        with emitter.batch() as batch:
            batch.add(_processed())
            emitter.emit(_refund_completed())
            assert received == []

        assert len(received) == 2
        assert batch.errors == []

    def test_batch_is_discarded_on_exception(self):
        emitter = EventEmitter()
        received = []
        emitter.on_all(received.append)

        with pytest.raises(ValueError):
            with emitter.batch():
                emitter.emit(_processed())
                raise ValueError("rollback")

        assert received == []
        emitter.emit(_processed())
        assert len(received) == 1
