"""Pydantic schemas for API responses."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: datetime
    database: str


class PaymentCallbackResponse(BaseModel):
    """State of a payment after a gateway callback was reconciled."""

    model_config = ConfigDict(from_attributes=True)

    invoice_number: str
    payment_status: str
    refund_status: str
    payment_method: str | None = None
    transaction_id: str | None = None
    total_amount: Decimal
    paid_amount: Decimal
    currency: str
    payment_date: datetime | None = None
    failure_reason: str | None = None


class RefundCallbackResponse(BaseModel):
    """State of a refund after a gateway refund notification."""

    model_config = ConfigDict(from_attributes=True)

    refund_reference: str
    status: str
    amount: Decimal
    currency: str
    transaction_id: str | None = None
    processed_at: datetime | None = None


class ErrorResponse(BaseModel):
    """Schema for error response."""

    detail: str
    code: str | None = None
    context: dict[str, Any] | None = None
