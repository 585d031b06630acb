"""Payment and refund models."""

from __future__ import annotations

import secrets
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    select,
    text,
)
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from billing_engine.models.base import Base, SoftDeleteMixin, TimestampMixin, utcnow
from billing_engine.models.enums import (
    PAYABLE_DESCRIPTIONS,
    PayableKind,
    PaymentRefundStatus,
    PaymentStatus,
    RefundStatus,
    sql_in_list,
)

if TYPE_CHECKING:
    from billing_engine.models.recurring import RecurringPaymentProfile

ZERO = Decimal("0.00")
CENT = Decimal("0.01")

_LIVE_CYCLE_PAYMENT = text(
    "recurring_payment_profile_id IS NOT NULL "
    "AND billing_cycle_date IS NOT NULL "
    "AND payment_status IN ('pending', 'processing', 'completed')"
)


def generate_invoice_number(now: datetime | None = None) -> str:
    """INV + date + random suffix, e.g. INV20250101-3F9A1C."""
    stamp = (now or utcnow()).strftime("%Y%m%d")
    return f"INV{stamp}-{secrets.token_hex(3).upper()}"


class Payment(Base, TimestampMixin, SoftDeleteMixin):
    """A single attempt to collect money for a payable."""

    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    invoice_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    reference_number: Mapped[str | None] = mapped_column(String(128), nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    gateway_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)

    payable_kind: Mapped[str] = mapped_column(
        String(32), nullable=False, default=PayableKind.OTHER.value
    )
    payable_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recurring_payment_profile_id: Mapped[int | None] = mapped_column(
        ForeignKey("recurring_payment_profiles.id", ondelete="SET NULL"),
        nullable=True,
    )
    billing_cycle_date: Mapped[datetime | None] = mapped_column(nullable=True)

    amount: Mapped[Decimal] = mapped_column(nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    fine_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    tax_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total_amount: Mapped[Decimal] = mapped_column(nullable=False)
    paid_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    due_amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="BDT")

    payment_method: Mapped[str | None] = mapped_column(String(32), nullable=True)
    payment_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=PaymentStatus.PENDING.value
    )
    refund_status: Mapped[str] = mapped_column(
        String(24), nullable=False, default=PaymentRefundStatus.NONE.value
    )
    payment_date: Mapped[datetime | None] = mapped_column(nullable=True)
    due_date: Mapped[date | None] = mapped_column(nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    payment_details: Mapped[dict[str, Any]] = mapped_column(nullable=False, default=dict)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", nullable=False, default=dict
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_by: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        CheckConstraint(
            f"payment_status IN ({sql_in_list(PaymentStatus)})",
            name="payments_status_check",
        ),
        CheckConstraint(
            f"refund_status IN ({sql_in_list(PaymentRefundStatus)})",
            name="payments_refund_status_check",
        ),
        CheckConstraint(
            "amount >= 0 AND total_amount >= 0 AND paid_amount >= 0 AND due_amount >= 0",
            name="payments_amounts_non_negative",
        ),
        Index("ix_payments_gateway_reference", "payment_method", "gateway_reference"),
        Index("ix_payments_status_created", "payment_status", "created_at"),
        # One live (pending, processing or completed) payment per recurring billing cycle.
        Index(
            "uq_payments_recurring_cycle",
            "recurring_payment_profile_id",
            "billing_cycle_date",
            unique=True,
            postgresql_where=_LIVE_CYCLE_PAYMENT,
            sqlite_where=_LIVE_CYCLE_PAYMENT,
        ),
    )

    refunds: Mapped[list[Refund]] = relationship(
        back_populates="payment",
        order_by="Refund.id",
    )
    recurring_profile: Mapped[RecurringPaymentProfile | None] = relationship(
        back_populates="payments",
    )

    @classmethod
    def create(
        cls,
        *,
        amount: Decimal,
        currency: str = "BDT",
        discount_amount: Decimal = ZERO,
        fine_amount: Decimal = ZERO,
        tax_amount: Decimal = ZERO,
        payable_kind: PayableKind | str = PayableKind.OTHER,
        payable_id: int | None = None,
        user_id: int | None = None,
        invoice_number: str | None = None,
        due_date: date | None = None,
        notes: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Payment:
        """Build a pending payment with its totals computed."""
        amount = Decimal(amount)
        total = (
            amount - Decimal(discount_amount) + Decimal(fine_amount) + Decimal(tax_amount)
        ).quantize(CENT)
        if total < 0:
            raise ValueError("total_amount cannot be negative")
        return cls(
            invoice_number=invoice_number or generate_invoice_number(),
            payable_kind=PayableKind(payable_kind).value,
            payable_id=payable_id,
            user_id=user_id,
            amount=amount.quantize(CENT),
            discount_amount=Decimal(discount_amount).quantize(CENT),
            fine_amount=Decimal(fine_amount).quantize(CENT),
            tax_amount=Decimal(tax_amount).quantize(CENT),
            total_amount=total,
            paid_amount=ZERO,
            due_amount=total,
            currency=currency.upper(),
            payment_status=PaymentStatus.PENDING.value,
            refund_status=PaymentRefundStatus.NONE.value,
            due_date=due_date,
            notes=notes,
            payment_details={},
            metadata_json=dict(metadata or {}),
        )

    @property
    def status(self) -> PaymentStatus:
        return PaymentStatus(self.payment_status)

    @property
    def description(self) -> str:
        """Human-readable label for what is being paid."""
        return PAYABLE_DESCRIPTIONS.get(PayableKind(self.payable_kind), "Payment")

    @property
    def is_fully_paid(self) -> bool:
        return self.paid_amount >= self.total_amount

    def merge_details(self, details: dict[str, Any] | None) -> None:
        """Merge gateway correlation fields into payment_details.

        JSON columns do not track in-place mutation, so the bag is replaced.
        """
        if details:
            self.payment_details = {**(self.payment_details or {}), **details}

    def merge_metadata(self, metadata: dict[str, Any] | None) -> None:
        if metadata:
            self.metadata_json = {**(self.metadata_json or {}), **metadata}

    def __repr__(self) -> str:
        return (
            f"<Payment {self.invoice_number} {self.payment_status} "
            f"{self.total_amount} {self.currency}>"
        )


class Refund(Base, TimestampMixin, SoftDeleteMixin):
    """A refund of part or all of a completed payment."""

    __tablename__ = "refunds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    payment_id: Mapped[int] = mapped_column(
        ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    processed_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    refund_reference: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="BDT")
    transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=RefundStatus.PENDING.value
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", nullable=False, default=dict
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="refunds_amount_positive"),
        CheckConstraint(
            f"status IN ({sql_in_list(RefundStatus)})",
            name="refunds_status_check",
        ),
        Index("ix_refunds_status_created", "status", "created_at"),
    )

    payment: Mapped[Payment] = relationship(back_populates="refunds")

    @property
    def is_pending(self) -> bool:
        return self.status == RefundStatus.PENDING.value

    @property
    def is_final(self) -> bool:
        return self.status in (
            RefundStatus.COMPLETED.value,
            RefundStatus.FAILED.value,
            RefundStatus.CANCELLED.value,
        )

    def merge_metadata(self, metadata: dict[str, Any] | None) -> None:
        if metadata:
            self.metadata_json = {**(self.metadata_json or {}), **metadata}

    def __repr__(self) -> str:
        return f"<Refund {self.refund_reference} {self.status} {self.amount}>"


# Refunds that count against a payment's refundable balance.
LIVE_REFUND_STATUSES = (RefundStatus.COMPLETED.value, RefundStatus.PENDING.value)


def live_refund_total(session: Session, payment_id: int) -> Decimal:
    """Sum of completed and pending refunds, read from the database."""
    total = session.execute(
        select(func.coalesce(func.sum(Refund.amount), 0)).where(
            Refund.payment_id == payment_id,
            Refund.status.in_(LIVE_REFUND_STATUSES),
            Refund.deleted_at.is_(None),
        )
    ).scalar_one()
    return Decimal(str(total)).quantize(CENT)
