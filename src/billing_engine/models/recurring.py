"""Recurring payment profile model."""

from __future__ import annotations

import hashlib
import secrets
import time
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import CheckConstraint, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_engine.models.base import Base, SoftDeleteMixin, TimestampMixin, utcnow
from billing_engine.models.enums import (
    BillingPeriod,
    PayableKind,
    ProfileStatus,
    sql_in_list,
)

if TYPE_CHECKING:
    from billing_engine.models.payment import Payment


def generate_profile_id() -> str:
    """RPP + 10 upper-case hex characters + unix time."""
    digest = hashlib.md5(secrets.token_bytes(16)).hexdigest()[:10].upper()
    return f"RPP{digest}{int(time.time())}"


class RecurringPaymentProfile(Base, TimestampMixin, SoftDeleteMixin):
    """Standing instruction to bill a payable owner on a cadence."""

    __tablename__ = "recurring_payment_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    profile_id: Mapped[str] = mapped_column(
        String(40), unique=True, nullable=False, default=generate_profile_id
    )
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payable_kind: Mapped[str] = mapped_column(
        String(32), nullable=False, default=PayableKind.RECURRING_SUBSCRIPTION.value
    )
    payable_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    gateway: Mapped[str] = mapped_column(String(50), nullable=False)
    gateway_profile_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="BDT")
    billing_period: Mapped[str] = mapped_column(
        String(8), nullable=False, default=BillingPeriod.MONTH.value
    )
    billing_frequency: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    start_date: Mapped[datetime] = mapped_column(nullable=False)
    next_billing_date: Mapped[datetime] = mapped_column(nullable=False)
    end_date: Mapped[datetime | None] = mapped_column(nullable=True)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ProfileStatus.ACTIVE.value
    )

    payment_method_token: Mapped[str | None] = mapped_column(String(255), nullable=True)
    card_last4: Mapped[str | None] = mapped_column(String(4), nullable=True)
    card_brand: Mapped[str | None] = mapped_column(String(32), nullable=True)
    card_expiry: Mapped[str | None] = mapped_column(String(7), nullable=True)

    max_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", nullable=False, default=dict
    )

    __table_args__ = (
        CheckConstraint(
            f"status IN ({sql_in_list(ProfileStatus)})",
            name="recurring_profiles_status_check",
        ),
        CheckConstraint(
            f"billing_period IN ({sql_in_list(BillingPeriod)})",
            name="recurring_profiles_period_check",
        ),
        CheckConstraint("billing_frequency > 0", name="recurring_profiles_frequency_positive"),
        CheckConstraint("amount > 0", name="recurring_profiles_amount_positive"),
        CheckConstraint(
            "failure_count >= 0 AND max_failures > 0",
            name="recurring_profiles_failures_check",
        ),
        Index("ix_recurring_profiles_due", "status", "next_billing_date"),
    )

    payments: Mapped[list[Payment]] = relationship(
        back_populates="recurring_profile",
        order_by="Payment.id",
    )

    @property
    def is_active(self) -> bool:
        return self.status == ProfileStatus.ACTIVE.value

    @property
    def is_suspended(self) -> bool:
        return self.status == ProfileStatus.SUSPENDED.value

    @property
    def period(self) -> BillingPeriod:
        return BillingPeriod(self.billing_period)

    @property
    def billing_period_name(self) -> str:
        """e.g. 'Monthly', 'Every 3 months'."""
        if self.billing_frequency == 1:
            return {
                BillingPeriod.DAY: "Daily",
                BillingPeriod.WEEK: "Weekly",
                BillingPeriod.MONTH: "Monthly",
                BillingPeriod.YEAR: "Yearly",
            }[self.period]
        return f"Every {self.billing_frequency} {self.billing_period}s"

    @property
    def has_reached_max_failures(self) -> bool:
        return self.failure_count >= self.max_failures

    def is_due(self, now: datetime | None = None) -> bool:
        """Active, next_billing_date reached, and not past end_date."""
        now = now or utcnow()
        if not self.is_active or self.deleted_at is not None:
            return False
        if self.next_billing_date > now:
            return False
        return self.end_date is None or self.end_date > now

    def merge_metadata(self, metadata: dict[str, Any]) -> None:
        self.metadata_json = {**(self.metadata_json or {}), **metadata}

    def suspend(self, reason: str | None = None, now: datetime | None = None) -> None:
        self.status = ProfileStatus.SUSPENDED.value
        self.merge_metadata(
            {
                "suspended_at": (now or utcnow()).isoformat(),
                "suspension_reason": reason,
            }
        )

    def reactivate(self, now: datetime | None = None) -> None:
        self.status = ProfileStatus.ACTIVE.value
        self.failure_count = 0
        self.merge_metadata({"reactivated_at": (now or utcnow()).isoformat()})

    def cancel(self, reason: str | None = None, now: datetime | None = None) -> None:
        now = now or utcnow()
        self.status = ProfileStatus.CANCELLED.value
        self.end_date = now
        self.merge_metadata(
            {"cancelled_at": now.isoformat(), "cancellation_reason": reason}
        )

    def update_payment_method(
        self,
        token: str,
        *,
        last4: str | None = None,
        brand: str | None = None,
        expiry: str | None = None,
    ) -> None:
        """Swap the stored instrument reference."""
        self.payment_method_token = token
        self.card_last4 = last4
        self.card_brand = brand
        self.card_expiry = expiry

    def __repr__(self) -> str:
        return (
            f"<RecurringPaymentProfile {self.profile_id} {self.status} "
            f"next={self.next_billing_date:%Y-%m-%d}>"
        )
