"""Payment gateway configuration model."""

from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from sqlalchemy import Boolean, CheckConstraint, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, validates

from billing_engine.models.base import Base, JsonBag, SoftDeleteMixin, TimestampMixin
from billing_engine.models.enums import GatewayType, sql_in_list

OFFLINE_GATEWAY_CODES = frozenset({"cash", "cheque", "bank_transfer"})
MFS_GATEWAY_CODES = frozenset({"bkash", "nagad", "rocket"})
CARD_GATEWAY_CODES = frozenset(
    {"stripe", "paypal", "sslcommerz", "paystack", "razorpay", "square"}
)

_CODE_INVALID_CHARS = re.compile(r"[^a-z0-9_]")


def normalize_gateway_code(code: str) -> str:
    """Lowercase and replace anything outside [a-z0-9_] with '_'."""
    return _CODE_INVALID_CHARS.sub("_", code.strip().lower())


class PaymentGateway(Base, TimestampMixin, SoftDeleteMixin):
    """Configuration for one payment provider.

    Credentials live on the row and are read on every adapter call so that
    rotated keys take effect without a restart. They are excluded from
    ``repr`` and ``public_config``.
    """

    __tablename__ = "payment_gateways"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    type: Mapped[str] = mapped_column(
        String(32), nullable=False, default=GatewayType.OTHER.value
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    instructions: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_online: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    has_api: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    test_mode: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    sandbox_url: Mapped[str | None] = mapped_column(String(255), nullable=True)
    live_url: Mapped[str | None] = mapped_column(String(255), nullable=True)
    callback_url: Mapped[str | None] = mapped_column(String(255), nullable=True)
    webhook_url: Mapped[str | None] = mapped_column(String(255), nullable=True)
    success_url: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cancel_url: Mapped[str | None] = mapped_column(String(255), nullable=True)

    api_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    api_secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    api_username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    api_password: Mapped[str | None] = mapped_column(String(255), nullable=True)

    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="BDT")
    supported_currencies: Mapped[list[str] | None] = mapped_column(
        JsonBag, nullable=True, default=None
    )
    fee_percentage: Mapped[Decimal] = mapped_column(
        Numeric(5, 2), nullable=False, default=Decimal("0")
    )
    fee_fixed: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    min_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    max_amount: Mapped[Decimal | None] = mapped_column(nullable=True)

    extra_attributes: Mapped[dict[str, Any]] = mapped_column(nullable=False, default=dict)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint(
            f"type IN ({sql_in_list(GatewayType)})",
            name="payment_gateways_type_check",
        ),
        CheckConstraint(
            "fee_percentage >= 0 AND fee_fixed >= 0",
            name="payment_gateways_fee_non_negative",
        ),
        CheckConstraint(
            "min_amount IS NULL OR max_amount IS NULL OR min_amount <= max_amount",
            name="payment_gateways_limits_check",
        ),
    )

    @validates("code")
    def _normalize_code(self, key: str, value: str) -> str:
        return normalize_gateway_code(value)

    @validates("currency")
    def _normalize_currency(self, key: str, value: str | None) -> str:
        return (value or "BDT").upper()

    @property
    def base_url(self) -> str | None:
        """Sandbox URL in test mode, live URL otherwise."""
        return self.sandbox_url if self.test_mode else self.live_url

    @property
    def is_offline(self) -> bool:
        return not self.is_online or self.code in OFFLINE_GATEWAY_CODES

    @property
    def is_configured(self) -> bool:
        """Whether the gateway has what it needs to be used."""
        if self.is_offline:
            return True
        if self.code in MFS_GATEWAY_CODES:
            return bool(self.api_key and self.api_secret and self.base_url)
        if self.code in CARD_GATEWAY_CODES:
            return bool(self.api_key and self.api_secret and self.callback_url)
        if self.has_api:
            return bool(self.api_key)
        return True

    @property
    def accepted_currencies(self) -> list[str]:
        return [c.upper() for c in (self.supported_currencies or [self.currency])]

    def supports_currency(self, currency: str) -> bool:
        return currency.upper() in self.accepted_currencies

    def accepts_amount(self, amount: Decimal) -> bool:
        """Check the amount against min/max limits."""
        if self.min_amount is not None and amount < self.min_amount:
            return False
        if self.max_amount is not None and amount > self.max_amount:
            return False
        return True

    def calculate_fee(self, amount: Decimal) -> Decimal:
        """Percentage plus fixed fee, rounded half-up to the cent."""
        fee = Decimal(amount) * Decimal(self.fee_percentage) / Decimal(100)
        fee += Decimal(self.fee_fixed or 0)
        return fee.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    def api_config(self) -> dict[str, Any]:
        """Everything an adapter needs, secrets included. Never log this."""
        config: dict[str, Any] = {
            "base_url": self.base_url,
            "api_key": self.api_key,
            "api_secret": self.api_secret,
            "username": self.api_username,
            "password": self.api_password,
            "callback_url": self.callback_url,
            "webhook_url": self.webhook_url,
            "success_url": self.success_url,
            "cancel_url": self.cancel_url,
            "test_mode": self.test_mode,
            "currency": self.currency,
        }
        config.update(self.extra_attributes or {})
        return config

    def public_config(self) -> dict[str, Any]:
        """Configuration safe to log or return to clients."""
        return {
            "code": self.code,
            "name": self.name,
            "type": self.type,
            "is_active": self.is_active,
            "is_online": self.is_online,
            "is_configured": self.is_configured,
            "test_mode": self.test_mode,
            "currency": self.currency,
            "supported_currencies": self.accepted_currencies,
            "fee_percentage": str(self.fee_percentage),
            "fee_fixed": str(self.fee_fixed),
            "min_amount": None if self.min_amount is None else str(self.min_amount),
            "max_amount": None if self.max_amount is None else str(self.max_amount),
            "instructions": self.instructions,
        }

    def __repr__(self) -> str:
        return f"<PaymentGateway {self.code} active={self.is_active} online={self.is_online}>"
