"""Payment service - gateway orchestration for a single payment.

Drives a payment through its provider:
1. Initialize (checkout handshake, or offline instructions)
2. Callback handling (callback is only a trigger; the provider is re-queried)
3. Verification (idempotent polling of non-terminal payments)

Status changes always happen on a freshly locked row, after the remote
call has returned, so no lock is held across network I/O.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from billing_engine.config import BillingConfig
from billing_engine.events import (
    DomainEvent,
    EventEmitter,
    EventMetadata,
    PaymentFailed,
    PaymentProcessed,
)
from billing_engine.exceptions import (
    AlreadyProcessedError,
    BillingError,
    InvalidAmountError,
    PaymentNotFoundError,
    ProviderMismatchError,
)
from billing_engine.gateways.base import CallbackReference, PaymentContext, StatusResult
from billing_engine.gateways.registry import ClientRegistry, GatewayRegistry
from billing_engine.models import Payment, PaymentStatus, utcnow
from billing_engine.services.state_machine import PaymentStateMachine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InitResult:
    """Result of initializing a payment with a gateway."""

    payment_id: int
    invoice_number: str
    gateway: str
    amount: Decimal
    currency: str
    payment_status: str
    is_offline: bool
    redirect_url: str | None = None
    reference: str | None = None
    instructions: str | None = None
    fee: Decimal | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class VerificationSummary:
    """Result of a pending-payment verification sweep."""

    checked: int = 0
    updated: int = 0
    unchanged: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


class PaymentService:
    """Payment state machine operations backed by gateway adapters.

    Each public operation that changes state commits its own transaction.
    """

    def __init__(
        self,
        db: Session,
        clients: ClientRegistry,
        *,
        emitter: EventEmitter | None = None,
        config: BillingConfig | None = None,
    ):
        self.db = db
        self.clients = clients
        self.gateways = GatewayRegistry(db)
        self._emitter = emitter
        self._config = config or BillingConfig()

    # ------------------------------------------------------------------
    # Initialize
    # ------------------------------------------------------------------

    def initialize_payment(
        self,
        payment: Payment,
        gateway_code: str,
        options: dict[str, Any] | None = None,
    ) -> InitResult:
        """Start collecting ``payment`` through ``gateway_code``.

        Offline gateways return their instructions and leave the payment
        pending. Online gateways run the provider handshake and store the
        correlation identifiers on the payment.

        Raises:
            GatewayNotFoundError, GatewayInactiveError, GatewayMisconfiguredError
            InvalidAmountError: total outside the gateway's limits
            AlreadyProcessedError: payment is already terminal
            GatewayCommunicationError: provider unreachable; payment untouched
        """
        options = options or {}
        gateway = self.gateways.get_usable(gateway_code)

        if PaymentStateMachine.is_terminal(payment.payment_status):
            raise AlreadyProcessedError(payment.payment_status)

        if gateway.is_offline:
            payment.payment_method = gateway.code
            self.db.commit()
            logger.info(
                "Offline payment %s via %s awaiting manual settlement",
                payment.invoice_number,
                gateway.code,
            )
            return InitResult(
                payment_id=payment.id,
                invoice_number=payment.invoice_number,
                gateway=gateway.code,
                amount=payment.total_amount,
                currency=payment.currency,
                payment_status=payment.payment_status,
                is_offline=True,
                reference=payment.invoice_number,
                instructions=gateway.instructions,
            )

        if not gateway.accepts_amount(payment.total_amount):
            raise InvalidAmountError(
                f"Amount {payment.total_amount} is outside {gateway.code} limits",
                min_amount=gateway.min_amount,
                max_amount=gateway.max_amount,
            )
        if not gateway.supports_currency(payment.currency):
            raise InvalidAmountError(
                f"{gateway.code} does not accept {payment.currency}",
                currency=payment.currency,
            )

        client = self.clients.get(gateway.code)
        response = client.initialize(gateway, PaymentContext.from_payment(payment), options)

        payment.payment_method = gateway.code
        payment.gateway_reference = response.correlation_id
        payment.merge_details(response.details)
        self.db.commit()

        logger.info(
            "Initialized payment %s with %s (ref %s)",
            payment.invoice_number,
            gateway.code,
            response.correlation_id,
        )
        return InitResult(
            payment_id=payment.id,
            invoice_number=payment.invoice_number,
            gateway=gateway.code,
            amount=payment.total_amount,
            currency=payment.currency,
            payment_status=payment.payment_status,
            is_offline=False,
            redirect_url=response.redirect_url,
            reference=response.correlation_id,
            fee=gateway.calculate_fee(payment.total_amount),
            details=dict(response.details),
        )

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def process_callback(self, gateway_code: str, payload: dict[str, Any]) -> Payment:
        """Handle a provider callback.

        The payload only identifies the payment; the outcome always comes
        from a fresh query to the provider.

        Raises:
            PaymentNotFoundError: payload identifies no known payment
            AlreadyProcessedError: payment is already terminal
            GatewayCommunicationError: provider unreachable; payment untouched
        """
        gateway = self.gateways.get(gateway_code)
        client = self.clients.get(gateway.code)
        reference = client.callback_reference(payload)
        payment = self.find_payment(gateway.code, reference)

        if PaymentStateMachine.is_terminal(payment.payment_status):
            raise AlreadyProcessedError(payment.payment_status)

        result = client.confirm_callback(gateway, PaymentContext.from_payment(payment), payload)
        return self._apply_status(payment.id, gateway.code, result, actor_type="callback")

    def find_payment(self, gateway_code: str, reference: CallbackReference) -> Payment:
        """Look a payment up by invoice number or provider correlation id.

        Either way the payment must have been started on ``gateway_code``.
        """
        if reference.is_empty:
            raise PaymentNotFoundError("Callback carries no payment identifier")

        conditions = []
        if reference.invoice_number:
            conditions.append(Payment.invoice_number == reference.invoice_number)
        if reference.correlation_id:
            conditions.append(Payment.gateway_reference == reference.correlation_id)
        stmt = (
            select(Payment)
            .where(
                or_(*conditions),
                Payment.payment_method == gateway_code,
                Payment.deleted_at.is_(None),
            )
            .order_by(Payment.id)
            .limit(1)
        )
        payment = self.db.execute(stmt).scalar_one_or_none()
        if payment is None:
            raise PaymentNotFoundError(
                "Payment not found",
                invoice_number=reference.invoice_number,
                correlation_id=reference.correlation_id,
            )
        return payment

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_payment(self, payment: Payment) -> Payment:
        """Re-query the provider for a non-terminal online payment.

        Terminal, offline and never-initialized payments are returned as-is.
        Only a status that differs from the stored one is written.
        """
        if PaymentStateMachine.is_terminal(payment.payment_status):
            return payment
        if not payment.payment_method or not payment.gateway_reference:
            return payment

        gateway = self.gateways.find(payment.payment_method)
        if gateway is None or gateway.is_offline:
            return payment
        client = self.clients.find(gateway.code)
        if client is None:
            logger.warning(
                "No adapter for %s; cannot verify %s", gateway.code, payment.invoice_number
            )
            return payment

        result = client.query_status(gateway, PaymentContext.from_payment(payment))
        try:
            return self._apply_status(payment.id, gateway.code, result, actor_type="system")
        except AlreadyProcessedError:
            # Settled by a concurrent callback between our read and the lock.
            self.db.refresh(payment)
            return payment

    def verify_pending(
        self,
        older_than: timedelta | None = None,
        *,
        now: datetime | None = None,
        limit: int | None = None,
    ) -> VerificationSummary:
        """Verify every online pending/processing payment older than a cutoff."""
        now = now or utcnow()
        cutoff = now - (older_than if older_than is not None else self._config.payment_stale_after)
        stmt = (
            select(Payment.id)
            .where(
                Payment.payment_status.in_(
                    [PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value]
                ),
                Payment.payment_method.is_not(None),
                Payment.gateway_reference.is_not(None),
                Payment.deleted_at.is_(None),
                Payment.created_at <= cutoff,
            )
            .order_by(Payment.created_at, Payment.id)
        )
        if limit:
            stmt = stmt.limit(limit)
        payment_ids = list(self.db.execute(stmt).scalars())

        summary = VerificationSummary()
        for payment_id in payment_ids:
            payment = self.db.get(Payment, payment_id)
            if payment is None:
                continue
            summary.checked += 1
            before = payment.payment_status
            try:
                after = self.verify_payment(payment).payment_status
            except BillingError as e:
                self.db.rollback()
                logger.warning("Verification of %s failed: %s", payment.invoice_number, e)
                summary.errors.append({"invoice_number": payment.invoice_number, **e.to_dict()})
                continue
            if after != before:
                summary.updated += 1
            else:
                summary.unchanged += 1
        return summary

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _lock_payment(self, payment_id: int) -> Payment:
        stmt = (
            select(Payment)
            .where(Payment.id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one()

    def _apply_status(
        self,
        payment_id: int,
        gateway_code: str,
        result: StatusResult,
        *,
        actor_type: str,
    ) -> Payment:
        """Apply a provider-confirmed status under a row lock and commit."""
        events: list[DomainEvent] = []
        try:
            payment = self._lock_payment(payment_id)
            current = payment.payment_status

            mismatch = result.mismatch(PaymentContext.from_payment(payment))
            if mismatch:
                logger.warning(
                    "Discarding %s result for payment %s: %s",
                    gateway_code,
                    payment.invoice_number,
                    mismatch,
                )
                raise ProviderMismatchError(
                    f"Provider result does not match payment: {mismatch}",
                    invoice_number=payment.invoice_number,
                    gateway=gateway_code,
                )

            if result.status.value == current:
                payment.merge_details(result.audit_details())
                self.db.commit()
                return payment

            if PaymentStateMachine.is_terminal(current):
                raise AlreadyProcessedError(current, result.status.value)

            if result.status is PaymentStatus.PENDING:
                # Unknown statuses map to pending and never move a payment back.
                payment.merge_details(result.audit_details())
                self.db.commit()
                return payment

            if result.status is PaymentStatus.COMPLETED:
                PaymentStateMachine.complete(
                    payment,
                    transaction_id=result.transaction_id,
                    paid_at=result.paid_at,
                    details=result.audit_details(),
                )
                events.append(self._processed_event(payment, gateway_code, actor_type))
            elif result.status is PaymentStatus.FAILED:
                reason = result.message or f"Provider reported {result.provider_status}"
                PaymentStateMachine.fail(
                    payment,
                    reason=reason,
                    transaction_id=result.transaction_id,
                    details=result.audit_details(),
                )
                events.append(
                    PaymentFailed(
                        metadata=EventMetadata.create(actor_type=actor_type),
                        payment_id=payment.id,
                        invoice_number=payment.invoice_number,
                        gateway=gateway_code,
                        amount=payment.total_amount,
                        currency=payment.currency,
                        failure_reason=reason,
                        provider_status=result.provider_status,
                    )
                )
            else:
                PaymentStateMachine.move_to(
                    payment, result.status, details=result.audit_details()
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Payment %s: %s -> %s (%s)",
            payment.invoice_number,
            current,
            payment.payment_status,
            result.provider_status,
        )
        self._publish(events)
        return payment

    def _processed_event(
        self, payment: Payment, gateway_code: str, actor_type: str
    ) -> PaymentProcessed:
        return PaymentProcessed(
            metadata=EventMetadata.create(actor_type=actor_type),
            payment_id=payment.id,
            invoice_number=payment.invoice_number,
            gateway=gateway_code,
            amount=payment.total_amount,
            currency=payment.currency,
            transaction_id=payment.transaction_id,
            paid_at=payment.payment_date,
            payable_kind=payment.payable_kind,
            payable_id=payment.payable_id,
            user_id=payment.user_id,
        )

    def _publish(self, events: list[DomainEvent]) -> None:
        if self._emitter and self._config.emit_events and events:
            self._emitter.emit_all(events)
