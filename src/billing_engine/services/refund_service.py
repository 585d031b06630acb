"""Refund service - refundable balance, execution and reconciliation.

Refunds run in two phases because third-party gateways offer no two-phase
commit:

1. Under a lock on the payment: check preconditions, insert a pending
   Refund and recompute the payment's refund_status. Commit.
2. Call the gateway with no lock held, then settle the Refund to completed
   or failed in a second, independent transaction.

A crash between the remote call and phase 2 leaves a pending refund; the
stale-refund sweep re-queries the provider for those.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from billing_engine.config import BillingConfig
from billing_engine.events import (
    DomainEvent,
    EventEmitter,
    EventMetadata,
    RefundCancelled,
    RefundCompleted,
    RefundFailed,
)
from billing_engine.exceptions import (
    AmountExceedsLimitError,
    BillingError,
    InvalidAmountError,
    NotRefundableError,
    PaymentNotFoundError,
    RefundNotCancellableError,
    RefundNotFoundError,
)
from billing_engine.gateways.base import PaymentContext, RefundRequest, RefundResponse
from billing_engine.gateways.registry import ClientRegistry, GatewayRegistry
from billing_engine.models import (
    Payment,
    PaymentRefundStatus,
    PaymentStatus,
    Refund,
    RefundStatus,
    live_refund_total,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RefundResult:
    """Outcome of a refund request."""

    success: bool
    message: str
    code: str | None = None
    refund: Refund | None = None
    max_amount: Decimal | None = None

    @classmethod
    def rejected(cls, error: BillingError) -> RefundResult:
        """Precondition failure: nothing was written."""
        return cls(
            success=False,
            message=error.message,
            code=error.code,
            max_amount=getattr(error, "max_amount", None),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success, "message": self.message}
        if self.code:
            data["code"] = self.code
        if self.refund is not None:
            data["refund_id"] = self.refund.id
            data["refund_status"] = self.refund.status
        if self.max_amount is not None:
            data["max_amount"] = str(self.max_amount)
        return data


@dataclass
class RefundSweepSummary:
    """Result of reconciling stale pending refunds."""

    checked: int = 0
    completed: int = 0
    failed: int = 0
    still_pending: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


class RefundService:
    """Refund reconciler.

    Each public operation commits its own transaction(s).
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
    # Balance
    # ------------------------------------------------------------------

    def refundable_amount(self, payment: Payment) -> Decimal:
        """payment.amount minus completed and pending refunds, never negative."""
        remaining = Decimal(payment.amount) - live_refund_total(self.db, payment.id)
        return max(remaining, Decimal("0.00"))

    def is_refundable(self, payment: Payment) -> bool:
        return (
            payment.payment_status == PaymentStatus.COMPLETED.value
            and self.clients.supports_refunds(payment.payment_method)
            and self.refundable_amount(payment) > 0
        )

    def recompute_refund_status(self, payment: Payment) -> str:
        """Derive payment.refund_status from live refund rows."""
        self.db.flush()
        total = live_refund_total(self.db, payment.id)
        if total >= payment.amount:
            status = PaymentRefundStatus.FULLY_REFUNDED
        elif total > 0:
            status = PaymentRefundStatus.PARTIALLY_REFUNDED
        else:
            status = PaymentRefundStatus.NONE
        payment.refund_status = status.value
        return status.value

    # ------------------------------------------------------------------
    # Initiate
    # ------------------------------------------------------------------

    def initiate_refund(
        self,
        payment: Payment,
        amount: Decimal | int | str,
        reason: str | None = None,
        operator_id: int | None = None,
        metadata: dict[str, Any] | None = None,
        *,
        user_id: int | None = None,
    ) -> RefundResult:
        """Refund ``amount`` of a completed payment through its gateway.

        Preconditions are checked in order (amount, refundability, balance)
        and reported as a failed RefundResult with no row written.
        """
        try:
            amount = Decimal(str(amount))
        except InvalidOperation:
            return RefundResult.rejected(InvalidAmountError("Refund amount is not a number"))
        if not amount.is_finite() or amount <= 0:
            return RefundResult.rejected(
                InvalidAmountError("Refund amount must be greater than zero")
            )

        events: list[DomainEvent] = []
        try:
            locked = self._lock_payment(payment.id)
            if locked.payment_status != PaymentStatus.COMPLETED.value or not (
                self.clients.supports_refunds(locked.payment_method)
            ):
                self.db.rollback()
                return RefundResult.rejected(
                    NotRefundableError("This payment is not eligible for refund")
                )

            refundable = self.refundable_amount(locked)
            if amount > refundable:
                self.db.rollback()
                return RefundResult.rejected(AmountExceedsLimitError(amount, refundable))

            now = utcnow()
            refund = Refund(
                payment_id=locked.id,
                user_id=user_id if user_id is not None else locked.user_id,
                processed_by=operator_id,
                refund_reference=uuid.uuid4().hex,
                amount=amount,
                currency=locked.currency,
                status=RefundStatus.PENDING.value,
                reason=reason,
                metadata_json={
                    **(metadata or {}),
                    "requested_at": now.isoformat(),
                    "original_payment": {
                        "amount": str(locked.amount),
                        "currency": locked.currency,
                        "payment_method": locked.payment_method,
                        "transaction_id": locked.transaction_id,
                    },
                },
            )
            self.db.add(refund)
            self.recompute_refund_status(locked)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Refund %s of %s %s requested for %s",
            refund.refund_reference,
            amount,
            locked.currency,
            locked.invoice_number,
        )

        request = self._request_for(refund, locked)
        try:
            gateway = self.gateways.get(locked.payment_method or "")
            client = self.clients.require(gateway.code, "refunds")
            response = client.refund(gateway, request)
        except Exception as e:
            logger.exception("Refund %s failed at gateway", refund.refund_reference)
            return self._settle_failed(refund.id, str(e), events)
        finally:
            self._publish(events)

        return self._apply_response(refund.id, response)

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    def cancel_refund(
        self,
        refund: Refund,
        reason: str | None = None,
        operator_id: int | None = None,
    ) -> Refund:
        """Cancel a pending refund.

        Raises:
            RefundNotCancellableError: the refund is no longer pending
        """
        try:
            locked = self._lock_refund(refund.id)
            if locked.status != RefundStatus.PENDING.value:
                raise RefundNotCancellableError(locked.id, locked.status)
            locked.status = RefundStatus.CANCELLED.value
            locked.merge_metadata(
                {
                    "cancellation_reason": reason,
                    "cancelled_at": utcnow().isoformat(),
                    "cancelled_by": operator_id,
                }
            )
            payment = self._lock_payment(locked.payment_id)
            self.recompute_refund_status(payment)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info("Refund %s cancelled", locked.refund_reference)
        self._publish(
            [
                RefundCancelled(
                    metadata=EventMetadata.create(
                        actor_id=None if operator_id is None else str(operator_id),
                        actor_type="operator",
                    ),
                    refund_id=locked.id,
                    payment_id=locked.payment_id,
                    amount=locked.amount,
                    reason=reason,
                )
            ]
        )
        return locked

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile_pending_refunds(
        self,
        older_than: timedelta | None = None,
        *,
        now: datetime | None = None,
    ) -> RefundSweepSummary:
        """Settle pending refunds older than a cutoff from provider state."""
        now = now or utcnow()
        cutoff = now - (older_than if older_than is not None else self._config.refund_stale_after)
        refund_ids = list(
            self.db.execute(
                select(Refund.id)
                .where(
                    Refund.status == RefundStatus.PENDING.value,
                    Refund.deleted_at.is_(None),
                    Refund.created_at <= cutoff,
                )
                .order_by(Refund.created_at, Refund.id)
            ).scalars()
        )

        summary = RefundSweepSummary()
        for refund_id in refund_ids:
            refund = self.db.get(Refund, refund_id)
            if refund is None:
                continue
            summary.checked += 1
            try:
                response = self._query_provider(refund)
            except BillingError as e:
                self.db.rollback()
                logger.warning("Refund %s status query failed: %s", refund.refund_reference, e)
                summary.errors.append({"refund_reference": refund.refund_reference, **e.to_dict()})
                continue

            result = self._apply_response(refund_id, response)
            if result.refund is None or result.refund.status == RefundStatus.PENDING.value:
                summary.still_pending += 1
            elif result.refund.status == RefundStatus.COMPLETED.value:
                summary.completed += 1
            else:
                summary.failed += 1
        return summary

    def process_refund_callback(self, gateway_code: str, payload: dict[str, Any]) -> Refund:
        """Handle a provider refund notification by re-querying the provider.

        Raises:
            RefundNotFoundError: payload identifies no refund for this gateway
            GatewayCommunicationError: provider unreachable; refund untouched
        """
        gateway = self.gateways.get(gateway_code)
        client = self.clients.get(gateway.code)
        reference = client.refund_callback_reference(payload)

        conditions = []
        if reference.refund_reference:
            conditions.append(Refund.refund_reference == reference.refund_reference)
        if reference.refund_transaction_id:
            conditions.append(Refund.transaction_id == reference.refund_transaction_id)
        if not conditions:
            raise RefundNotFoundError("Callback carries no refund identifier")

        refund = self.db.execute(
            select(Refund)
            .join(Payment, Payment.id == Refund.payment_id)
            .where(or_(*conditions), Payment.payment_method == gateway.code)
            .limit(1)
        ).scalar_one_or_none()
        if refund is None:
            raise RefundNotFoundError(
                "Refund not found",
                refund_reference=reference.refund_reference,
                refund_transaction_id=reference.refund_transaction_id,
            )
        if refund.status != RefundStatus.PENDING.value:
            return refund

        result = self._apply_response(refund.id, self._query_provider(refund))
        return result.refund or refund

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _query_provider(self, refund: Refund) -> RefundResponse:
        payment = self.db.get(Payment, refund.payment_id)
        if payment is None:
            raise PaymentNotFoundError(
                f"Payment {refund.payment_id} for refund {refund.refund_reference} not found",
                refund_reference=refund.refund_reference,
            )
        gateway = self.gateways.get(payment.payment_method or "")
        client = self.clients.require(gateway.code, "refunds")
        return client.query_refund(gateway, self._request_for(refund, payment))

    def _request_for(self, refund: Refund, payment: Payment) -> RefundRequest:
        return RefundRequest(
            refund_reference=refund.refund_reference,
            amount=refund.amount,
            currency=refund.currency,
            reason=refund.reason,
            payment=PaymentContext.from_payment(payment),
            refund_transaction_id=refund.transaction_id,
        )

    def _apply_response(self, refund_id: int, response: RefundResponse) -> RefundResult:
        events: list[DomainEvent] = []
        try:
            if response.status is RefundStatus.COMPLETED:
                return self._settle_completed(refund_id, response, events)
            if response.status is RefundStatus.FAILED:
                return self._settle_failed(
                    refund_id,
                    response.message or "Refund declined by gateway",
                    events,
                    details=response.details,
                )
        finally:
            self._publish(events)

        refund = self.db.get(Refund, refund_id)
        return RefundResult(
            success=True,
            message="Refund submitted; awaiting gateway confirmation",
            code="refund_pending",
            refund=refund,
        )

    def _settle_completed(
        self,
        refund_id: int,
        response: RefundResponse,
        events: list[DomainEvent],
    ) -> RefundResult:
        try:
            refund = self._lock_refund(refund_id)
            if refund.status != RefundStatus.PENDING.value:
                return self._late_response(refund, response)
            refund.status = RefundStatus.COMPLETED.value
            refund.transaction_id = response.refund_transaction_id
            refund.processed_at = utcnow()
            refund.merge_metadata(
                {"gateway_response": {"message": response.message, **response.details}}
            )
            payment = self._lock_payment(refund.payment_id)
            refund_status = self.recompute_refund_status(payment)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info("Refund %s completed (%s)", refund.refund_reference, refund.transaction_id)
        events.append(
            RefundCompleted(
                metadata=EventMetadata.create(),
                refund_id=refund.id,
                payment_id=refund.payment_id,
                amount=refund.amount,
                currency=refund.currency,
                refund_transaction_id=refund.transaction_id,
                payment_refund_status=refund_status,
            )
        )
        return RefundResult(
            success=True,
            message="Refund processed successfully",
            refund=refund,
        )

    def _settle_failed(
        self,
        refund_id: int,
        error: str,
        events: list[DomainEvent],
        *,
        details: dict[str, Any] | None = None,
    ) -> RefundResult:
        try:
            refund = self._lock_refund(refund_id)
            if refund.status != RefundStatus.PENDING.value:
                self.db.rollback()
                return RefundResult(
                    success=False,
                    message=f"Refund is already {refund.status}",
                    code="refund_failed",
                    refund=refund,
                )
            refund.status = RefundStatus.FAILED.value
            refund.processed_at = utcnow()
            refund.merge_metadata({"error": error, **(details or {})})
            payment = self._lock_payment(refund.payment_id)
            self.recompute_refund_status(payment)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.warning("Refund %s failed: %s", refund.refund_reference, error)
        events.append(
            RefundFailed(
                metadata=EventMetadata.create(),
                refund_id=refund.id,
                payment_id=refund.payment_id,
                amount=refund.amount,
                currency=refund.currency,
                error=error,
            )
        )
        return RefundResult(
            success=False,
            message=f"Refund failed: {error}",
            code="refund_failed",
            refund=refund,
        )

    def _late_response(self, refund: Refund, response: RefundResponse) -> RefundResult:
        """The gateway confirmed a refund that is no longer pending locally."""
        refund.merge_metadata(
            {
                "late_gateway_response": {
                    "status": response.status.value,
                    "refund_transaction_id": response.refund_transaction_id,
                    "received_at": utcnow().isoformat(),
                }
            }
        )
        self.db.commit()
        logger.error(
            "Gateway completed refund %s but it is %s locally; manual review needed",
            refund.refund_reference,
            refund.status,
        )
        return RefundResult(
            success=False,
            message=f"Gateway completed a refund that is {refund.status}",
            code="refund_state_conflict",
            refund=refund,
        )

    def _lock_payment(self, payment_id: int) -> Payment:
        stmt = (
            select(Payment)
            .where(Payment.id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one()

    def _lock_refund(self, refund_id: int) -> Refund:
        stmt = (
            select(Refund)
            .where(Refund.id == refund_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one()

    def _publish(self, events: list[DomainEvent]) -> None:
        if self._emitter and self._config.emit_events and events:
            self._emitter.emit_all(events)
