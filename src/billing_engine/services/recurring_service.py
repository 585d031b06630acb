"""Recurring billing scheduler.

Finds due recurring profiles and charges each one at most once per billing
cycle. Every profile is processed in its own transaction while holding an
exclusive lock on the profile row; the lock is held across the gateway
call because the per-cycle idempotency check depends on it.

A declined charge is a normal outcome: it is recorded as a failed payment,
counted against the profile and the cycle moves on. A charge the provider
has not settled yet stays a live payment for the cycle; verification settles
it later and the cycle only moves once it completes. An exception rolls the
attempt back and is recorded separately so the failure is never lost.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, time
from enum import Enum
from typing import Any

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from billing_engine.config import BillingConfig
from billing_engine.events import (
    DomainEvent,
    EventEmitter,
    EventMetadata,
    PaymentProcessed,
    ProfileSuspended,
    RecurringChargeFailed,
    RecurringChargeSucceeded,
)
from billing_engine.exceptions import (
    GatewayCommunicationError,
    ProfileNotFoundError,
    ProfileSuspendedError,
)
from billing_engine.gateways.base import ChargeRequest, ChargeResult
from billing_engine.gateways.registry import ClientRegistry, GatewayRegistry
from billing_engine.models import (
    PAYABLE_DESCRIPTIONS,
    PayableKind,
    Payment,
    PaymentStatus,
    ProfileStatus,
    RecurringPaymentProfile,
    generate_invoice_number,
    utcnow,
)
from billing_engine.services.billing_calendar import add_period
from billing_engine.services.state_machine import PaymentStateMachine

logger = logging.getLogger(__name__)

# Statuses that hold a billing cycle; a failed or abandoned payment frees it.
LIVE_CYCLE_STATUSES = [
    PaymentStatus.PENDING.value,
    PaymentStatus.PROCESSING.value,
    PaymentStatus.COMPLETED.value,
]


class OutcomeStatus(str, Enum):
    """How a single profile attempt ended."""

    SUCCEEDED = "succeeded"
    PENDING = "pending"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ProfileOutcome:
    """Result of processing one profile."""

    profile_id: str
    status: OutcomeStatus
    message: str = ""
    payment_id: int | None = None
    already_processed: bool = False
    retryable: bool = False


@dataclass
class BillingRunResult:
    """Aggregate result of a scheduler pass."""

    processed: int = 0
    succeeded: int = 0
    pending: int = 0
    failed: int = 0
    skipped: int = 0
    errors: dict[str, str] = field(default_factory=dict)
    outcomes: list[ProfileOutcome] = field(default_factory=list)

    def record(self, outcome: ProfileOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.status is OutcomeStatus.SKIPPED:
            self.skipped += 1
            return
        self.processed += 1
        if outcome.status is OutcomeStatus.SUCCEEDED:
            self.succeeded += 1
        elif outcome.status is OutcomeStatus.PENDING:
            self.pending += 1
        else:
            self.failed += 1
            self.errors[outcome.profile_id] = outcome.message

    @property
    def success(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "pending": self.pending,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": dict(self.errors),
        }


@dataclass(frozen=True)
class DueProfile:
    """A profile selected for charging."""

    id: int
    profile_id: str
    next_billing_date: datetime
    failure_count: int


class RecurringBillingService:
    """Charges due recurring profiles.

    Args:
        session_factory: Creates one session per profile attempt
        clients: Gateway adapters by code
        emitter: Receives recurring and payment events after commit
        config: Worker count, default failure limit, event switch
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clients: ClientRegistry,
        *,
        emitter: EventEmitter | None = None,
        config: BillingConfig | None = None,
    ):
        self.session_factory = session_factory
        self.clients = clients
        self._emitter = emitter
        self._config = config or BillingConfig()

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def due_profiles(self, force: bool = False, now: datetime | None = None) -> list[DueProfile]:
        """Active profiles whose next_billing_date has arrived.

        ``force`` is part of the scheduler contract. The datetime bound already
        implies the whole-day guard, so both modes select the same profiles.
        """
        now = now or utcnow()
        P = RecurringPaymentProfile
        stmt = (
            select(P.id, P.profile_id, P.next_billing_date, P.failure_count)
            .where(
                P.status == ProfileStatus.ACTIVE.value,
                P.deleted_at.is_(None),
                P.next_billing_date <= now,
                or_(P.end_date.is_(None), P.end_date > now),
            )
            .order_by(P.next_billing_date, P.id)
        )
        return self._select(stmt)

    def retry_candidates(
        self, max_attempts: int = 3, now: datetime | None = None
    ) -> list[DueProfile]:
        """Active, past-due profiles with 0 < failure_count <= max_attempts."""
        now = now or utcnow()
        P = RecurringPaymentProfile
        stmt = (
            select(P.id, P.profile_id, P.next_billing_date, P.failure_count)
            .where(
                P.status == ProfileStatus.ACTIVE.value,
                P.deleted_at.is_(None),
                P.failure_count > 0,
                P.failure_count <= max_attempts,
                P.next_billing_date <= now,
                or_(P.end_date.is_(None), P.end_date > now),
            )
            .order_by(P.next_billing_date, P.id)
        )
        return self._select(stmt)

    def _select(self, stmt: Any) -> list[DueProfile]:
        with self.session_factory() as session:
            return [DueProfile(*row) for row in session.execute(stmt).all()]

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def process_due_payments(
        self, force: bool = False, now: datetime | None = None
    ) -> BillingRunResult:
        """Charge every due profile once."""
        now = now or utcnow()
        profiles = self.due_profiles(force=force, now=now)
        logger.info("Recurring pass: %d due profile(s)", len(profiles))
        return self._run(profiles, now)

    def retry_failed_payments(
        self, max_attempts: int = 3, now: datetime | None = None
    ) -> BillingRunResult:
        """Re-run the same per-profile algorithm over failed, past-due profiles."""
        now = now or utcnow()
        profiles = self.retry_candidates(max_attempts=max_attempts, now=now)
        logger.info("Recurring retry pass: %d profile(s)", len(profiles))
        return self._run(profiles, now)

    def process_single(self, profile_id: str, now: datetime | None = None) -> ProfileOutcome:
        """Process one profile by its public id (operator-triggered).

        Raises:
            ProfileNotFoundError: unknown profile id
            ProfileSuspendedError: the profile is suspended
        """
        with self.session_factory() as session:
            profile = session.execute(
                select(RecurringPaymentProfile).where(
                    RecurringPaymentProfile.profile_id == profile_id,
                    RecurringPaymentProfile.deleted_at.is_(None),
                )
            ).scalar_one_or_none()
            if profile is None:
                raise ProfileNotFoundError(f"Recurring profile {profile_id} not found")
            if profile.is_suspended:
                raise ProfileSuspendedError(
                    f"Recurring profile {profile_id} is suspended",
                    profile_id=profile_id,
                    failure_count=profile.failure_count,
                )
            pk = profile.id
        return self.process_profile(pk, now=now)

    def _run(self, profiles: list[DueProfile], now: datetime) -> BillingRunResult:
        result = BillingRunResult()
        workers = min(self._config.scheduler_max_workers, len(profiles))
        if workers <= 1:
            for due in profiles:
                result.record(self.process_profile(due.id, now=now))
        else:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="billing") as pool:
                for outcome in pool.map(lambda d: self.process_profile(d.id, now=now), profiles):
                    result.record(outcome)
        logger.info(
            "Recurring pass done: processed=%d succeeded=%d pending=%d failed=%d skipped=%d",
            result.processed,
            result.succeeded,
            result.pending,
            result.failed,
            result.skipped,
        )
        return result

    # ------------------------------------------------------------------
    # Per-profile algorithm
    # ------------------------------------------------------------------

    def process_profile(self, profile_pk: int, now: datetime | None = None) -> ProfileOutcome:
        """Lock, check, charge and book one profile in a single transaction."""
        now = now or utcnow()
        events: list[DomainEvent] = []
        profile_ref = str(profile_pk)
        try:
            with self.session_factory() as session, session.begin():
                profile = self._lock_profile(session, profile_pk)
                if profile is not None:
                    profile_ref = profile.profile_id
                outcome = self._attempt(session, profile, now, events)
        except IntegrityError as e:
            taken = self._taken_by_concurrent_run(profile_pk, profile_ref, now)
            if taken is not None:
                return taken
            logger.exception("Recurring charge for profile %s failed", profile_ref)
            return self._record_error(profile_pk, profile_ref, e, now)
        except Exception as e:
            logger.exception("Recurring charge for profile %s failed", profile_ref)
            return self._record_error(profile_pk, profile_ref, e, now)

        if outcome.status is not OutcomeStatus.SKIPPED:
            logger.info(
                "Profile %s: %s %s", outcome.profile_id, outcome.status.value, outcome.message
            )
        self._publish(events)
        return outcome

    def _taken_by_concurrent_run(
        self, profile_pk: int, profile_ref: str, now: datetime
    ) -> ProfileOutcome | None:
        """Explain a cycle-index conflict: another run already holds this cycle."""
        with self.session_factory() as session:
            profile = session.get(RecurringPaymentProfile, profile_pk)
            if profile is None:
                return None
            if profile.is_due(now):
                existing = self._existing_cycle_payment(
                    session, profile, profile.next_billing_date
                )
                if existing is None:
                    return None
        logger.info("Profile %s: cycle already taken by a concurrent run", profile_ref)
        return ProfileOutcome(
            profile_id=profile_ref,
            status=OutcomeStatus.SKIPPED,
            message="Payment already processed for this billing cycle",
            already_processed=True,
        )

    def _lock_profile(self, session: Session, profile_pk: int) -> RecurringPaymentProfile | None:
        stmt = (
            select(RecurringPaymentProfile)
            .where(RecurringPaymentProfile.id == profile_pk)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return session.execute(stmt).scalar_one_or_none()

    def _attempt(
        self,
        session: Session,
        profile: RecurringPaymentProfile | None,
        now: datetime,
        events: list[DomainEvent],
    ) -> ProfileOutcome:
        if profile is None or not profile.is_due(now):
            return ProfileOutcome(
                profile_id=profile.profile_id if profile else "unknown",
                status=OutcomeStatus.SKIPPED,
                message="Profile is not active or not due",
            )

        cycle = profile.next_billing_date
        existing = self._existing_cycle_payment(session, profile, cycle)
        if existing is not None:
            completed = existing.payment_status == PaymentStatus.COMPLETED.value
            if completed and existing.billing_cycle_date == cycle:
                # Cycle already paid but never advanced; move on without charging.
                self._advance(profile)
            return ProfileOutcome(
                profile_id=profile.profile_id,
                status=OutcomeStatus.SUCCEEDED if completed else OutcomeStatus.PENDING,
                message="Payment already processed for this billing cycle",
                payment_id=existing.id,
                already_processed=True,
            )

        gateway = GatewayRegistry(session).get_usable(profile.gateway)
        client = self.clients.require(gateway.code, "recurring")

        payment = self._new_cycle_payment(profile, cycle)
        session.add(payment)
        session.flush()

        request = ChargeRequest(
            profile_id=profile.profile_id,
            invoice_number=payment.invoice_number,
            amount=payment.total_amount,
            currency=payment.currency,
            payment_method_token=profile.payment_method_token,
            description=payment.notes or "",
            gateway_profile_id=profile.gateway_profile_id,
            metadata=dict(payment.metadata_json),
        )
        charge = client.charge_recurring(gateway, request)

        if charge.success:
            return self._record_success(profile, payment, charge, cycle, now, events)
        if not PaymentStateMachine.is_terminal(charge.status.value):
            return self._record_in_flight(profile, payment, charge)
        return self._record_decline(profile, payment, charge, now, events)

    def _existing_cycle_payment(
        self,
        session: Session,
        profile: RecurringPaymentProfile,
        cycle: datetime,
    ) -> Payment | None:
        """A live (pending, processing or completed) payment covering this cycle."""
        window_start = datetime.combine(cycle.date(), time.min)
        stmt = (
            select(Payment)
            .where(
                Payment.recurring_payment_profile_id == profile.id,
                Payment.payment_status.in_(LIVE_CYCLE_STATUSES),
                Payment.deleted_at.is_(None),
                or_(
                    Payment.billing_cycle_date == cycle,
                    and_(
                        Payment.billing_cycle_date.is_(None),
                        Payment.created_at >= window_start,
                    ),
                ),
            )
            .order_by(Payment.id)
            .limit(1)
        )
        return session.execute(stmt).scalar_one_or_none()

    def _new_cycle_payment(self, profile: RecurringPaymentProfile, cycle: datetime) -> Payment:
        label = PAYABLE_DESCRIPTIONS.get(PayableKind(profile.payable_kind), "Payment")
        payment = Payment.create(
            amount=profile.amount,
            currency=profile.currency,
            payable_kind=profile.payable_kind,
            payable_id=profile.payable_id,
            user_id=profile.user_id,
            invoice_number=generate_invoice_number(),
            notes=f"Recurring payment for {label.lower()} ({profile.billing_period_name})",
            metadata={
                "recurring_profile_id": profile.profile_id,
                "billing_period": profile.billing_period,
                "billing_frequency": profile.billing_frequency,
            },
        )
        payment.recurring_payment_profile_id = profile.id
        payment.billing_cycle_date = cycle
        payment.payment_method = profile.gateway
        payment.merge_details(
            {
                "recurring": True,
                "profile_id": profile.profile_id,
                "billing_period": profile.billing_period,
                "billing_frequency": profile.billing_frequency,
                "card_last4": profile.card_last4,
                "card_brand": profile.card_brand,
            }
        )
        return payment

    def _advance(self, profile: RecurringPaymentProfile) -> None:
        """Move next_billing_date one cycle forward from its previous value."""
        anchor = profile.start_date.day if profile.period.value in ("month", "year") else None
        profile.next_billing_date = add_period(
            profile.next_billing_date,
            profile.period,
            profile.billing_frequency,
            anchor_day=anchor,
        )
        if profile.end_date is not None and profile.next_billing_date >= profile.end_date:
            profile.status = ProfileStatus.EXPIRED.value

    def _record_success(
        self,
        profile: RecurringPaymentProfile,
        payment: Payment,
        charge: ChargeResult,
        cycle: datetime,
        now: datetime,
        events: list[DomainEvent],
    ) -> ProfileOutcome:
        PaymentStateMachine.complete(
            payment,
            transaction_id=charge.transaction_id,
            paid_at=now,
            details={**charge.details, "provider_transaction_id": charge.transaction_id},
        )
        payment.gateway_reference = charge.transaction_id
        profile.failure_count = 0
        profile.merge_metadata({"last_charged_at": now.isoformat()})
        self._advance(profile)

        metadata = EventMetadata.create(actor_type="scheduler")
        events.append(
            RecurringChargeSucceeded(
                metadata=metadata,
                profile_id=profile.profile_id,
                payment_id=payment.id,
                amount=payment.total_amount,
                currency=payment.currency,
                billing_cycle_date=cycle,
                next_billing_date=profile.next_billing_date,
            )
        )
        events.append(
            PaymentProcessed(
                metadata=EventMetadata.create(
                    correlation_id=metadata.correlation_id,
                    causation_id=metadata.event_id,
                    actor_type="scheduler",
                ),
                payment_id=payment.id,
                invoice_number=payment.invoice_number,
                gateway=profile.gateway,
                amount=payment.total_amount,
                currency=payment.currency,
                transaction_id=payment.transaction_id,
                paid_at=payment.payment_date,
                payable_kind=payment.payable_kind,
                payable_id=payment.payable_id,
                user_id=payment.user_id,
            )
        )
        return ProfileOutcome(
            profile_id=profile.profile_id,
            status=OutcomeStatus.SUCCEEDED,
            message="Payment processed successfully",
            payment_id=payment.id,
        )

    def _record_in_flight(
        self,
        profile: RecurringPaymentProfile,
        payment: Payment,
        charge: ChargeResult,
    ) -> ProfileOutcome:
        """Keep an unsettled charge as the live payment for this cycle.

        Nothing is counted and the cycle stays put. The stored reference lets
        verification settle the payment; until then the cycle check blocks a
        second charge.
        """
        payment.gateway_reference = charge.reference or charge.transaction_id
        details = {**charge.details, "provider_status": charge.status.value}
        if charge.transaction_id:
            details["provider_transaction_id"] = charge.transaction_id
        if charge.status is PaymentStatus.PROCESSING:
            PaymentStateMachine.move_to(payment, PaymentStatus.PROCESSING, details=details)
        else:
            payment.merge_details(details)
        return ProfileOutcome(
            profile_id=profile.profile_id,
            status=OutcomeStatus.PENDING,
            message=charge.message or "Charge awaiting provider confirmation",
            payment_id=payment.id,
        )

    def _record_decline(
        self,
        profile: RecurringPaymentProfile,
        payment: Payment,
        charge: ChargeResult,
        now: datetime,
        events: list[DomainEvent],
    ) -> ProfileOutcome:
        reason = charge.message or "Charge declined"
        profile.failure_count += 1
        PaymentStateMachine.fail(
            payment,
            reason=reason,
            transaction_id=charge.transaction_id,
            details={**charge.details, "failure_count": profile.failure_count},
        )
        self._advance(profile)
        self._failure_events(profile, reason, now, events, retryable=False, payment_id=payment.id)
        return ProfileOutcome(
            profile_id=profile.profile_id,
            status=OutcomeStatus.FAILED,
            message=reason,
            payment_id=payment.id,
        )

    def _record_error(
        self,
        profile_pk: int,
        profile_ref: str,
        error: Exception,
        now: datetime,
    ) -> ProfileOutcome:
        """Book an exception outside the rolled-back attempt.

        The cycle is not advanced: the outcome of the charge is unknown and
        the next pass within the same due window tries again.
        """
        message = f"Payment processing error: {error}"
        retryable = isinstance(error, GatewayCommunicationError)
        events: list[DomainEvent] = []
        with self.session_factory() as session, session.begin():
            profile = self._lock_profile(session, profile_pk)
            if profile is not None and profile.is_active:
                profile.failure_count += 1
                profile.merge_metadata(
                    {"last_error": str(error), "last_error_at": now.isoformat()}
                )
                self._failure_events(profile, message, now, events, retryable=retryable)

        self._publish(events)
        return ProfileOutcome(
            profile_id=profile_ref,
            status=OutcomeStatus.FAILED,
            message=message,
            retryable=retryable,
        )

    def _failure_events(
        self,
        profile: RecurringPaymentProfile,
        reason: str,
        now: datetime,
        events: list[DomainEvent],
        *,
        retryable: bool,
        payment_id: int | None = None,
    ) -> None:
        """Emit failure events and suspend once the failure limit is reached."""
        metadata = EventMetadata.create(actor_type="scheduler")
        events.append(
            RecurringChargeFailed(
                metadata=metadata,
                profile_id=profile.profile_id,
                amount=profile.amount,
                currency=profile.currency,
                failure_reason=reason,
                failure_count=profile.failure_count,
                retryable=retryable,
                payment_id=payment_id,
            )
        )
        if profile.has_reached_max_failures and profile.is_active:
            suspension_reason = f"Exceeded maximum failures ({profile.max_failures})"
            profile.suspend(suspension_reason, now=now)
            logger.warning(
                "Suspended recurring profile %s: %s", profile.profile_id, suspension_reason
            )
            events.append(
                ProfileSuspended(
                    metadata=EventMetadata.create(
                        correlation_id=metadata.correlation_id,
                        causation_id=metadata.event_id,
                        actor_type="scheduler",
                    ),
                    profile_id=profile.profile_id,
                    failure_count=profile.failure_count,
                    max_failures=profile.max_failures,
                    reason=suspension_reason,
                )
            )

    def _publish(self, events: list[DomainEvent]) -> None:
        if self._emitter and self._config.emit_events and events:
            self._emitter.emit_all(events)
