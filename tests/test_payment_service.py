"""Tests for payment initialization, callbacks and verification."""

from datetime import timedelta
from decimal import Decimal

import pytest

from billing_engine.events import PaymentFailed, PaymentProcessed
from billing_engine.exceptions import (
    AlreadyProcessedError,
    GatewayCommunicationError,
    GatewayInactiveError,
    GatewayMisconfiguredError,
    GatewayNotFoundError,
    InvalidAmountError,
    PaymentNotFoundError,
    ProviderMismatchError,
)
from billing_engine.gateways import PaymentContext
from billing_engine.models import PaymentStatus, utcnow
from billing_engine.services import PaymentService


@pytest.fixture
def service(session, clients, emitter, config, gateways):
    return PaymentService(session, clients, emitter=emitter, config=config)


@pytest.fixture
def initialized(service, make_payment):
    """A pending payment started on the stub gateway."""
    payment = make_payment("1000.00")
    result = service.initialize_payment(payment, "stub")
    return payment, result


class TestInitialize:
    def test_online_gateway_returns_redirect_and_fee(self, initialized):
        payment, result = initialized

        assert result.is_offline is False
        assert result.redirect_url == "https://stub.invalid/checkout/STUB-000001"
        assert result.reference == "STUB-000001"
        assert result.fee == Decimal("20.00")
        assert payment.payment_method == "stub"
        assert payment.gateway_reference == "STUB-000001"
        assert payment.payment_status == PaymentStatus.PENDING.value
        assert payment.payment_details["stub_session_id"] == "STUB-000001"

    def test_offline_gateway_returns_instructions(self, service, make_payment):
        payment = make_payment("750.00")

        result = service.initialize_payment(payment, "cash")

        assert result.is_offline is True
        assert result.instructions == "Pay at the accounts office, 9am to 3pm."
        assert result.reference == payment.invoice_number
        assert result.redirect_url is None
        assert payment.payment_method == "cash"
        assert payment.payment_status == PaymentStatus.PENDING.value

    def test_inactive_gateway(self, service, make_payment):
        with pytest.raises(GatewayInactiveError):
            service.initialize_payment(make_payment(), "bkash")

    def test_unknown_gateway(self, service, make_payment):
        with pytest.raises(GatewayNotFoundError):
            service.initialize_payment(make_payment(), "paypal")

    def test_misconfigured_gateway(self, service, session, gateways, make_payment):
        gateways["stub"].api_key = None
        session.commit()

        with pytest.raises(GatewayMisconfiguredError):
            service.initialize_payment(make_payment(), "stub")

    def test_amount_outside_limits_is_rejected_before_remote_call(
        self, service, stub_client, make_payment
    ):
        payment = make_payment("5.00")

        with pytest.raises(InvalidAmountError):
            service.initialize_payment(payment, "stub")

        assert payment.gateway_reference is None
        assert stub_client._sessions == {}

    def test_terminal_payment_cannot_be_reinitialized(self, service, make_payment):
        payment = make_payment(status=PaymentStatus.COMPLETED, transaction_id="TRX0")

        with pytest.raises(AlreadyProcessedError):
            service.initialize_payment(payment, "stub")


class TestCallbacks:
    def test_provider_confirmation_completes_payment(self, service, stub_client, initialized, events):
        payment, result = initialized
        stub_client.simulate_payment(result.reference, "completed", trx_id="TRX777")

        updated = service.process_callback("stub", {"session_id": result.reference})

        assert updated.payment_status == PaymentStatus.COMPLETED.value
        assert updated.transaction_id == "TRX777"
        assert updated.paid_amount == updated.total_amount
        assert updated.due_amount == Decimal("0.00")
        assert updated.payment_details["provider_transaction_id"] == "TRX777"
        assert [type(e) for e in events] == [PaymentProcessed]
        assert events[0].transaction_id == "TRX777"

    def test_forged_success_callback_is_not_trusted(self, service, stub_client, initialized, events):
        payment, result = initialized
        stub_client.simulate_payment(result.reference, "failed", message="Payer cancelled")

        updated = service.process_callback(
            "stub",
            {"invoice_number": payment.invoice_number, "status": "success", "trx_id": "FAKE"},
        )

        assert updated.payment_status == PaymentStatus.FAILED.value
        assert updated.transaction_id != "FAKE"
        assert updated.failure_reason == "Payer cancelled"
        assert updated.paid_amount == Decimal("0.00")
        assert [type(e) for e in events] == [PaymentFailed]

    def test_second_callback_is_already_processed(self, service, stub_client, initialized, events):
        payment, result = initialized
        stub_client.simulate_payment(result.reference, "completed", trx_id="TRX1")
        service.process_callback("stub", {"session_id": result.reference})

        stub_client.simulate_payment(result.reference, "failed")
        with pytest.raises(AlreadyProcessedError):
            service.process_callback("stub", {"session_id": result.reference})

        assert payment.payment_status == PaymentStatus.COMPLETED.value
        assert len(events) == 1

    def test_unknown_payment(self, service, initialized):
        with pytest.raises(PaymentNotFoundError):
            service.process_callback("stub", {"session_id": "STUB-999999"})

    def test_empty_payload(self, service, initialized):
        with pytest.raises(PaymentNotFoundError):
            service.process_callback("stub", {})

    def test_correlation_id_is_scoped_to_gateway(self, service, session, initialized):
        payment, result = initialized
        payment.payment_method = "cash"
        session.commit()

        with pytest.raises(PaymentNotFoundError):
            service.process_callback("stub", {"session_id": result.reference})

    def test_invoice_of_payment_never_started_on_gateway(
        self, service, stub_client, gateways, make_payment, events
    ):
        victim = make_payment("1000.00")
        # A checkout the caller completed for a small amount, unknown to us.
        other = stub_client.initialize(
            gateways["stub"], PaymentContext.from_payment(make_payment("10.00")), {}
        )
        stub_client.simulate_payment(other.correlation_id, "completed", trx_id="TRX-OTHER")

        with pytest.raises(PaymentNotFoundError):
            service.process_callback(
                "stub",
                {"invoice_number": victim.invoice_number, "session_id": other.correlation_id},
            )

        assert victim.payment_status == PaymentStatus.PENDING.value
        assert victim.paid_amount == Decimal("0.00")
        assert events == []

    def test_provider_result_for_another_amount_is_rejected(
        self, service, stub_client, initialized, events
    ):
        payment, result = initialized
        stub_client.simulate_payment(
            result.reference, "completed", trx_id="TRX5", amount=Decimal("1.00")
        )

        with pytest.raises(ProviderMismatchError):
            service.process_callback("stub", {"invoice_number": payment.invoice_number})

        assert payment.payment_status == PaymentStatus.PENDING.value
        assert payment.transaction_id is None
        assert events == []

    def test_communication_error_leaves_payment_untouched(
        self, service, stub_client, initialized
    ):
        payment, result = initialized
        stub_client.fail_next("query_status")

        with pytest.raises(GatewayCommunicationError) as exc_info:
            service.process_callback("stub", {"session_id": result.reference})

        assert exc_info.value.retryable is True
        assert payment.payment_status == PaymentStatus.PENDING.value


class TestVerify:
    def test_pending_stays_pending(self, service, initialized, events):
        payment, _ = initialized

        verified = service.verify_payment(payment)

        assert verified.payment_status == PaymentStatus.PENDING.value
        assert verified.payment_details["provider_status"] == "initiated"
        assert events == []

    def test_processing_is_recorded(self, service, stub_client, initialized):
        payment, result = initialized
        stub_client.simulate_payment(result.reference, "processing")

        assert service.verify_payment(payment).payment_status == "processing"

    def test_verify_is_idempotent(self, service, stub_client, initialized, events):
        payment, result = initialized
        stub_client.simulate_payment(result.reference, "completed", trx_id="TRX1")

        first = service.verify_payment(payment)
        paid_at = first.payment_date
        second = service.verify_payment(payment)

        assert second.payment_status == PaymentStatus.COMPLETED.value
        assert second.payment_date == paid_at
        assert len(events) == 1

    def test_offline_payment_is_not_queried(self, service, make_payment):
        payment = make_payment()
        service.initialize_payment(payment, "cash")

        assert service.verify_payment(payment).payment_status == PaymentStatus.PENDING.value

    def test_verify_pending_sweep(self, service, stub_client, make_payment):
        done = make_payment("200.00")
        waiting = make_payment("300.00")
        service.initialize_payment(done, "stub")
        service.initialize_payment(waiting, "stub")
        stub_client.simulate_payment(done.gateway_reference, "completed", trx_id="TRX-DONE")

        summary = service.verify_pending(timedelta(minutes=15), now=utcnow() + timedelta(hours=1))

        assert summary.checked == 2
        assert summary.updated == 1
        assert summary.unchanged == 1
        assert summary.success

    def test_verify_pending_respects_cutoff(self, service, initialized):
        summary = service.verify_pending(timedelta(minutes=15))

        assert summary.checked == 0

    def test_verify_pending_collects_errors(self, service, stub_client, initialized):
        stub_client.fail_next("query_status")

        summary = service.verify_pending(timedelta(minutes=1), now=utcnow() + timedelta(hours=1))

        assert summary.checked == 1
        assert not summary.success
        assert summary.errors[0]["code"] == "gateway_communication_error"
