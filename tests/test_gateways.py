"""Tests for gateway adapters against mocked provider endpoints."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from typing import Any

import httpx
import pytest

from billing_engine.exceptions import (
    GatewayCommunicationError,
    GatewayMisconfiguredError,
    UnsupportedOperationError,
)
from billing_engine.gateways import (
    BkashClient,
    ChargeRequest,
    ClientRegistry,
    NagadClient,
    PaymentContext,
    RefundRequest,
    RocketClient,
    StubGatewayClient,
)
from billing_engine.gateways.http import parse_provider_time
from billing_engine.models import PaymentGateway, PaymentStatus, RefundStatus

Reply = dict[str, Any] | Callable[[httpx.Request], httpx.Response]


class MockProvider:
    """Routes requests by path suffix and records them."""

    def __init__(self, routes: dict[str, Reply]):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for suffix, reply in self.routes.items():
            if request.url.path.endswith(suffix):
                if callable(reply):
                    return reply(request)
                return httpx.Response(200, json=reply)
        return httpx.Response(404, json={"message": "no such endpoint"})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def paths(self) -> list[str]:
        return [r.url.path.rsplit("/", 1)[-1] or r.url.path for r in self.requests]

    def body(self, index: int) -> dict[str, Any]:
        return json.loads(self.requests[index].content)


def _gateway(code: str, **overrides: Any) -> PaymentGateway:
    values: dict[str, Any] = {
        "name": code.title(),
        "code": code,
        "is_active": True,
        "is_online": True,
        "has_api": True,
        "test_mode": True,
        "api_key": "app-key",
        "api_secret": "app-secret",
        "api_username": "merchant",
        "api_password": "hunter2",
        "sandbox_url": f"https://sandbox.{code}.invalid/api",
        "callback_url": f"https://school.invalid/payments/{code}/callback",
        "success_url": f"https://school.invalid/payments/{code}/success",
        "currency": "BDT",
        "extra_attributes": {},
    }
    values.update(overrides)
    return PaymentGateway(**values)


def _context(**overrides: Any) -> PaymentContext:
    values: dict[str, Any] = {
        "payment_id": 42,
        "invoice_number": "INV20250101-ABC123",
        "amount": Decimal("1050"),
        "currency": "BDT",
        "description": "Student fee payment",
    }
    values.update(overrides)
    return PaymentContext(**values)


GRANT = {"id_token": "token-123", "statusCode": "0000"}


class TestBkashClient:
    def test_initialize_grants_token_then_creates(self):
        provider = MockProvider(
            {
                "/token/grant": GRANT,
                "/checkout/create": {
                    "paymentID": "TR0011ABC",
                    "bkashURL": "https://sandbox.payment.bkash.com/?paymentId=TR0011ABC",
                    "statusCode": "0000",
                },
            }
        )
        client = BkashClient(transport=provider.transport)

        response = client.initialize(_gateway("bkash"), _context(), {})

        assert response.correlation_id == "TR0011ABC"
        assert response.redirect_url.endswith("TR0011ABC")
        assert response.details["bkash_payment_id"] == "TR0011ABC"
        assert provider.paths() == ["grant", "create"]
        create = provider.body(1)
        assert create["amount"] == "1050.00"
        assert create["merchantInvoiceNumber"] == "INV20250101-ABC123"
        assert create["mode"] == "0011"
        assert provider.requests[1].headers["Authorization"] == "token-123"

    def test_callback_falls_back_to_status_query(self):
        provider = MockProvider(
            {
                "/token/grant": GRANT,
                "/checkout/execute": {"statusCode": "2117", "statusMessage": "Already executed"},
                "/payment/status": {
                    "paymentID": "TR0011ABC",
                    "transactionStatus": "Completed",
                    "trxID": "BK123",
                },
            }
        )
        client = BkashClient(transport=provider.transport)

        result = client.confirm_callback(
            _gateway("bkash"),
            _context(gateway_reference="TR0011ABC"),
            {"paymentID": "TR0011ABC", "status": "failure"},
        )

        assert result.status is PaymentStatus.COMPLETED
        assert result.transaction_id == "BK123"
        assert provider.paths()[-1] == "status"

    def test_callback_without_stored_payment_id_is_pending(self):
        provider = MockProvider({"/token/grant": GRANT})
        client = BkashClient(transport=provider.transport)

        result = client.confirm_callback(
            _gateway("bkash"),
            _context(),
            {"paymentID": "TR-SOMEONE-ELSE", "merchantInvoiceNumber": "INV20250101-ABC123"},
        )

        assert result.status is PaymentStatus.PENDING
        assert provider.requests == []

    def test_status_reports_what_it_is_about(self):
        provider = MockProvider(
            {
                "/token/grant": GRANT,
                "/payment/status": {
                    "paymentID": "TR1",
                    "transactionStatus": "Completed",
                    "trxID": "BK9",
                    "amount": "1.00",
                    "merchantInvoiceNumber": "INV20250101-XYZ789",
                },
            }
        )
        client = BkashClient(transport=provider.transport)
        context = _context(gateway_reference="TR1")

        result = client.query_status(_gateway("bkash"), context)

        assert result.invoice_number == "INV20250101-XYZ789"
        assert result.amount == Decimal("1.00")
        assert "INV20250101-XYZ789" in result.mismatch(context)

    def test_matching_status_has_no_mismatch(self):
        provider = MockProvider(
            {
                "/token/grant": GRANT,
                "/payment/status": {
                    "transactionStatus": "Completed",
                    "amount": "1050",
                    "merchantInvoiceNumber": "INV20250101-ABC123",
                },
            }
        )
        client = BkashClient(transport=provider.transport)
        context = _context(gateway_reference="TR1")

        assert client.query_status(_gateway("bkash"), context).mismatch(context) is None

    def test_unreadable_amount_is_a_communication_error(self):
        provider = MockProvider(
            {
                "/token/grant": GRANT,
                "/payment/status": {"transactionStatus": "Completed", "amount": "lots"},
            }
        )
        client = BkashClient(transport=provider.transport)

        with pytest.raises(GatewayCommunicationError):
            client.query_status(_gateway("bkash"), _context(gateway_reference="TR1"))

    @pytest.mark.parametrize(
        ("record", "expected"),
        [
            ({"sku": "ref-a", "refundTrxID": "RFD-A"}, RefundStatus.COMPLETED),
            ({"sku": "ref-b", "refundTrxID": "RFD-B"}, RefundStatus.PENDING),
            ({"refundTrxID": "RFD-B"}, RefundStatus.PENDING),
        ],
    )
    def test_refund_query_only_settles_its_own_record(self, record, expected):
        provider = MockProvider(
            {
                "/token/grant": GRANT,
                "/payment/refund": {"transactionStatus": "Completed", **record},
            }
        )
        client = BkashClient(transport=provider.transport)
        request = RefundRequest(
            refund_reference="ref-a",
            amount=Decimal("300"),
            currency="BDT",
            reason=None,
            payment=_context(gateway_reference="TR1", transaction_id="BK123"),
        )

        response = client.query_refund(_gateway("bkash"), request)

        assert response.status is expected
        assert provider.body(1)["sku"] == "ref-a"

    def test_refund_query_matches_known_refund_transaction(self):
        provider = MockProvider(
            {
                "/token/grant": GRANT,
                "/payment/refund": {"transactionStatus": "Completed", "refundTrxID": "RFD-A"},
            }
        )
        client = BkashClient(transport=provider.transport)
        request = RefundRequest(
            refund_reference="ref-a",
            amount=Decimal("300"),
            currency="BDT",
            reason=None,
            payment=_context(gateway_reference="TR1", transaction_id="BK123"),
            refund_transaction_id="RFD-A",
        )

        assert client.query_refund(_gateway("bkash"), request).status is RefundStatus.COMPLETED

    def test_unsettled_recurring_charge_keeps_its_reference(self):
        provider = MockProvider(
            {
                "/token/grant": GRANT,
                "/checkout/create": {"paymentID": "TR-REC-1", "statusCode": "0000"},
                "/checkout/execute": {"paymentID": "TR-REC-1", "transactionStatus": "Initiated"},
            }
        )
        client = BkashClient(transport=provider.transport)

        result = client.charge_recurring(
            _gateway("bkash"),
            ChargeRequest(
                profile_id="RPP1",
                invoice_number="INV1",
                amount=Decimal("500"),
                currency="BDT",
                payment_method_token="AGR-1",
                description="Monthly",
            ),
        )

        assert result.success is False
        assert result.status is PaymentStatus.PENDING
        assert result.reference == "TR-REC-1"

    @pytest.mark.parametrize(
        ("provider_status", "expected"),
        [
            ("Completed", PaymentStatus.COMPLETED),
            ("Refunded", PaymentStatus.COMPLETED),
            ("Initiated", PaymentStatus.PENDING),
            ("Incomplete", PaymentStatus.PROCESSING),
            ("Failed", PaymentStatus.FAILED),
            ("Something new", PaymentStatus.PENDING),
        ],
    )
    def test_status_mapping(self, provider_status, expected):
        provider = MockProvider(
            {
                "/token/grant": GRANT,
                "/payment/status": {"transactionStatus": provider_status},
            }
        )
        client = BkashClient(transport=provider.transport)

        result = client.query_status(_gateway("bkash"), _context(gateway_reference="TR1"))

        assert result.status is expected

    def test_refund_error_code_is_a_decline(self):
        provider = MockProvider(
            {
                "/token/grant": GRANT,
                "/payment/refund": {"statusCode": "2071", "statusMessage": "Refund limit exceeded"},
            }
        )
        client = BkashClient(transport=provider.transport)
        request = RefundRequest(
            refund_reference="ref-1",
            amount=Decimal("300"),
            currency="BDT",
            reason="Duplicate",
            payment=_context(gateway_reference="TR1", transaction_id="BK123"),
        )

        response = client.refund(_gateway("bkash"), request)

        assert response.status is RefundStatus.FAILED
        assert response.message == "Refund limit exceeded"
        assert provider.body(1)["sku"] == "ref-1"
        assert provider.body(1)["amount"] == "300.00"

    def test_recurring_charge_without_agreement_declines_locally(self):
        provider = MockProvider({})
        client = BkashClient(transport=provider.transport)

        result = client.charge_recurring(
            _gateway("bkash"),
            ChargeRequest(
                profile_id="RPP1",
                invoice_number="INV1",
                amount=Decimal("500"),
                currency="BDT",
                payment_method_token=None,
                description="Monthly",
            ),
        )

        assert result.success is False
        assert provider.requests == []


class TestHttpFailures:
    def test_timeout_is_retryable_communication_error(self):
        def timeout(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        client = BkashClient(transport=MockProvider({"/token/grant": timeout}).transport)

        with pytest.raises(GatewayCommunicationError) as exc_info:
            client.query_status(_gateway("bkash"), _context(gateway_reference="TR1"))

        assert exc_info.value.retryable is True

    def test_server_error_carries_status(self):
        client = BkashClient(
            transport=MockProvider(
                {"/token/grant": lambda r: httpx.Response(503, json={"message": "maintenance"})}
            ).transport
        )

        with pytest.raises(GatewayCommunicationError) as exc_info:
            client.query_status(_gateway("bkash"), _context(gateway_reference="TR1"))

        assert exc_info.value.status_code == 503
        assert "maintenance" in exc_info.value.message

    def test_non_json_body(self):
        client = NagadClient(
            transport=MockProvider(
                {"/verify/payment/": lambda r: httpx.Response(200, text="<html>oops</html>")}
            ).transport
        )

        with pytest.raises(GatewayCommunicationError):
            client.query_status(_gateway("nagad"), _context(gateway_reference="NGD1"))

    def test_missing_base_url_is_misconfiguration(self):
        client = BkashClient(transport=MockProvider({}).transport)

        with pytest.raises(GatewayMisconfiguredError):
            client.query_status(
                _gateway("bkash", sandbox_url=None), _context(gateway_reference="TR1")
            )

    def test_credentials_never_logged(self, caplog):
        provider = MockProvider(
            {
                "/token/grant": GRANT,
                "/payment/status": lambda r: httpx.Response(500, json={"message": "boom"}),
            }
        )
        client = BkashClient(transport=provider.transport)

        with caplog.at_level(logging.DEBUG, logger="billing_engine"):
            with pytest.raises(GatewayCommunicationError):
                client.query_status(_gateway("bkash"), _context(gateway_reference="TR1"))

        for secret in ("app-secret", "hunter2", "token-123"):
            assert secret not in caplog.text


class TestNagadClient:
    def test_initialize_and_verify(self):
        provider = MockProvider(
            {
                "/checkout/initialize/": {
                    "paymentReferenceId": "NGD-REF-1",
                    "callBackUrl": "https://sandbox.nagad.invalid/checkout",
                },
                "/verify/payment/": {
                    "status": "Success",
                    "issuerPaymentRefNo": "NG999",
                    "issuerPaymentDateTime": "20250102100000",
                },
            }
        )
        client = NagadClient(transport=provider.transport)
        gateway = _gateway("nagad")

        init = client.initialize(gateway, _context(), {})
        result = client.query_status(gateway, _context(gateway_reference=init.correlation_id))

        assert init.correlation_id == "NGD-REF-1"
        assert init.redirect_url == "https://sandbox.nagad.invalid/checkout?paymentRefId=NGD-REF-1"
        assert provider.requests[0].headers["X-KM-Api-Version"] == "v-0.2.0"
        assert result.status is PaymentStatus.COMPLETED
        assert result.transaction_id == "NG999"
        assert result.paid_at == datetime(2025, 1, 2, 10, 0, 0)

    def test_callback_never_verifies_a_payload_reference(self):
        provider = MockProvider({"/verify/payment/": {"status": "Success"}})
        client = NagadClient(transport=provider.transport)

        result = client.confirm_callback(
            _gateway("nagad"), _context(), {"payment_ref_id": "NGD-SOMEONE-ELSE"}
        )

        assert result.status is PaymentStatus.PENDING
        assert provider.requests == []

    def test_callback_reference_keys(self):
        reference = NagadClient().callback_reference(
            {"order_id": "INV1", "payment_ref_id": "NGD-REF-1", "status": "Success"}
        )

        assert reference.invoice_number == "INV1"
        assert reference.correlation_id == "NGD-REF-1"


class TestRocketClient:
    def test_initialize_is_local(self):
        provider = MockProvider({})
        client = RocketClient(transport=provider.transport)

        response = client.initialize(_gateway("rocket"), _context(), {})

        assert provider.requests == []
        assert response.correlation_id.startswith("TXN")
        assert response.redirect_url == "https://school.invalid/payments/rocket/success?payment_id=42"
        assert "*322#" in response.details["instructions"]
        assert response.details["biller_id"] == "SCHOOL"

    def test_status_uses_bearer_token(self):
        provider = MockProvider(
            {
                "/token": {"access_token": "rocket-token"},
                "/transaction/status/TXN1": {"status": "success", "rocket_trx_id": "RK1"},
            }
        )
        client = RocketClient(transport=provider.transport)

        result = client.query_status(_gateway("rocket"), _context(gateway_reference="TXN1"))

        assert result.status is PaymentStatus.COMPLETED
        assert result.transaction_id == "RK1"
        assert provider.requests[1].headers["Authorization"] == "Bearer rocket-token"


class TestClientRegistry:
    def test_capability_checks(self):
        registry = ClientRegistry()
        registry.register(NagadClient())
        registry.register(StubGatewayClient())

        assert registry.supports_refunds("nagad") is True
        assert registry.supports_refunds("cash") is False
        assert registry.supports_refunds(None) is False
        assert registry.codes == ["nagad", "stub"]
        with pytest.raises(UnsupportedOperationError):
            registry.require("nagad", "recurring")

    def test_unknown_adapter_is_misconfiguration(self):
        with pytest.raises(GatewayMisconfiguredError):
            ClientRegistry().get("paypal")

    def test_codes_are_normalized(self):
        registry = ClientRegistry()
        registry.register(StubGatewayClient(), code="Stub Pay")

        assert registry.find("stub-pay") is not None


def test_parse_provider_time_converts_to_utc():
    assert parse_provider_time("2025-01-02T10:00:00:123 GMT+0600") == datetime(
        2025, 1, 2, 4, 0, 0, 123000
    )
    assert parse_provider_time("not a date") is None
    assert parse_provider_time(None) is None
