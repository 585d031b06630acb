"""Pytest fixtures for billing engine tests."""

from __future__ import annotations

from collections.abc import Callable, Generator
from datetime import datetime
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from billing_engine.config import BillingConfig
from billing_engine.events import DomainEvent, EventEmitter
from billing_engine.gateways import ClientRegistry, StubGatewayClient
from billing_engine.models import (
    Base,
    Payment,
    PaymentGateway,
    PaymentStatus,
    RecurringPaymentProfile,
)
from billing_engine.services.state_machine import PaymentStateMachine

# In-memory SQLite shared across sessions; use Postgres for lock semantics.
TEST_DATABASE_URL = "sqlite://"


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    """Create a fresh schema per test."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)


@pytest.fixture
def session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Database session for each test."""
    with session_factory() as session:
        yield session
        session.rollback()


@pytest.fixture
def config() -> BillingConfig:
    return BillingConfig()


@pytest.fixture
def stub_client() -> StubGatewayClient:
    return StubGatewayClient()


@pytest.fixture
def clients(stub_client: StubGatewayClient) -> ClientRegistry:
    registry = ClientRegistry()
    registry.register(stub_client)
    return registry


@pytest.fixture
def emitter() -> EventEmitter:
    return EventEmitter()


@pytest.fixture
def events(emitter: EventEmitter) -> list[DomainEvent]:
    """Every event delivered by ``emitter``, in order."""
    received: list[DomainEvent] = []
    emitter.on_all(received.append)
    return received


@pytest.fixture
def gateways(session: Session) -> dict[str, PaymentGateway]:
    """An online stub gateway, an offline cash desk and a switched-off bKash."""
    rows = {
        "stub": PaymentGateway(
            name="Stub Pay",
            code="stub",
            type="other",
            is_active=True,
            is_online=True,
            has_api=True,
            api_key="stub-key",
            api_secret="stub-secret",
            sandbox_url="https://stub.invalid",
            callback_url="https://school.invalid/payments/stub/callback",
            fee_percentage=Decimal("1.50"),
            fee_fixed=Decimal("5.00"),
            min_amount=Decimal("10.00"),
            max_amount=Decimal("100000.00"),
        ),
        "cash": PaymentGateway(
            name="Cash",
            code="cash",
            type="other",
            is_active=True,
            is_online=False,
            has_api=False,
            instructions="Pay at the accounts office, 9am to 3pm.",
        ),
        "bkash": PaymentGateway(
            name="bKash",
            code="bkash",
            type="mobile_financial_service",
            is_active=False,
            is_online=True,
            api_key="app-key",
            api_secret="app-secret",
            sandbox_url="https://tokenized.sandbox.bka.sh/v1.2.0-beta/tokenized",
        ),
    }
    session.add_all(rows.values())
    session.commit()
    return rows


@pytest.fixture
def make_payment(session: Session) -> Callable[..., Payment]:
    """Factory for committed payments."""

    def _make(
        amount: Decimal | str = "1000.00",
        *,
        status: PaymentStatus = PaymentStatus.PENDING,
        gateway: str | None = None,
        gateway_reference: str | None = None,
        transaction_id: str | None = None,
        **kwargs: Any,
    ) -> Payment:
        payment = Payment.create(amount=Decimal(amount), **kwargs)
        payment.payment_method = gateway
        payment.gateway_reference = gateway_reference
        if status is PaymentStatus.COMPLETED:
            PaymentStateMachine.complete(payment, transaction_id=transaction_id)
        elif status is not PaymentStatus.PENDING:
            payment.payment_status = status.value
        session.add(payment)
        session.commit()
        return payment

    return _make


@pytest.fixture
def make_profile(session: Session) -> Callable[..., RecurringPaymentProfile]:
    """Factory for committed recurring profiles on the stub gateway."""

    def _make(
        next_billing_date: datetime = datetime(2025, 1, 1),
        *,
        amount: Decimal | str = "500.00",
        billing_period: str = "month",
        billing_frequency: int = 1,
        token: str | None = "tok_visa",
        max_failures: int = 3,
        **kwargs: Any,
    ) -> RecurringPaymentProfile:
        profile = RecurringPaymentProfile(
            user_id=kwargs.pop("user_id", 7),
            gateway=kwargs.pop("gateway", "stub"),
            amount=Decimal(amount),
            currency="BDT",
            billing_period=billing_period,
            billing_frequency=billing_frequency,
            start_date=kwargs.pop("start_date", next_billing_date),
            next_billing_date=next_billing_date,
            payment_method_token=token,
            card_last4="4242",
            card_brand="visa",
            max_failures=max_failures,
            **kwargs,
        )
        session.add(profile)
        session.commit()
        return profile

    return _make
