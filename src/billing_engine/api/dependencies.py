"""FastAPI dependencies for dependency injection."""

from collections.abc import Generator
from typing import Annotated, Any
from urllib.parse import parse_qsl

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from billing_engine.config import BillingConfig
from billing_engine.database import get_session_factory
from billing_engine.events import EventEmitter
from billing_engine.gateways.registry import ClientRegistry
from billing_engine.services import PaymentService, RefundService


def get_db_session(request: Request) -> Generator[Session, None, None]:
    """Get database session dependency."""
    factory = request.app.state.session_factory or get_session_factory()
    with factory() as session:
        yield session


def get_clients(request: Request) -> ClientRegistry:
    return request.app.state.clients


def get_emitter(request: Request) -> EventEmitter:
    return request.app.state.emitter


def get_billing_config(request: Request) -> BillingConfig:
    return request.app.state.billing_config


async def get_callback_payload(request: Request) -> dict[str, Any]:
    """Merge query parameters with a JSON or form-encoded body.

    Providers deliver callbacks as redirects (query string), form posts or
    JSON; the adapters only need a flat mapping.
    """
    payload: dict[str, Any] = dict(request.query_params)
    body = await request.body()
    if not body:
        return payload

    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            data = await request.json()
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Malformed JSON body",
            )
        if not isinstance(data, dict):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Callback body must be a JSON object",
            )
        payload.update(data)
    else:
        payload.update(parse_qsl(body.decode("utf-8", errors="replace")))
    return payload


# Type aliases for cleaner dependency injection
DbSession = Annotated[Session, Depends(get_db_session)]
Clients = Annotated[ClientRegistry, Depends(get_clients)]
Emitter = Annotated[EventEmitter, Depends(get_emitter)]
Config = Annotated[BillingConfig, Depends(get_billing_config)]
CallbackPayload = Annotated[dict[str, Any], Depends(get_callback_payload)]


def get_payment_service(
    db: DbSession, clients: Clients, emitter: Emitter, config: Config
) -> PaymentService:
    return PaymentService(db, clients, emitter=emitter, config=config)


def get_refund_service(
    db: DbSession, clients: Clients, emitter: Emitter, config: Config
) -> RefundService:
    return RefundService(db, clients, emitter=emitter, config=config)


PaymentServiceDep = Annotated[PaymentService, Depends(get_payment_service)]
RefundServiceDep = Annotated[RefundService, Depends(get_refund_service)]
