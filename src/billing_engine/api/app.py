"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session, sessionmaker

from billing_engine import __version__
from billing_engine.api.routes import callbacks_router, health_router
from billing_engine.config import BillingConfig, get_settings
from billing_engine.database import dispose_db, init_db
from billing_engine.events import EventEmitter
from billing_engine.exceptions import BillingError
from billing_engine.gateways.registry import ClientRegistry

logger = logging.getLogger(__name__)

# Error code -> HTTP status; anything else is a 400.
ERROR_STATUS = {
    "gateway_not_found": status.HTTP_404_NOT_FOUND,
    "payment_not_found": status.HTTP_404_NOT_FOUND,
    "refund_not_found": status.HTTP_404_NOT_FOUND,
    "profile_not_found": status.HTTP_404_NOT_FOUND,
    "already_processed": status.HTTP_409_CONFLICT,
    "provider_mismatch": status.HTTP_409_CONFLICT,
    "invalid_transition": status.HTTP_409_CONFLICT,
    "refund_not_cancellable": status.HTTP_409_CONFLICT,
    "gateway_inactive": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "gateway_misconfigured": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "unsupported_operation": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "gateway_communication_error": status.HTTP_502_BAD_GATEWAY,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    owns_db = app.state.session_factory is None
    if owns_db:
        app.state.session_factory = init_db()
    yield
    app.state.clients.close()
    if owns_db:
        dispose_db()


def create_app(
    *,
    session_factory: sessionmaker[Session] | None = None,
    clients: ClientRegistry | None = None,
    emitter: EventEmitter | None = None,
    config: BillingConfig | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    app = FastAPI(
        title="Billing Engine API",
        description="Gateway callbacks for payments and refunds",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.session_factory = session_factory
    app.state.clients = clients or ClientRegistry.default(settings.gateway_client_config())
    app.state.emitter = emitter or EventEmitter()
    app.state.billing_config = config or settings.billing_config()

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
        """Map typed billing errors to their HTTP status."""
        body = exc.to_dict()
        code = body.pop("code")
        message = body.pop("message")
        return JSONResponse(
            status_code=ERROR_STATUS.get(code, status.HTTP_400_BAD_REQUEST),
            content={"detail": message, "code": code, "context": body or None},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.error("Unhandled error on %s", request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(callbacks_router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
