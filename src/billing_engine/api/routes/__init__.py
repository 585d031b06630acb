"""API routes."""

from billing_engine.api.routes.callbacks import router as callbacks_router
from billing_engine.api.routes.health import router as health_router

__all__ = ["callbacks_router", "health_router"]
