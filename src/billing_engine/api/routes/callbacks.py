"""Gateway callback endpoints.

Callbacks are treated as hints: the payload only identifies the payment or
refund, and the final state always comes from re-querying the provider.
"""

import logging

from fastapi import APIRouter, Path

from billing_engine.api.dependencies import (
    CallbackPayload,
    PaymentServiceDep,
    RefundServiceDep,
)
from billing_engine.api.schemas import (
    ErrorResponse,
    PaymentCallbackResponse,
    RefundCallbackResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["callbacks"])

_ERRORS = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
}


@router.post(
    "/payments/{gateway_code}/callback",
    response_model=PaymentCallbackResponse,
    responses=_ERRORS,
)
def payment_callback(
    service: PaymentServiceDep,
    payload: CallbackPayload,
    gateway_code: str = Path(..., max_length=64),
) -> PaymentCallbackResponse:
    """Reconcile a payment after the provider notified or redirected the payer."""
    logger.info("Payment callback from %s", gateway_code)
    payment = service.process_callback(gateway_code, payload)
    return PaymentCallbackResponse.model_validate(payment)


@router.post(
    "/refunds/{gateway_code}/callback",
    response_model=RefundCallbackResponse,
    responses=_ERRORS,
)
def refund_callback(
    service: RefundServiceDep,
    payload: CallbackPayload,
    gateway_code: str = Path(..., max_length=64),
) -> RefundCallbackResponse:
    """Settle a pending refund after a provider refund notification."""
    logger.info("Refund callback from %s", gateway_code)
    refund = service.process_refund_callback(gateway_code, payload)
    return RefundCallbackResponse.model_validate(refund)
