"""
Payment gateway callback.

The gateway reports the outcome of a payment started during booking
(or of a book order) some time after the dialogue has finished.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, status
from pydantic import BaseModel, Field

from counselbot.api.routes.schemas import ErrorResponse
from counselbot.config import settings
from counselbot.models.database import AppointmentStatus, PaymentStatus
from counselbot.services.payments import confirm_payment

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])


class PaymentCallback(BaseModel):
    """Payment result posted by the gateway."""

    reference: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Appointment code or ORDER-<id>",
        examples=["K7PX2M"],
    )
    paid: bool
    transaction_id: Optional[str] = Field(default=None, max_length=100)
    amount_cents: Optional[int] = Field(default=None, ge=0)
    payment_method: Optional[str] = Field(default=None, max_length=50)


class PaymentCallbackResponse(BaseModel):
    reference: str
    reference_type: str
    payment_status: PaymentStatus
    status: Optional[AppointmentStatus] = None
    duplicate: bool = False


@router.post(
    "/callback",
    response_model=PaymentCallbackResponse,
    summary="Payment confirmation",
    responses={
        401: {"model": ErrorResponse, "description": "Bad gateway key"},
        404: {"model": ErrorResponse, "description": "Unknown reference"},
    },
)
async def payment_callback(
    request: PaymentCallback,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> PaymentCallbackResponse:
    if settings.payment_api_key and x_api_key != settings.payment_api_key:
        logger.warning(f"Rejected payment callback for {request.reference}: bad API key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )

    outcome = await confirm_payment(
        reference=request.reference,
        paid=request.paid,
        transaction_id=request.transaction_id,
        amount_cents=request.amount_cents,
        payment_method=request.payment_method,
        gateway_response=request.model_dump(),
    )
    return PaymentCallbackResponse(
        reference=outcome.reference,
        reference_type=outcome.reference_type,
        payment_status=outcome.payment_status,
        status=outcome.status,
        duplicate=outcome.duplicate,
    )
