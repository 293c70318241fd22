"""Request and response bodies shared by the HTTP routes."""

import uuid
from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, Field

from counselbot.models.database import AppointmentStatus, PaymentStatus


class ErrorResponse(BaseModel):
    """Error response."""

    error: str
    detail: Optional[str] = None


class ClientIn(BaseModel):
    full_name: str = Field(..., min_length=2, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=50)
    email: Optional[str] = Field(default=None, max_length=255)
    date_of_birth: Optional[date] = None


class AppointmentCreate(BaseModel):
    """Reservation request."""

    provider_id: uuid.UUID
    start: datetime = Field(
        ...,
        description="Start instant. Without an offset it is read in the business timezone.",
        examples=["2026-11-02T14:00:00+03:00"],
    )
    end: datetime
    status: AppointmentStatus = AppointmentStatus.PENDING
    client: Optional[ClientIn] = None
    session_type: Optional[str] = Field(default=None, max_length=50)
    payment_method: Optional[str] = Field(default=None, max_length=50)


class StatusUpdate(BaseModel):
    status: AppointmentStatus


class AppointmentResponse(BaseModel):
    id: uuid.UUID
    code: str
    provider_id: uuid.UUID
    client_id: Optional[uuid.UUID] = None
    start: datetime
    end: datetime
    status: AppointmentStatus
    payment_status: PaymentStatus
    session_type: Optional[str] = None
    payment_method: Optional[str] = None
    created_at: Optional[datetime] = None


class AbsenceCreate(BaseModel):
    date: date
    reason: Optional[str] = Field(default=None, max_length=500)


class AbsenceResponse(BaseModel):
    provider_id: uuid.UUID
    date: date
    reason: Optional[str] = None


class SlotCreate(BaseModel):
    provider_id: uuid.UUID
    start: datetime
    end: datetime


class SlotResponse(BaseModel):
    id: uuid.UUID
    provider_id: uuid.UUID
    start: datetime
    end: datetime
    is_booked: bool
    appointment_id: Optional[uuid.UUID] = None


class SlotBooking(BaseModel):
    status: AppointmentStatus = AppointmentStatus.CONFIRMED
    client: Optional[ClientIn] = None
    session_type: Optional[str] = Field(default=None, max_length=50)
