"""
Appointment Endpoints

Minimal administrative surface over the reservation engine. Domain
errors are mapped to status codes by the application's exception
handlers (400 validation, 404 not found, 409 conflict).
"""

import logging
import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from counselbot.api.routes.schemas import (
    AppointmentCreate,
    AppointmentResponse,
    ErrorResponse,
    StatusUpdate,
)
from counselbot.core.scheduling import (
    ClientDetails,
    ReservationPayload,
    SlotConflictResolver,
    get_slot_conflict_resolver,
)
from counselbot.infra.database import get_db
from counselbot.services.appointments import (
    get_appointment,
    get_provider,
    list_provider_appointments,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Appointments"])


@router.post(
    "/appointments",
    response_model=AppointmentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Reserve an appointment",
    responses={
        400: {"model": ErrorResponse, "description": "Outside working hours or invalid status"},
        404: {"model": ErrorResponse, "description": "Unknown provider"},
        409: {"model": ErrorResponse, "description": "Overlaps another appointment or an absence day"},
    },
)
async def create_appointment(
    request: AppointmentCreate,
    resolver: SlotConflictResolver = Depends(get_slot_conflict_resolver),
) -> dict:
    client = None
    if request.client is not None:
        client = ClientDetails(**request.client.model_dump())

    appointment = await resolver.reserve(
        request.provider_id,
        request.start,
        request.end,
        ReservationPayload(
            status=request.status,
            client=client,
            session_type=request.session_type,
            payment_method=request.payment_method,
        ),
    )
    return appointment.to_dict()


@router.get(
    "/appointments/{appointment_id}",
    response_model=AppointmentResponse,
    responses={404: {"model": ErrorResponse}},
)
async def read_appointment(
    appointment_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> dict:
    appointment = await get_appointment(db, appointment_id)
    return appointment.to_dict()


@router.patch(
    "/appointments/{appointment_id}/status",
    response_model=AppointmentResponse,
    summary="Change appointment status",
    description="Reviving a cancelled appointment fails with 409 if its time has been rebooked.",
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def update_status(
    appointment_id: uuid.UUID,
    request: StatusUpdate,
    resolver: SlotConflictResolver = Depends(get_slot_conflict_resolver),
) -> dict:
    appointment = await resolver.change_status(appointment_id, request.status)
    return appointment.to_dict()


@router.delete(
    "/appointments/{appointment_id}",
    response_model=AppointmentResponse,
    summary="Cancel and remove an appointment",
    description="The row is kept (soft delete) so its code is never issued again.",
    responses={404: {"model": ErrorResponse}},
)
async def delete_appointment(
    appointment_id: uuid.UUID,
    resolver: SlotConflictResolver = Depends(get_slot_conflict_resolver),
) -> dict:
    appointment = await resolver.cancel(appointment_id, delete=True)
    return appointment.to_dict()


@router.get(
    "/providers/{provider_id}/appointments",
    response_model=list[AppointmentResponse],
    responses={404: {"model": ErrorResponse}},
)
async def provider_appointments(
    provider_id: uuid.UUID,
    include_cancelled: bool = False,
    db: AsyncSession = Depends(get_db),
) -> list[dict]:
    await get_provider(db, provider_id)
    appointments = await list_provider_appointments(db, provider_id, include_cancelled)
    return [appointment.to_dict() for appointment in appointments]
