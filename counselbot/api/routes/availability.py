"""Absence days and availability slots."""

import logging
import uuid
from datetime import date

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from counselbot.api.routes.schemas import (
    AbsenceCreate,
    AbsenceResponse,
    AppointmentResponse,
    ErrorResponse,
    SlotBooking,
    SlotCreate,
    SlotResponse,
)
from counselbot.core.scheduling import (
    ClientDetails,
    ReservationPayload,
    SlotConflictResolver,
    WorkingHoursPolicy,
    get_slot_conflict_resolver,
    get_working_hours_policy,
)
from counselbot.infra.database import get_db
from counselbot.services import availability
from counselbot.services.appointments import get_provider

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Availability"])


# === Absence days ===

@router.post(
    "/providers/{provider_id}/absences",
    response_model=AbsenceResponse,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def create_absence(
    provider_id: uuid.UUID,
    request: AbsenceCreate,
    db: AsyncSession = Depends(get_db),
) -> AbsenceResponse:
    absence = await availability.add_absence(db, provider_id, request.date, request.reason)
    return AbsenceResponse(provider_id=absence.provider_id, date=absence.date, reason=absence.reason)


@router.get(
    "/providers/{provider_id}/absences",
    response_model=list[AbsenceResponse],
    responses={404: {"model": ErrorResponse}},
)
async def read_absences(
    provider_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> list[AbsenceResponse]:
    await get_provider(db, provider_id)
    absences = await availability.list_absences(db, provider_id)
    return [
        AbsenceResponse(provider_id=a.provider_id, date=a.date, reason=a.reason)
        for a in absences
    ]


@router.delete(
    "/providers/{provider_id}/absences/{day}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
)
async def delete_absence(
    provider_id: uuid.UUID,
    day: date,
    db: AsyncSession = Depends(get_db),
) -> None:
    await availability.remove_absence(db, provider_id, day)


# === Slots ===

@router.post(
    "/slots",
    response_model=SlotResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
async def create_slot(
    request: SlotCreate,
    db: AsyncSession = Depends(get_db),
    policy: WorkingHoursPolicy = Depends(get_working_hours_policy),
) -> dict:
    slot = await availability.create_slot(db, policy, request.provider_id, request.start, request.end)
    return slot.to_dict()


@router.get(
    "/providers/{provider_id}/slots",
    response_model=list[SlotResponse],
    responses={404: {"model": ErrorResponse}},
)
async def read_slots(
    provider_id: uuid.UUID,
    only_open: bool = False,
    db: AsyncSession = Depends(get_db),
) -> list[dict]:
    await get_provider(db, provider_id)
    slots = await availability.list_slots(db, provider_id, only_open)
    return [slot.to_dict() for slot in slots]


@router.delete(
    "/slots/{slot_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def delete_slot(
    slot_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> None:
    await availability.delete_slot(db, slot_id)


@router.post(
    "/slots/{slot_id}/book",
    response_model=AppointmentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Book exactly the interval of a slot",
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def book_slot(
    slot_id: uuid.UUID,
    request: SlotBooking,
    resolver: SlotConflictResolver = Depends(get_slot_conflict_resolver),
) -> dict:
    client = None
    if request.client is not None:
        client = ClientDetails(**request.client.model_dump())

    appointment = await resolver.book_slot(
        slot_id,
        ReservationPayload(
            status=request.status,
            client=client,
            session_type=request.session_type,
        ),
    )
    return appointment.to_dict()
