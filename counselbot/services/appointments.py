"""Read-side queries over appointments, providers and absences."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from counselbot.core.scheduling.errors import NotFoundError
from counselbot.models.database import (
    Appointment,
    AppointmentStatus,
    Client,
    Provider,
)


async def get_provider(db: AsyncSession, provider_id: uuid.UUID) -> Provider:
    provider = await db.get(Provider, provider_id)
    if provider is None:
        raise NotFoundError("Counselor not found")
    return provider


async def list_active_providers(db: AsyncSession, limit: int = 10) -> list[Provider]:
    result = await db.execute(
        select(Provider)
        .where(Provider.is_active.is_(True))
        .order_by(Provider.name)
        .limit(limit)
    )
    return list(result.scalars())


async def get_appointment(db: AsyncSession, appointment_id: uuid.UUID) -> Appointment:
    appointment = await db.get(Appointment, appointment_id)
    if appointment is None or appointment.is_deleted:
        raise NotFoundError("Appointment not found")
    return appointment


async def find_user_appointment(
    db: AsyncSession,
    code: str,
    channel_user_id: str,
) -> Optional[tuple[Appointment, str]]:
    """Appointment with ``code`` booked by this user, with the provider name."""
    result = await db.execute(
        select(Appointment, Provider.name)
        .join(Provider, Provider.id == Appointment.provider_id)
        .outerjoin(Client, Client.id == Appointment.client_id)
        .where(
            Appointment.code == code.strip().upper(),
            Appointment.is_deleted.is_(False),
            or_(
                Appointment.channel_user_id == channel_user_id,
                Client.channel_user_id == channel_user_id,
            ),
        )
    )
    row = result.first()
    return (row[0], row[1]) if row else None


async def list_provider_appointments(
    db: AsyncSession,
    provider_id: uuid.UUID,
    include_cancelled: bool = False,
) -> list[Appointment]:
    stmt = select(Appointment).where(
        Appointment.provider_id == provider_id,
        Appointment.is_deleted.is_(False),
    )
    if not include_cancelled:
        stmt = stmt.where(Appointment.status != AppointmentStatus.CANCELLED)
    result = await db.execute(stmt.order_by(Appointment.start))
    return list(result.scalars())


async def list_upcoming_for_user(
    db: AsyncSession,
    channel_user_id: str,
    now: datetime,
    limit: int = 10,
) -> list[tuple[Appointment, str]]:
    result = await db.execute(
        select(Appointment, Provider.name)
        .join(Provider, Provider.id == Appointment.provider_id)
        .where(
            Appointment.channel_user_id == channel_user_id,
            Appointment.is_deleted.is_(False),
            Appointment.status != AppointmentStatus.CANCELLED,
            Appointment.end > now,
        )
        .order_by(Appointment.start)
        .limit(limit)
    )
    return [(row[0], row[1]) for row in result.all()]

