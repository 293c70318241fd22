"""Provider availability: absence days and pre-declared slots."""

import logging
import uuid
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from counselbot.core.scheduling.errors import ConflictError, NotFoundError, ValidationError
from counselbot.core.scheduling.hours import WorkingHoursPolicy
from counselbot.models.database import AbsenceDay, AvailabilitySlot
from counselbot.services.appointments import get_provider

logger = logging.getLogger(__name__)


async def list_absences(db: AsyncSession, provider_id: uuid.UUID) -> list[AbsenceDay]:
    result = await db.execute(
        select(AbsenceDay)
        .where(AbsenceDay.provider_id == provider_id)
        .order_by(AbsenceDay.date)
    )
    return list(result.scalars())


async def add_absence(
    db: AsyncSession,
    provider_id: uuid.UUID,
    day: date,
    reason: Optional[str] = None,
) -> AbsenceDay:
    """Mark the provider unavailable for a whole calendar day.

    Existing appointments on that day are left alone; only new
    reservations are refused.
    """
    await get_provider(db, provider_id)

    existing = await db.execute(
        select(AbsenceDay.id).where(
            AbsenceDay.provider_id == provider_id,
            AbsenceDay.date == day,
        )
    )
    if existing.first() is not None:
        raise ConflictError(f"The counselor is already marked absent on {day.isoformat()}")

    absence = AbsenceDay(provider_id=provider_id, date=day, reason=reason)
    db.add(absence)
    await db.flush()
    logger.info(f"Provider {provider_id} marked absent on {day.isoformat()}")
    return absence


async def remove_absence(db: AsyncSession, provider_id: uuid.UUID, day: date) -> None:
    result = await db.execute(
        select(AbsenceDay).where(
            AbsenceDay.provider_id == provider_id,
            AbsenceDay.date == day,
        )
    )
    absence = result.scalar_one_or_none()
    if absence is None:
        raise NotFoundError(f"No absence on {day.isoformat()}")
    await db.delete(absence)
    logger.info(f"Provider {provider_id} available again on {day.isoformat()}")


async def create_slot(
    db: AsyncSession,
    policy: WorkingHoursPolicy,
    provider_id: uuid.UUID,
    start: datetime,
    end: datetime,
) -> AvailabilitySlot:
    """Declare a bookable window. Windows of one provider may not overlap."""
    await get_provider(db, provider_id)

    start = policy.localize(start)
    end = policy.localize(end)
    check = policy.is_valid_range(start, end)
    if not check:
        raise ValidationError(check.reason)

    start = start.astimezone(timezone.utc)
    end = end.astimezone(timezone.utc)

    clash = await db.execute(
        select(AvailabilitySlot.id).where(
            AvailabilitySlot.provider_id == provider_id,
            AvailabilitySlot.start < end,
            AvailabilitySlot.end > start,
        ).limit(1)
    )
    if clash.first() is not None:
        raise ConflictError("The slot overlaps another slot of this counselor")

    slot = AvailabilitySlot(provider_id=provider_id, start=start, end=end)
    db.add(slot)
    await db.flush()
    logger.info(f"Slot {slot.id} declared for provider {provider_id}")
    return slot


async def list_slots(
    db: AsyncSession,
    provider_id: uuid.UUID,
    only_open: bool = False,
) -> list[AvailabilitySlot]:
    stmt = select(AvailabilitySlot).where(AvailabilitySlot.provider_id == provider_id)
    if only_open:
        stmt = stmt.where(AvailabilitySlot.is_booked.is_(False))
    result = await db.execute(stmt.order_by(AvailabilitySlot.start))
    return list(result.scalars())


async def delete_slot(db: AsyncSession, slot_id: uuid.UUID) -> None:
    slot = await db.get(AvailabilitySlot, slot_id)
    if slot is None:
        raise NotFoundError("Slot not found")
    if slot.is_booked:
        raise ConflictError("Slot already booked")
    await db.delete(slot)
