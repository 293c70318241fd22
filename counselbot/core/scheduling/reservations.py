"""
Slot reservation with conflict detection.

A provider's calendar is serialized through its ``providers`` row:
every write that can create or revive a booking locks that row first,
then re-checks for overlap before inserting. Two reservations for
overlapping intervals on the same provider therefore can never both
commit, no matter how many service instances are running.
"""

import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from counselbot.core.scheduling.codes import CodeGenerator, get_code_generator
from counselbot.core.scheduling.errors import (
    ConflictError,
    NotFoundError,
    ValidationError,
)
from counselbot.core.scheduling.hours import WorkingHoursPolicy, get_working_hours_policy
from counselbot.core.scheduling.reminders import ReminderScheduler, get_reminder_scheduler
from counselbot.models.database import (
    AbsenceDay,
    Appointment,
    AppointmentStatus,
    AvailabilitySlot,
    Client,
    Provider,
)

logger = logging.getLogger(__name__)

# Statuses a new reservation may be created with
INITIAL_STATUSES = (
    AppointmentStatus.PENDING,
    AppointmentStatus.PENDING_PAYMENT,
    AppointmentStatus.CONFIRMED,
)

# Retries when the unique code index rejects an insert
CODE_INSERT_RETRIES = 3


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass
class ClientDetails:
    """Client intake details written alongside a reservation."""

    full_name: str
    date_of_birth: Optional[date] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    channel_user_id: Optional[str] = None
    emergency_contact_name: Optional[str] = None
    emergency_contact_phone: Optional[str] = None
    therapy_reason: Optional[str] = None
    session_goals: Optional[str] = None
    previous_therapy: Optional[bool] = None


@dataclass
class ReservationPayload:
    """Everything about a reservation other than provider and interval."""

    status: AppointmentStatus = AppointmentStatus.PENDING
    client: Optional[ClientDetails] = None
    client_id: Optional[uuid.UUID] = None
    session_type: Optional[str] = None
    payment_method: Optional[str] = None
    channel_user_id: Optional[str] = None
    channel_username: Optional[str] = None


class SlotConflictResolver:
    """
    Reserves provider time intervals atomically.

    reserve():
        1. working-hours check (no datastore access on failure)
        2. absence-day check
        3. lock the provider row, re-check overlap
        4. claim a covering availability slot, if the provider declares any
        5. generate a code, insert client + appointment (+ reminder jobs)
        6. commit
    """

    def __init__(
        self,
        policy: Optional[WorkingHoursPolicy] = None,
        codes: Optional[CodeGenerator] = None,
        reminders: Optional[ReminderScheduler] = None,
        session_factory: Optional[async_sessionmaker] = None,
    ):
        self.policy = policy or get_working_hours_policy()
        self.codes = codes or get_code_generator()
        self.reminders = reminders
        if session_factory is None:
            from counselbot.infra.database import async_session_factory
            session_factory = async_session_factory
        self._session_factory = session_factory

    # === Reservation ===

    async def reserve(
        self,
        provider_id: uuid.UUID,
        start: datetime,
        end: datetime,
        payload: Optional[ReservationPayload] = None,
    ) -> Appointment:
        """Reserve ``[start, end)`` on the provider's calendar.

        Raises:
            ValidationError: outside working hours or bad status
            ConflictError: overlap, absence day or no free slot
            NotFoundError: unknown provider
            ExhaustionError: no appointment code available
        """
        payload = payload or ReservationPayload()
        start = self.policy.localize(start)
        end = self.policy.localize(end)

        check = self.policy.is_valid_range(start, end)
        if not check:
            logger.info(f"Reservation rejected for provider {provider_id}: {check.reason}")
            raise ValidationError(check.reason)

        if payload.status not in INITIAL_STATUSES:
            raise ValidationError(f"Cannot create an appointment with status '{payload.status.value}'")

        start = start.astimezone(timezone.utc)
        end = end.astimezone(timezone.utc)
        return await self._insert_with_retry(provider_id, start, end, payload, slot_id=None)

    async def book_slot(
        self,
        slot_id: uuid.UUID,
        payload: Optional[ReservationPayload] = None,
    ) -> Appointment:
        """Reserve exactly the interval of a declared availability slot."""
        payload = payload or ReservationPayload(status=AppointmentStatus.CONFIRMED)
        if payload.status not in INITIAL_STATUSES:
            raise ValidationError(f"Cannot create an appointment with status '{payload.status.value}'")

        async with self._session_factory() as db:
            slot = await db.get(AvailabilitySlot, slot_id)
            if slot is None:
                raise NotFoundError("Slot not found")
            provider_id, start, end = slot.provider_id, slot.start, slot.end

        return await self._insert_with_retry(provider_id, start, end, payload, slot_id=slot_id)

    async def _insert_with_retry(
        self,
        provider_id: uuid.UUID,
        start: datetime,
        end: datetime,
        payload: ReservationPayload,
        slot_id: Optional[uuid.UUID],
    ) -> Appointment:
        for attempt in range(1, CODE_INSERT_RETRIES + 1):
            try:
                async with self._session_factory() as db:
                    async with db.begin():
                        appointment = await self._reserve_locked(
                            db, provider_id, start, end, payload, slot_id
                        )
            except IntegrityError as e:
                # Another writer took the same code between check and insert
                logger.warning(
                    f"Insert for provider {provider_id} hit a unique constraint "
                    f"(attempt {attempt}/{CODE_INSERT_RETRIES}): {e.orig}"
                )
                continue

            logger.info(
                f"Reserved {appointment.code} for provider {provider_id} "
                f"{start.isoformat()} - {end.isoformat()}"
            )
            return appointment

        raise ConflictError("The booking could not be saved, please try again")

    async def _reserve_locked(
        self,
        db: AsyncSession,
        provider_id: uuid.UUID,
        start: datetime,
        end: datetime,
        payload: ReservationPayload,
        slot_id: Optional[uuid.UUID],
    ) -> Appointment:
        local_day = self.policy.local_date(start)
        if await self._is_absent(db, provider_id, local_day):
            logger.info(f"Reservation rejected: provider {provider_id} absent on {local_day}")
            raise ConflictError(
                f"The counselor is not available on {local_day.isoformat()}. "
                f"Please choose another date."
            )

        await self._lock_provider(db, provider_id)

        clash = await self._find_overlap(db, provider_id, start, end)
        if clash is not None:
            logger.info(
                f"Reservation conflict for provider {provider_id}: "
                f"overlaps {clash.code}"
            )
            raise ConflictError(self._overlap_reason(clash))

        slot = await self._claim_slot(db, provider_id, start, end, slot_id)

        client_id = payload.client_id
        if payload.client is not None:
            client = Client(**asdict(payload.client))
            db.add(client)
            await db.flush()
            client_id = client.id

        code = await self.codes.generate(db)
        appointment = Appointment(
            code=code,
            provider_id=provider_id,
            client_id=client_id,
            start=start,
            end=end,
            status=payload.status,
            session_type=payload.session_type,
            payment_method=payload.payment_method,
            channel_user_id=payload.channel_user_id,
            channel_username=payload.channel_username,
        )
        db.add(appointment)
        await db.flush()

        if slot is not None:
            slot.is_booked = True
            slot.appointment_id = appointment.id

        if self.reminders is not None:
            await self.reminders.schedule(appointment, db)

        await db.flush()
        return appointment

    # === Status changes ===

    async def change_status(
        self,
        appointment_id: uuid.UUID,
        status: AppointmentStatus,
    ) -> Appointment:
        """Move an appointment to ``status``.

        Reviving a cancelled appointment re-checks overlap under the
        provider lock, since its interval may have been rebooked.
        """
        async with self._session_factory() as db:
            async with db.begin():
                appointment = await db.get(Appointment, appointment_id)
                if appointment is None or appointment.is_deleted:
                    raise NotFoundError("Appointment not found")

                previous = appointment.status
                if previous == status:
                    return appointment

                if previous == AppointmentStatus.CANCELLED:
                    await self._lock_provider(db, appointment.provider_id)
                    clash = await self._find_overlap(
                        db, appointment.provider_id, appointment.start, appointment.end,
                        exclude_id=appointment.id,
                    )
                    if clash is not None:
                        raise ConflictError(self._overlap_reason(clash))
                    appointment.cancelled_at = None

                if status == AppointmentStatus.CANCELLED:
                    appointment.cancelled_at = _utcnow()
                    await self._release_slot(db, appointment.id)

                appointment.status = status
                await db.flush()

        logger.info(f"Appointment {appointment.code}: {previous.value} -> {status.value}")
        return appointment

    async def cancel(self, appointment_id: uuid.UUID, delete: bool = False) -> Appointment:
        """Cancel an appointment, optionally soft-deleting it.

        The row is always kept so its code is never handed out again.
        """
        appointment = await self.change_status(appointment_id, AppointmentStatus.CANCELLED)
        if delete:
            async with self._session_factory() as db:
                async with db.begin():
                    stored = await db.get(Appointment, appointment_id)
                    stored.is_deleted = True
                    stored.deleted_at = _utcnow()
            appointment.is_deleted = True
            logger.info(f"Appointment {appointment.code} deleted")
        return appointment

    # === Helpers ===

    async def _lock_provider(self, db: AsyncSession, provider_id: uuid.UUID) -> Provider:
        result = await db.execute(
            select(Provider).where(Provider.id == provider_id).with_for_update()
        )
        provider = result.scalar_one_or_none()
        if provider is None or not provider.is_active:
            raise NotFoundError("Counselor not found")
        return provider

    async def _is_absent(self, db: AsyncSession, provider_id: uuid.UUID, day: date) -> bool:
        result = await db.execute(
            select(AbsenceDay.id).where(
                AbsenceDay.provider_id == provider_id,
                AbsenceDay.date == day,
            ).limit(1)
        )
        return result.first() is not None

    async def _find_overlap(
        self,
        db: AsyncSession,
        provider_id: uuid.UUID,
        start: datetime,
        end: datetime,
        exclude_id: Optional[uuid.UUID] = None,
    ) -> Optional[Appointment]:
        # NOT (new_end <= existing_start OR new_start >= existing_end)
        stmt = select(Appointment).where(
            Appointment.provider_id == provider_id,
            Appointment.status != AppointmentStatus.CANCELLED,
            Appointment.start < end,
            Appointment.end > start,
        )
        if exclude_id is not None:
            stmt = stmt.where(Appointment.id != exclude_id)
        result = await db.execute(stmt.order_by(Appointment.start).limit(1))
        return result.scalar_one_or_none()

    async def _claim_slot(
        self,
        db: AsyncSession,
        provider_id: uuid.UUID,
        start: datetime,
        end: datetime,
        slot_id: Optional[uuid.UUID],
    ) -> Optional[AvailabilitySlot]:
        """Find the unbooked slot covering the interval.

        Providers without declared slots are booked purely against
        existing appointments and get None back.
        """
        if slot_id is not None:
            result = await db.execute(
                select(AvailabilitySlot).where(AvailabilitySlot.id == slot_id).with_for_update()
            )
            slot = result.scalar_one_or_none()
            if slot is None:
                raise NotFoundError("Slot not found")
            if slot.is_booked:
                raise ConflictError("Slot already booked")
            return slot

        declared = await db.execute(
            select(AvailabilitySlot.id).where(AvailabilitySlot.provider_id == provider_id).limit(1)
        )
        if declared.first() is None:
            return None

        result = await db.execute(
            select(AvailabilitySlot).where(
                AvailabilitySlot.provider_id == provider_id,
                AvailabilitySlot.is_booked.is_(False),
                AvailabilitySlot.start <= start,
                AvailabilitySlot.end >= end,
            ).order_by(AvailabilitySlot.start).limit(1).with_for_update()
        )
        slot = result.scalar_one_or_none()
        if slot is None:
            raise ConflictError("The counselor has no open availability at that time")
        return slot

    async def _release_slot(self, db: AsyncSession, appointment_id: uuid.UUID) -> None:
        result = await db.execute(
            select(AvailabilitySlot).where(AvailabilitySlot.appointment_id == appointment_id)
        )
        for slot in result.scalars():
            slot.is_booked = False
            slot.appointment_id = None

    def _overlap_reason(self, clash: Appointment) -> str:
        local_start = self.policy.localize(clash.start)
        local_end = self.policy.localize(clash.end)
        return (
            f"The counselor is already booked from {local_start:%H:%M} to {local_end:%H:%M} "
            f"on {local_start:%Y-%m-%d}. Please choose another time."
        )


# Singleton
_resolver: Optional[SlotConflictResolver] = None


def get_slot_conflict_resolver() -> SlotConflictResolver:
    """Get singleton SlotConflictResolver that also schedules reminders."""
    global _resolver
    if _resolver is None:
        _resolver = SlotConflictResolver(reminders=get_reminder_scheduler())
    return _resolver
