"""Tests for SlotConflictResolver against a real (SQLite) database."""

import asyncio
import uuid
from datetime import date, timedelta

import pytest
from sqlalchemy import func, select

from counselbot.core.scheduling import (
    ClientDetails,
    ConflictError,
    NotFoundError,
    ReservationPayload,
    ValidationError,
)
from counselbot.models.database import (
    AbsenceDay,
    Appointment,
    AppointmentStatus,
    AvailabilitySlot,
    Client,
    ReminderJob,
)

from tests.conftest import MONDAY, at, utc


async def count(session_factory, model) -> int:
    async with session_factory() as db:
        result = await db.execute(select(func.count()).select_from(model))
        return result.scalar_one()


class TestReserve:
    """Test reserve()."""

    @pytest.mark.asyncio
    async def test_reserve_creates_appointment(self, resolver, provider, database):
        appointment = await resolver.reserve(provider.id, at(14), at(15))

        assert appointment.status == AppointmentStatus.PENDING
        assert len(appointment.code) == 6
        assert appointment.duration_minutes == 60
        assert await count(database, Appointment) == 1

    @pytest.mark.asyncio
    async def test_reserve_schedules_both_reminders(self, resolver, provider, database):
        appointment = await resolver.reserve(provider.id, at(14), at(15))

        async with database() as db:
            jobs = (await db.execute(
                select(ReminderJob).where(ReminderJob.appointment_id == appointment.id)
            )).scalars().all()

        offsets = sorted(appointment.start - job.scheduled_for for job in jobs)
        assert offsets == [timedelta(hours=1), timedelta(hours=24)]

    @pytest.mark.asyncio
    async def test_out_of_hours_rejected_without_write(self, resolver, provider, database):
        with pytest.raises(ValidationError) as exc:
            await resolver.reserve(provider.id, at(7), at(8))

        assert "8:00 AM" in exc.value.reason
        assert await count(database, Appointment) == 0

    @pytest.mark.asyncio
    async def test_overlap_rejected(self, resolver, provider, database):
        await resolver.reserve(provider.id, at(14), at(15))

        with pytest.raises(ConflictError) as exc:
            await resolver.reserve(provider.id, at(14, 30), at(15, 30))

        assert "already booked from 14:00 to 15:00 on 2030-01-07" in exc.value.reason
        assert await count(database, Appointment) == 1

    @pytest.mark.asyncio
    async def test_back_to_back_allowed(self, resolver, provider):
        await resolver.reserve(provider.id, at(14), at(15))
        second = await resolver.reserve(provider.id, at(15), at(16))

        assert second.code

    @pytest.mark.asyncio
    async def test_cancelled_appointment_frees_interval(self, resolver, provider):
        first = await resolver.reserve(provider.id, at(14), at(15))
        await resolver.cancel(first.id)

        second = await resolver.reserve(provider.id, at(14), at(15))
        assert second.code != first.code

    @pytest.mark.asyncio
    async def test_status_not_allowed_for_new_booking(self, resolver, provider):
        with pytest.raises(ValidationError):
            await resolver.reserve(
                provider.id, at(14), at(15),
                ReservationPayload(status=AppointmentStatus.COMPLETED),
            )

    @pytest.mark.asyncio
    async def test_unknown_provider(self, resolver, provider):
        with pytest.raises(NotFoundError):
            await resolver.reserve(uuid.uuid4(), at(14), at(15))

    @pytest.mark.asyncio
    async def test_client_row_written_with_appointment(self, resolver, provider, database):
        appointment = await resolver.reserve(
            provider.id, at(9), at(10),
            ReservationPayload(
                status=AppointmentStatus.PENDING_PAYMENT,
                client=ClientDetails(
                    full_name="Jane Wanjiru",
                    date_of_birth=date(1995, 4, 12),
                    phone="+254712345678",
                    channel_user_id="42",
                ),
                channel_user_id="42",
            ),
        )

        async with database() as db:
            client = await db.get(Client, appointment.client_id)
        assert client.full_name == "Jane Wanjiru"
        assert appointment.status == AppointmentStatus.PENDING_PAYMENT


class TestConcurrentReservations:
    @pytest.mark.asyncio
    async def test_only_one_of_two_overlapping_requests_succeeds(self, resolver, provider, database):
        results = await asyncio.gather(
            resolver.reserve(provider.id, at(14), at(15)),
            resolver.reserve(provider.id, at(14, 30), at(15, 30)),
            return_exceptions=True,
        )

        successes = [r for r in results if isinstance(r, Appointment)]
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(successes) == 1
        assert len(conflicts) == 1
        assert await count(database, Appointment) == 1

    @pytest.mark.asyncio
    async def test_many_requests_for_same_interval(self, resolver, provider, database):
        results = await asyncio.gather(
            *(resolver.reserve(provider.id, at(10), at(11)) for _ in range(5)),
            return_exceptions=True,
        )

        assert sum(isinstance(r, Appointment) for r in results) == 1
        assert sum(isinstance(r, ConflictError) for r in results) == 4
        assert await count(database, Appointment) == 1


class TestAbsenceDays:
    @pytest.mark.asyncio
    async def test_absence_blocks_reservation(self, resolver, provider, database):
        async with database() as db:
            db.add(AbsenceDay(provider_id=provider.id, date=MONDAY.date(), reason="Conference"))
            await db.commit()

        with pytest.raises(ConflictError) as exc:
            await resolver.reserve(provider.id, at(10), at(11))

        assert "not available on 2030-01-07" in exc.value.reason
        assert await count(database, Appointment) == 0

    @pytest.mark.asyncio
    async def test_absence_on_other_day_does_not_block(self, resolver, provider, database):
        async with database() as db:
            db.add(AbsenceDay(provider_id=provider.id, date=MONDAY.date() + timedelta(days=1)))
            await db.commit()

        assert await resolver.reserve(provider.id, at(10), at(11))


class TestAvailabilitySlots:
    async def _declare(self, database, provider, start, end) -> AvailabilitySlot:
        async with database() as db:
            slot = AvailabilitySlot(provider_id=provider.id, start=start, end=end)
            db.add(slot)
            await db.commit()
        return slot

    @pytest.mark.asyncio
    async def test_reservation_must_be_covered_by_slot(self, resolver, provider, database):
        await self._declare(database, provider, utc(at(9)), utc(at(11)))

        with pytest.raises(ConflictError):
            await resolver.reserve(provider.id, at(14), at(15))

        appointment = await resolver.reserve(provider.id, at(9), at(10))
        async with database() as db:
            slot = (await db.execute(select(AvailabilitySlot))).scalar_one()
        assert slot.is_booked
        assert slot.appointment_id == appointment.id

    @pytest.mark.asyncio
    async def test_book_slot_and_rebook_fails(self, resolver, provider, database):
        slot = await self._declare(database, provider, utc(at(9)), utc(at(10)))

        appointment = await resolver.book_slot(slot.id)
        assert appointment.status == AppointmentStatus.CONFIRMED
        assert appointment.start == utc(at(9))

        with pytest.raises(ConflictError):
            await resolver.book_slot(slot.id)

    @pytest.mark.asyncio
    async def test_cancel_releases_slot(self, resolver, provider, database):
        slot = await self._declare(database, provider, utc(at(9)), utc(at(10)))
        appointment = await resolver.book_slot(slot.id)

        await resolver.cancel(appointment.id)

        async with database() as db:
            stored = await db.get(AvailabilitySlot, slot.id)
        assert not stored.is_booked
        assert stored.appointment_id is None


class TestStatusChanges:
    @pytest.mark.asyncio
    async def test_cancel_sets_timestamp(self, resolver, provider):
        appointment = await resolver.reserve(provider.id, at(14), at(15))

        cancelled = await resolver.cancel(appointment.id)

        assert cancelled.status == AppointmentStatus.CANCELLED
        assert cancelled.cancelled_at is not None

    @pytest.mark.asyncio
    async def test_revive_conflicts_with_new_booking(self, resolver, provider):
        first = await resolver.reserve(provider.id, at(14), at(15))
        await resolver.cancel(first.id)
        await resolver.reserve(provider.id, at(14), at(15))

        with pytest.raises(ConflictError):
            await resolver.change_status(first.id, AppointmentStatus.CONFIRMED)

    @pytest.mark.asyncio
    async def test_revive_when_interval_free(self, resolver, provider):
        first = await resolver.reserve(provider.id, at(14), at(15))
        await resolver.cancel(first.id)

        revived = await resolver.change_status(first.id, AppointmentStatus.CONFIRMED)

        assert revived.status == AppointmentStatus.CONFIRMED
        assert revived.cancelled_at is None

    @pytest.mark.asyncio
    async def test_soft_delete_keeps_row(self, resolver, provider, database):
        appointment = await resolver.reserve(provider.id, at(14), at(15))

        await resolver.cancel(appointment.id, delete=True)

        async with database() as db:
            stored = await db.get(Appointment, appointment.id)
        assert stored.is_deleted
        assert stored.status == AppointmentStatus.CANCELLED

        with pytest.raises(NotFoundError):
            await resolver.change_status(appointment.id, AppointmentStatus.CONFIRMED)
