"""
Reminder scheduling and delivery.

Each appointment gets a day-before and an hour-before ReminderJob. A
background sweep delivers due jobs. A job is claimed with a conditional
UPDATE inside the same transaction that records the outcome, so
overlapping sweeps (or instances) can never deliver it twice.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from counselbot.config import get_settings
from counselbot.core.scheduling.hours import WorkingHoursPolicy, get_working_hours_policy
from counselbot.infra.messaging import OutgoingMessage
from counselbot.models.database import (
    Appointment,
    AppointmentStatus,
    Provider,
    ReminderJob,
    ReminderStatus,
    ReminderType,
)

logger = logging.getLogger(__name__)

REMINDER_OFFSETS = {
    ReminderType.DAY_BEFORE: timedelta(hours=24),
    ReminderType.HOUR_BEFORE: timedelta(hours=1),
}

# Appointments whose reminders are still delivered
DELIVERABLE_STATUSES = (
    AppointmentStatus.PENDING,
    AppointmentStatus.PENDING_PAYMENT,
    AppointmentStatus.CONFIRMED,
)


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class Notifier(Protocol):
    async def send(self, message: OutgoingMessage) -> Optional[int]: ...


class IdleSessionStore(Protocol):
    async def evict_expired(self) -> int: ...


@dataclass
class SweepResult:
    """Counts from one sweep."""

    sent: int = 0
    failed: int = 0
    skipped: int = 0


@dataclass
class DueReminder:
    job_id: object
    type: ReminderType
    code: str
    start: datetime
    channel_user_id: Optional[str]
    provider_name: str


class ReminderScheduler:
    """Creates reminder jobs and delivers the due ones."""

    def __init__(
        self,
        notifier: Optional[Notifier] = None,
        policy: Optional[WorkingHoursPolicy] = None,
        session_factory: Optional[async_sessionmaker] = None,
        batch_size: Optional[int] = None,
    ):
        self._notifier = notifier
        self.policy = policy or get_working_hours_policy()
        if session_factory is None:
            from counselbot.infra.database import async_session_factory
            session_factory = async_session_factory
        self._session_factory = session_factory
        self.batch_size = batch_size or get_settings().reminder_batch_size

    @property
    def notifier(self) -> Notifier:
        if self._notifier is None:
            from counselbot.infra.messaging import get_telegram_client
            self._notifier = get_telegram_client()
        return self._notifier

    async def schedule(self, appointment: Appointment, db: AsyncSession) -> list[ReminderJob]:
        """Insert the day-before and hour-before jobs for ``appointment``.

        Runs on the caller's session, inside the reservation transaction.
        """
        jobs = [
            ReminderJob(
                appointment_id=appointment.id,
                type=reminder_type,
                scheduled_for=appointment.start - offset,
                status=ReminderStatus.PENDING,
            )
            for reminder_type, offset in REMINDER_OFFSETS.items()
        ]
        db.add_all(jobs)
        await db.flush()
        logger.debug(f"Scheduled {len(jobs)} reminders for {appointment.code}")
        return jobs

    def render(self, due: DueReminder) -> str:
        if due.type == ReminderType.HOUR_BEFORE:
            return f"Reminder: your session with {due.provider_name} is in 1 hour!"
        local_start = self.policy.localize(due.start)
        return (
            f"Reminder: you have a counseling session with {due.provider_name} "
            f"on {local_start:%A %d %B %Y at %H:%M}"
        )

    async def _find_due(self, now: datetime) -> list[DueReminder]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(
                    ReminderJob.id,
                    ReminderJob.type,
                    Appointment.code,
                    Appointment.start,
                    Appointment.channel_user_id,
                    Provider.name,
                )
                .join(Appointment, Appointment.id == ReminderJob.appointment_id)
                .join(Provider, Provider.id == Appointment.provider_id)
                .where(
                    ReminderJob.status == ReminderStatus.PENDING,
                    ReminderJob.scheduled_for <= now,
                    Appointment.status.in_(DELIVERABLE_STATUSES),
                    Appointment.is_deleted.is_(False),
                    Appointment.start > now,
                )
                .order_by(ReminderJob.scheduled_for)
                .limit(self.batch_size)
            )
            return [DueReminder(*row) for row in result.all()]

    async def _deliver(self, due: DueReminder, now: datetime) -> Optional[ReminderStatus]:
        """Claim and deliver one job. Returns the final status, or None if not claimed."""
        async with self._session_factory() as db:
            async with db.begin():
                # Claim: only one transaction can move this row out of PENDING
                claim = await db.execute(
                    update(ReminderJob)
                    .where(
                        ReminderJob.id == due.job_id,
                        ReminderJob.status == ReminderStatus.PENDING,
                        ReminderJob.appointment_id.in_(
                            select(Appointment.id).where(
                                Appointment.status.in_(DELIVERABLE_STATUSES)
                            )
                        ),
                    )
                    .values(status=ReminderStatus.SENT, sent_at=now)
                    .execution_options(synchronize_session=False)
                )
                if claim.rowcount != 1:
                    return None

                error: Optional[str] = None
                if not due.channel_user_id:
                    error = "Appointment has no messaging recipient"
                else:
                    message_id = await self.notifier.send(
                        OutgoingMessage(user_id=due.channel_user_id, text=self.render(due))
                    )
                    if message_id is None:
                        error = "Messaging channel rejected the reminder"

                if error is None:
                    return ReminderStatus.SENT

                await db.execute(
                    update(ReminderJob)
                    .where(ReminderJob.id == due.job_id)
                    .values(status=ReminderStatus.FAILED, sent_at=None, error=error)
                    .execution_options(synchronize_session=False)
                )
                return ReminderStatus.FAILED

    async def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """Deliver every due reminder once."""
        now = now or _utcnow()
        result = SweepResult()

        for due in await self._find_due(now):
            status = await self._deliver(due, now)
            if status == ReminderStatus.SENT:
                result.sent += 1
                logger.info(f"Reminder {due.type.value} sent for {due.code}")
            elif status == ReminderStatus.FAILED:
                result.failed += 1
                logger.warning(f"Reminder {due.type.value} failed for {due.code}")
            else:
                result.skipped += 1
                logger.debug(f"Reminder {due.type.value} for {due.code} already handled")

        return result


class ReminderSweeper:
    """Runs ReminderScheduler.sweep on a fixed interval as a background task.

    When given a session store, idle dialogue sessions are evicted on the
    same tick.
    """

    def __init__(
        self,
        scheduler: ReminderScheduler,
        interval: Optional[float] = None,
        sessions: Optional[IdleSessionStore] = None,
    ):
        self.scheduler = scheduler
        self.sessions = sessions
        self.interval = interval if interval is not None else get_settings().reminder_sweep_interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("Reminder sweeper already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._loop(), name="reminder_sweeper")
        logger.info(f"Reminder sweeper started (every {self.interval}s)")

    async def stop(self) -> None:
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("Reminder sweeper stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                result = await self.scheduler.sweep()
                if result.sent or result.failed:
                    logger.info(
                        f"Reminder sweep: {result.sent} sent, {result.failed} failed, "
                        f"{result.skipped} skipped"
                    )
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Reminder sweep error: {e}")

            if self.sessions is not None:
                try:
                    evicted = await self.sessions.evict_expired()
                    if evicted:
                        logger.debug(f"Session eviction: {evicted} dropped")
                except asyncio.CancelledError:
                    break
                except Exception as e:
                    logger.error(f"Session eviction error: {e}")

            await asyncio.sleep(self.interval)


# Singleton
_scheduler: Optional[ReminderScheduler] = None


def get_reminder_scheduler() -> ReminderScheduler:
    """Get singleton ReminderScheduler."""
    global _scheduler
    if _scheduler is None:
        _scheduler = ReminderScheduler()
    return _scheduler
