"""
Working hours policy.

Pure checks of whether an instant or a range can be booked. Instants are
converted to the business timezone before any comparison; naive
datetimes are taken to already be business-local.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from counselbot.config import get_settings


DAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


def format_hour(hour: int) -> str:
    """Format an hour of day as '8:00 AM' / '5:00 PM'."""
    suffix = "AM" if hour < 12 else "PM"
    display = hour % 12 or 12
    return f"{display}:00 {suffix}"


@dataclass(frozen=True)
class HoursCheck:
    """Outcome of a working-hours check."""

    ok: bool
    reason: str

    def __bool__(self) -> bool:
        return self.ok


@dataclass(frozen=True)
class SlotWindow:
    """A bookable [start, end) pair in the business timezone."""

    start: datetime
    end: datetime

    def label(self) -> str:
        return f"{self.start:%H:%M} - {self.end:%H:%M}"


class WorkingHoursPolicy:
    """
    Decides whether a time instant or range falls inside business hours.

    Stateless after construction and safe to share between tasks.
    """

    def __init__(
        self,
        timezone: str,
        start_hour: int,
        end_hour: int,
        weekdays: Iterable[int],
        lunch_start_hour: Optional[int] = None,
        lunch_end_hour: Optional[int] = None,
    ):
        if not 0 <= start_hour < end_hour <= 24:
            raise ValueError(f"Invalid business hours {start_hour}-{end_hour}")

        self.tz = ZoneInfo(timezone)
        self.start_hour = start_hour
        self.end_hour = end_hour
        # ISO weekday numbers, Monday = 1
        self.weekdays = frozenset(weekdays)

        if lunch_start_hour is not None and lunch_end_hour is not None:
            self.lunch: Optional[tuple[int, int]] = (lunch_start_hour, lunch_end_hour)
        else:
            self.lunch = None

    @classmethod
    def from_settings(cls) -> "WorkingHoursPolicy":
        settings = get_settings()
        return cls(
            timezone=settings.business_timezone,
            start_hour=settings.business_start_hour,
            end_hour=settings.business_end_hour,
            weekdays=settings.business_weekdays_set,
            lunch_start_hour=settings.lunch_break_start_hour,
            lunch_end_hour=settings.lunch_break_end_hour,
        )

    def localize(self, value: datetime) -> datetime:
        """Express ``value`` in the business timezone."""
        if value.tzinfo is None:
            return value.replace(tzinfo=self.tz)
        return value.astimezone(self.tz)

    def local_date(self, value: datetime) -> date:
        return self.localize(value).date()

    @staticmethod
    def _minutes(local: datetime) -> int:
        return local.hour * 60 + local.minute

    def _day_check(self, local: datetime) -> Optional[HoursCheck]:
        if local.isoweekday() not in self.weekdays:
            day_name = DAY_NAMES[local.weekday()]
            return HoursCheck(False, f"Appointments are not available on {day_name}s")
        return None

    def is_valid_instant(self, value: datetime) -> HoursCheck:
        """Check that an appointment may start at ``value``."""
        local = self.localize(value)

        day_failure = self._day_check(local)
        if day_failure:
            return day_failure

        minutes = self._minutes(local)
        if minutes < self.start_hour * 60:
            return HoursCheck(
                False,
                f"Appointments are only available from {format_hour(self.start_hour)} onwards",
            )
        if minutes >= self.end_hour * 60:
            return HoursCheck(
                False,
                f"Appointments are only available until {format_hour(self.end_hour)}",
            )
        if self.lunch and self.lunch[0] * 60 <= minutes < self.lunch[1] * 60:
            return HoursCheck(
                False,
                f"Appointments are not available during lunch break ({self._lunch_label()})",
            )

        return HoursCheck(True, "Valid working time")

    def is_valid_range(self, start: datetime, end: datetime) -> HoursCheck:
        """Check that ``start`` to ``end`` can be booked as one appointment.

        Both endpoints must be valid working times, so a session cannot
        end at closing time or when lunch begins.
        """
        local_start = self.localize(start)
        local_end = self.localize(end)

        if local_end <= local_start:
            return HoursCheck(False, "End time must be after start time")

        if local_start.date() != local_end.date():
            return HoursCheck(False, "Appointments cannot span multiple days")

        start_check = self.is_valid_instant(local_start)
        if not start_check:
            return start_check

        end_check = self.is_valid_instant(local_end)
        if not end_check:
            return end_check

        if self.lunch:
            lunch_start = self.lunch[0] * 60
            if self._minutes(local_start) < lunch_start < self._minutes(local_end):
                return HoursCheck(
                    False,
                    f"Appointments cannot be scheduled across lunch break ({self._lunch_label()})",
                )

        return HoursCheck(True, "Valid appointment time range")

    def available_slots(self, day: date, duration_minutes: int) -> list[SlotWindow]:
        """List back-to-back bookable windows of ``duration_minutes`` on ``day``."""
        if day.isoweekday() not in self.weekdays or duration_minutes <= 0:
            return []

        step = timedelta(minutes=duration_minutes)
        cursor = datetime.combine(day, time(self.start_hour), tzinfo=self.tz)
        closing = datetime.combine(day, time(0), tzinfo=self.tz) + timedelta(hours=self.end_hour)
        slots: list[SlotWindow] = []

        while cursor + step <= closing:
            if self.is_valid_range(cursor, cursor + step):
                slots.append(SlotWindow(cursor, cursor + step))
                cursor += step
            elif self.lunch and self._minutes(cursor) < self.lunch[1] * 60:
                # Window would overlap lunch; resume right after it
                cursor = datetime.combine(day, time(self.lunch[1]), tzinfo=self.tz)
            else:
                break

        return slots

    def _lunch_label(self) -> str:
        assert self.lunch is not None
        return f"{format_hour(self.lunch[0])} - {format_hour(self.lunch[1])}"

    def describe(self) -> str:
        """Human-readable summary of business hours."""
        days = [DAY_NAMES[d - 1] for d in sorted(self.weekdays)]
        if days == DAY_NAMES[:5]:
            day_text = "Monday to Friday"
        else:
            day_text = ", ".join(days)

        text = f"{day_text}, {format_hour(self.start_hour)} - {format_hour(self.end_hour)}"
        if self.lunch:
            text += f" (lunch break {self._lunch_label()})"
        return text


# Singleton
_policy: Optional[WorkingHoursPolicy] = None


def get_working_hours_policy() -> WorkingHoursPolicy:
    """Get singleton WorkingHoursPolicy built from settings."""
    global _policy
    if _policy is None:
        _policy = WorkingHoursPolicy.from_settings()
    return _policy
