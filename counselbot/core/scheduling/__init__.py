"""
Scheduling core: working hours, appointment codes, conflict-free
reservations and reminders.
"""

from counselbot.core.scheduling.codes import CodeGenerator, get_code_generator
from counselbot.core.scheduling.errors import (
    ConflictError,
    ExhaustionError,
    NotFoundError,
    SchedulingError,
    ValidationError,
)
from counselbot.core.scheduling.hours import (
    HoursCheck,
    SlotWindow,
    WorkingHoursPolicy,
    get_working_hours_policy,
)
from counselbot.core.scheduling.reminders import (
    ReminderScheduler,
    ReminderSweeper,
    SweepResult,
    get_reminder_scheduler,
)
from counselbot.core.scheduling.reservations import (
    ClientDetails,
    ReservationPayload,
    SlotConflictResolver,
    get_slot_conflict_resolver,
)

__all__ = [
    "CodeGenerator",
    "get_code_generator",
    "SchedulingError",
    "ValidationError",
    "ConflictError",
    "NotFoundError",
    "ExhaustionError",
    "HoursCheck",
    "SlotWindow",
    "WorkingHoursPolicy",
    "get_working_hours_policy",
    "ReminderScheduler",
    "ReminderSweeper",
    "SweepResult",
    "get_reminder_scheduler",
    "ClientDetails",
    "ReservationPayload",
    "SlotConflictResolver",
    "get_slot_conflict_resolver",
]
