"""
Scheduling errors.

Every error carries a human-readable ``reason`` that is shown to the
user as-is, either in a dialogue re-prompt or an HTTP error body.
"""


class SchedulingError(Exception):
    """Base class for scheduling failures."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ValidationError(SchedulingError):
    """Request is malformed or outside working hours. Nothing was written."""
    pass


class ConflictError(SchedulingError):
    """Interval overlaps an existing booking or falls on an absence day."""
    pass


class NotFoundError(SchedulingError):
    """Referenced provider, appointment or slot does not exist."""
    pass


class ExhaustionError(SchedulingError):
    """No unused appointment code could be found up to the maximum length."""
    pass
