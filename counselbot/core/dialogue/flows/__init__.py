"""Guided conversation flows."""

from .book_order import BookOrderFlow
from .booking import BookingFlow
from .mentorship import MentorshipFlow
from .review import ReviewFlow
from .support import SupportFlow

__all__ = [
    "BookingFlow",
    "BookOrderFlow",
    "MentorshipFlow",
    "ReviewFlow",
    "SupportFlow",
]
