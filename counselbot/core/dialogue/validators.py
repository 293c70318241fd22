"""
Field validators for guided forms.

Each validator takes the stripped answer and the session, and returns
the value to store or raises FieldError with the text to show.
"""

import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional

from counselbot.core.dialogue.forms import FieldError, FlowCancelled, Validator
from counselbot.core.dialogue.session import DialogueSession
from counselbot.core.scheduling.hours import WorkingHoursPolicy

DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
DATETIME_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
LONG_DIGITS = re.compile(r"\d{10,}")

YES_WORDS = {"yes", "y"}
NO_WORDS = {"no", "n"}
SKIP_WORDS = {"skip", "none"}


def min_length(minimum: int, message: str) -> Validator:
    def validate(text: str, session: DialogueSession) -> str:
        if len(text) < minimum:
            raise FieldError(message)
        return text
    return validate


def free_text(text: str, session: DialogueSession) -> str:
    if not text:
        raise FieldError("Please type a reply.")
    return text


def optional_text(text: str, session: DialogueSession) -> Optional[str]:
    if text.lower() in SKIP_WORDS:
        return None
    return text or None


def full_name(text: str, session: DialogueSession) -> str:
    if len(text) < 2:
        raise FieldError("That name seems too short. Please enter a valid full name (at least 2 characters).")
    return text


def date_of_birth(text: str, session: DialogueSession) -> str:
    if not DATE_PATTERN.match(text):
        raise FieldError("Please use the correct date format: YYYY-MM-DD\n\nExample: 1990-01-15")
    try:
        value = date.fromisoformat(text)
    except ValueError:
        raise FieldError("That date doesn't exist. Please check it and use YYYY-MM-DD.")
    if value >= date.today():
        raise FieldError("Your date of birth must be in the past.")
    return value.isoformat()


def phone(text: str, session: DialogueSession) -> str:
    if len(text) < 5 or "+" not in text:
        raise FieldError("Please enter a valid phone number with country code.\nExample: +254712345678")
    return text


def email(text: str, session: DialogueSession) -> str:
    if not EMAIL_PATTERN.match(text):
        raise FieldError("Please enter a valid email address.\nExample: john@example.com")
    return text


def yes_no(text: str, session: DialogueSession) -> bool:
    answer = text.lower()
    if answer in YES_WORDS:
        return True
    if answer in NO_WORDS:
        return False
    raise FieldError("Please reply with 'Yes' or 'No'.")


def require_yes(text: str, session: DialogueSession) -> bool:
    """Gate step: yes continues, no ends the flow."""
    if yes_no(text, session):
        return True
    raise FlowCancelled()


def choice(options: dict[str, str], message: str) -> Validator:
    """Map accepted spellings (lower-case) to a canonical value."""
    def validate(text: str, session: DialogueSession) -> str:
        try:
            return options[text.lower()]
        except KeyError:
            raise FieldError(message)
    return validate


def numbered_choice(context_key: str, message: str = "Please reply with a valid number from the list.") -> Validator:
    """Pick an entry by its 1-based position in ``session.context[context_key]``."""
    def validate(text: str, session: DialogueSession) -> dict:
        options = session.context.get(context_key, [])
        try:
            index = int(text)
        except ValueError:
            raise FieldError(message)
        if not 1 <= index <= len(options):
            raise FieldError(message)
        return options[index - 1]
    return validate


def int_range(low: int, high: int, message: str) -> Validator:
    def validate(text: str, session: DialogueSession) -> int:
        try:
            value = int(text)
        except ValueError:
            raise FieldError(message)
        if not low <= value <= high:
            raise FieldError(message)
        return value
    return validate


def emergency_contact(text: str, session: DialogueSession) -> dict:
    message = "Please provide both name and phone number.\n\nExample: John Doe +254712345678"
    parts = text.split()
    if len(parts) < 2:
        raise FieldError(message)

    phone_part = next((p for p in parts if "+" in p or LONG_DIGITS.search(p)), None)
    name_parts = [p for p in parts if "+" not in p and not LONG_DIGITS.search(p)]
    if phone_part is None or not name_parts:
        raise FieldError(message)
    return {"name": " ".join(name_parts), "phone": phone_part}


def session_datetime(
    policy: WorkingHoursPolicy,
    duration_of: Callable[[DialogueSession], int],
    now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> Validator:
    """Booking start time: format, in the future, and inside working hours
    for the whole session length."""
    def validate(text: str, session: DialogueSession) -> str:
        if not DATETIME_PATTERN.match(text):
            raise FieldError(
                "Please use the correct date and time format: YYYY-MM-DD HH:MM\n\nExample: 2024-01-20 14:30"
            )
        try:
            naive = datetime.strptime(text, "%Y-%m-%d %H:%M")
        except ValueError:
            raise FieldError("That date doesn't look right. Please enter a valid future date and time.")

        start = policy.localize(naive)
        if start <= now():
            raise FieldError("That time has already passed. Please enter a future date and time.")

        duration = duration_of(session)
        check = policy.is_valid_range(start, start + timedelta(minutes=duration))
        if not check:
            message = f"Invalid appointment time! {check.reason}\n\nWorking hours: {policy.describe()}"
            slots = policy.available_slots(start.date(), duration)
            if slots:
                message += f"\nSession times that fit on {start:%Y-%m-%d}: " + ", ".join(
                    slot.label() for slot in slots
                )
            raise FieldError(message)
        return start.isoformat()
    return validate


def options_text(options: Iterable[Any], label: Callable[[Any], str]) -> str:
    return "\n".join(f"{i}. {label(option)}" for i, option in enumerate(options, start=1))
