"""
Dialogue engine.

Routes each inbound message to the user's active flow, starts flows on
their triggers and answers the stand-alone commands (cancel/status of an
appointment, listing upcoming appointments, help).

A user has at most one session. Starting a flow replaces whatever flow
was in progress; its answers are discarded, never merged.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from counselbot.core.dialogue.flows import (
    BookingFlow,
    BookOrderFlow,
    MentorshipFlow,
    ReviewFlow,
    SupportFlow,
)
from counselbot.core.dialogue.forms import FlowResult, GuidedForm, reply
from counselbot.core.dialogue.session import (
    DialogueSession,
    FlowType,
    SessionRepository,
    get_session_repository,
)
from counselbot.core.scheduling import (
    SchedulingError,
    SlotConflictResolver,
    WorkingHoursPolicy,
    get_slot_conflict_resolver,
    get_working_hours_policy,
)
from counselbot.infra.database import get_db_context
from counselbot.infra.messaging import OutgoingMessage, TelegramClient, get_telegram_client
from counselbot.models.database import AppointmentStatus, PaymentStatus
from counselbot.services.appointments import find_user_appointment, list_upcoming_for_user

logger = logging.getLogger(__name__)

# Not "no": yes/no steps take it as an answer
CANCEL_TOKENS = frozenset({"cancel", "/cancel", "stop", "quit"})

# Order flows are listed in the help menu
FLOW_PRIORITY = (
    FlowType.SUPPORT,
    FlowType.MENTORSHIP,
    FlowType.REVIEW,
    FlowType.BOOK_ORDER,
    FlowType.BOOKING,
)

FLOW_TRIGGERS: dict[str, FlowType] = {
    "/book": FlowType.BOOKING,
    "book": FlowType.BOOKING,
    "book appointment": FlowType.BOOKING,
    "📅 book appointment": FlowType.BOOKING,
    "/support": FlowType.SUPPORT,
    "support": FlowType.SUPPORT,
    "🆘 support": FlowType.SUPPORT,
    "/mentorships": FlowType.MENTORSHIP,
    "mentorships": FlowType.MENTORSHIP,
    "mentorship": FlowType.MENTORSHIP,
    "/books": FlowType.BOOK_ORDER,
    "books": FlowType.BOOK_ORDER,
    "📚 books for sale": FlowType.BOOK_ORDER,
}

FLOW_HELP = {
    FlowType.SUPPORT: "support - talk to a counselor about an issue",
    FlowType.MENTORSHIP: "/mentorships - apply for a mentorship program",
    FlowType.REVIEW: "/review <code> - review a completed session",
    FlowType.BOOK_ORDER: "/books - buy a book",
    FlowType.BOOKING: "/book - book a counseling session",
}

REVIEW_TRIGGER = re.compile(r"^/review(?:\s+(\S+))?$", re.IGNORECASE)
CANCEL_COMMAND = re.compile(r"^cancel\s+(\S+)$", re.IGNORECASE)
STATUS_COMMAND = re.compile(r"^status\s+(\S+)$", re.IGNORECASE)
MY_APPOINTMENTS = frozenset({"/myappointments", "/appointments", "my appointments", "📋 my appointments"})

MAIN_KEYBOARD = [["📅 Book Appointment", "📋 My Appointments"], ["🆘 Support", "📚 Books for Sale"]]


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass
class InboundMessage:
    """Message received from the messaging channel."""

    user_id: str
    text: str
    chosen_action_id: Optional[str] = None
    username: Optional[str] = None

    @property
    def content(self) -> str:
        """Keyboard choices take precedence over typed text."""
        return (self.chosen_action_id or self.text or "").strip()


def is_cancel_token(text: str) -> bool:
    return text.strip().lower() in CANCEL_TOKENS


class DialogueEngine:
    """Drives guided flows and commands for every user."""

    def __init__(
        self,
        repository: Optional[SessionRepository] = None,
        flows: Optional[dict[FlowType, GuidedForm]] = None,
        notifier: Optional[TelegramClient] = None,
        policy: Optional[WorkingHoursPolicy] = None,
        resolver: Optional[SlotConflictResolver] = None,
    ):
        self._repository = repository
        self.policy = policy or get_working_hours_policy()
        self._resolver = resolver
        self.flows = flows or {
            FlowType.BOOKING: BookingFlow(policy=self.policy, resolver=resolver),
            FlowType.SUPPORT: SupportFlow(),
            FlowType.MENTORSHIP: MentorshipFlow(),
            FlowType.BOOK_ORDER: BookOrderFlow(),
            FlowType.REVIEW: ReviewFlow(),
        }
        self._notifier = notifier

    async def repository(self) -> SessionRepository:
        if self._repository is None:
            self._repository = await get_session_repository()
        return self._repository

    @property
    def resolver(self) -> SlotConflictResolver:
        if self._resolver is None:
            self._resolver = get_slot_conflict_resolver()
        return self._resolver

    @property
    def notifier(self) -> TelegramClient:
        if self._notifier is None:
            self._notifier = get_telegram_client()
        return self._notifier

    # === Flow state machine ===

    async def handle(self, session: DialogueSession, text: str) -> FlowResult:
        """Advance ``session`` with one answer.

        Returns the session to keep (None once the flow ended) and the
        replies to send.
        """
        flow = self.flows[session.flow_type]
        if is_cancel_token(text):
            return flow.cancel(session)
        return await flow.advance(session, text)

    # === Routing ===

    async def process(self, message: InboundMessage) -> list[OutgoingMessage]:
        """Handle one inbound message and return the replies, without sending them."""
        _, replies = await self._route(message)
        return replies

    async def receive(self, message: InboundMessage) -> list[OutgoingMessage]:
        """Handle one inbound message and deliver the replies.

        When the flow moves on, the previous prompt is deleted so the
        chat only shows the current question.
        """
        repository = await self.repository()
        previous = await repository.get(message.user_id)
        previous_prompt = previous.last_message_id if previous else None
        previous_position = (previous.flow_type, previous.step) if previous else None

        session, replies = await self._route(message)

        moved_on = session is None or (session.flow_type, session.step) != previous_position
        if previous_prompt is not None and moved_on:
            await self.notifier.delete_message(message.user_id, previous_prompt)

        last_sent: Optional[int] = None
        for outgoing in replies:
            last_sent = await self.notifier.send(outgoing)

        if session is not None and last_sent is not None:
            session.last_message_id = last_sent
            await repository.set(session)

        return replies

    async def _route(self, message: InboundMessage) -> FlowResult:
        repository = await self.repository()
        text = message.content
        normalized = text.lower()

        session = await repository.get(message.user_id)

        # Trigger: start a fresh flow, dropping any other one in progress
        started = await self._start_flow(message, normalized)
        if started is not None:
            new_session, replies = started
            if new_session is None:
                # Refused to start; whatever was in progress carries on
                return session, replies
            if session is not None:
                logger.info(
                    f"User {message.user_id} left {session.flow_type.value} flow "
                    f"at {session.step} to start a new one"
                )
            await self._store(repository, message.user_id, new_session)
            return new_session, replies

        if session is not None:
            new_session, replies = await self.handle(session, text)
            await self._store(repository, message.user_id, new_session)
            return new_session, replies

        return None, await self._command(message, normalized)

    async def _store(
        self,
        repository: SessionRepository,
        user_id: str,
        session: Optional[DialogueSession],
    ) -> None:
        if session is None:
            await repository.clear(user_id)
        else:
            await repository.set(session)

    async def _start_flow(self, message: InboundMessage, normalized: str) -> Optional[FlowResult]:
        argument: Optional[str] = None
        flow_type = FLOW_TRIGGERS.get(normalized)

        if flow_type is None:
            match = REVIEW_TRIGGER.match(normalized)
            if match is None:
                return None
            flow_type = FlowType.REVIEW
            argument = match.group(1)

        logger.info(f"Starting {flow_type.value} flow for {message.user_id}")
        return await self.flows[flow_type].start(message.user_id, message.username, argument)

    # === Commands ===

    async def _command(self, message: InboundMessage, normalized: str) -> list[OutgoingMessage]:
        user_id = message.user_id

        if normalized in CANCEL_TOKENS:
            return [OutgoingMessage(user_id, "There's nothing in progress to cancel.", MAIN_KEYBOARD)]

        match = CANCEL_COMMAND.match(message.content)
        if match:
            return [await self._cancel_appointment(user_id, match.group(1))]

        match = STATUS_COMMAND.match(message.content)
        if match:
            return [await self._appointment_status(user_id, match.group(1))]

        if normalized in MY_APPOINTMENTS:
            return [await self._list_appointments(user_id)]

        return [self.help_menu(user_id)]

    def help_menu(self, user_id: str) -> OutgoingMessage:
        lines = ["Hello! Here's what I can help you with:", ""]
        lines += [FLOW_HELP[flow_type] for flow_type in FLOW_PRIORITY]
        lines += [
            "/myappointments - see your upcoming appointments",
            "status <code> - check an appointment",
            "cancel <code> - cancel an appointment",
            "",
            f"Sessions are available {self.policy.describe()}.",
            "Send 'cancel' at any point to stop what you're doing.",
        ]
        return OutgoingMessage(user_id, "\n".join(lines), MAIN_KEYBOARD)

    async def _cancel_appointment(self, user_id: str, code: str) -> OutgoingMessage:
        async with get_db_context() as db:
            found = await find_user_appointment(db, code, user_id)

        if found is None:
            return OutgoingMessage(user_id, f"I couldn't find an appointment {code.upper()} booked by you.")

        appointment, _ = found
        if appointment.status == AppointmentStatus.CANCELLED:
            return OutgoingMessage(user_id, f"Appointment {appointment.code} is already cancelled.")
        if appointment.status == AppointmentStatus.COMPLETED:
            return OutgoingMessage(user_id, f"Appointment {appointment.code} has already taken place.")

        try:
            await self.resolver.cancel(appointment.id)
        except SchedulingError as e:
            logger.error(f"Cancelling {appointment.code} for {user_id} failed: {e.reason}")
            return OutgoingMessage(user_id, "Sorry, I couldn't cancel that appointment. Please contact support.")

        text = f"Appointment {appointment.code} has been cancelled."
        if appointment.payment_status == PaymentStatus.PAID:
            text += (
                "\n\nYou had already paid for this session. Please contact support "
                f"with your appointment code {appointment.code} to arrange a refund."
            )
        return OutgoingMessage(user_id, text)

    async def _appointment_status(self, user_id: str, code: str) -> OutgoingMessage:
        async with get_db_context() as db:
            found = await find_user_appointment(db, code, user_id)

        if found is None:
            return OutgoingMessage(user_id, f"I couldn't find an appointment {code.upper()} booked by you.")

        appointment, provider_name = found
        local_start = self.policy.localize(appointment.start)
        return OutgoingMessage(
            user_id,
            f"Appointment {appointment.code}\n"
            f"Counselor: {provider_name}\n"
            f"When: {local_start:%A %d %B %Y at %H:%M}\n"
            f"Status: {appointment.status.value.replace('_', ' ')}\n"
            f"Payment: {appointment.payment_status.value}",
        )

    async def _list_appointments(self, user_id: str) -> OutgoingMessage:
        async with get_db_context() as db:
            upcoming = await list_upcoming_for_user(db, user_id, _utcnow())

        if not upcoming:
            return OutgoingMessage(user_id, "You have no upcoming appointments. Send /book to make one.")

        lines = ["Your upcoming appointments:", ""]
        for appointment, provider_name in upcoming:
            local_start = self.policy.localize(appointment.start)
            lines.append(
                f"{appointment.code} - {local_start:%Y-%m-%d %H:%M} with {provider_name} "
                f"({appointment.status.value.replace('_', ' ')})"
            )
        return OutgoingMessage(user_id, "\n".join(lines))


# Singleton
_engine: Optional[DialogueEngine] = None


def get_dialogue_engine() -> DialogueEngine:
    """Get singleton DialogueEngine."""
    global _engine
    if _engine is None:
        _engine = DialogueEngine()
    return _engine
