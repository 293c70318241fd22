"""Counseling session booking flow."""

import logging
import uuid
from datetime import date, datetime, timedelta
from typing import Optional

from counselbot.core.dialogue import validators as v
from counselbot.core.dialogue.forms import FlowResult, FormStep, GuidedForm, reply
from counselbot.core.dialogue.session import DialogueSession, FlowType
from counselbot.core.scheduling import (
    ClientDetails,
    ConflictError,
    ReservationPayload,
    SchedulingError,
    SlotConflictResolver,
    ValidationError,
    WorkingHoursPolicy,
    get_slot_conflict_resolver,
    get_working_hours_policy,
)
from counselbot.infra.database import get_db_context
from counselbot.models.database import AppointmentStatus
from counselbot.services.appointments import list_active_providers
from counselbot.services.payments import request_session_payment

logger = logging.getLogger(__name__)

DURATIONS = {"45": 45, "45 mins": 45, "60": 60, "60 mins": 60, "90": 90, "90 mins": 90}
SESSION_TYPES = {
    "online": "online (video)",
    "video": "online (video)",
    "online (video)": "online (video)",
    "phone": "phone",
}
PAYMENT_METHODS = {"m-pesa": "M-Pesa", "mpesa": "M-Pesa", "bank": "Bank", "bank transfer": "Bank"}


def _summary(session: DialogueSession) -> str:
    fields = session.collected_fields
    start = datetime.fromisoformat(fields["session_datetime"])
    contact = fields["emergency_contact"]
    previous = "Yes" if fields["previous_therapy"] else "No"
    return (
        "Please review your details:\n\n"
        f"Name: {fields['full_name']}\n"
        f"Date of birth: {fields['date_of_birth']}\n"
        f"Phone: {fields['contact_phone']}\n"
        f"Email: {fields['contact_email']}\n"
        f"Session: {start:%Y-%m-%d %H:%M}, {fields['session_duration']} mins, {fields['session_type']}\n"
        f"Counselor: {fields['provider']['name']}\n"
        f"Reason: {fields['therapy_reason']}\n"
        f"Goals: {fields['session_goals']}\n"
        f"Previous therapy: {previous}\n"
        f"Emergency contact: {contact['name']} {contact['phone']}\n"
        f"Payment: {fields['payment_method']}\n\n"
        "Do you confirm that everything is correct and you agree to our privacy policy?\n"
        "Type 'yes' to confirm and proceed to payment, or 'no' to cancel."
    )


class BookingFlow(GuidedForm):
    """
    Collects intake details and reserves a session.

    The duration is asked before the start time so the working-hours
    check covers the whole session.
    """

    flow_type = FlowType.BOOKING
    cancel_message = "No problem! I've cancelled the booking. Send /book whenever you're ready to start over."

    def __init__(
        self,
        policy: Optional[WorkingHoursPolicy] = None,
        resolver: Optional[SlotConflictResolver] = None,
    ):
        self.policy = policy or get_working_hours_policy()
        self._resolver = resolver
        super().__init__()

    @property
    def resolver(self) -> SlotConflictResolver:
        if self._resolver is None:
            self._resolver = get_slot_conflict_resolver()
        return self._resolver

    def _provider_prompt(self, session: DialogueSession) -> str:
        listing = v.options_text(session.context["providers"], lambda p: p["name"])
        return f"Please choose your preferred counselor by number:\n\n{listing}\n\nReply with the number (e.g., 1)."

    def build_steps(self) -> list[FormStep]:
        return [
            FormStep(
                "consent",
                "Let's book your counseling session. I'll ask a few questions step by step.\n\n"
                "Shall we begin? Reply 'Yes' to start or 'No' to cancel.",
                v.require_yes,
                keyboard=[["Yes", "No"]],
            ),
            FormStep("full_name", "What's your full name?\n\nExample: John Doe", v.full_name),
            FormStep(
                "date_of_birth",
                "What's your date of birth?\n\nType it like this: 1990-01-15 (YYYY-MM-DD)",
                v.date_of_birth,
            ),
            FormStep(
                "contact_phone",
                "Please provide your phone number with country code.\n\nExample: +254712345678",
                v.phone,
            ),
            FormStep(
                "contact_email",
                "Please provide your email address.\n\nExample: john@example.com",
                v.email,
            ),
            FormStep(
                "session_duration",
                "How long would you like your session to be? 45, 60 or 90 mins.",
                v.choice(DURATIONS, "Please choose one of the session durations: 45, 60 or 90 mins."),
                keyboard=[["45 mins", "60 mins", "90 mins"]],
            ),
            FormStep(
                "session_datetime",
                lambda session: (
                    "When would you like to have your session?\n\n"
                    "Type the date and time like this: 2024-01-20 14:30 (YYYY-MM-DD HH:MM)\n"
                    f"Working hours: {self.policy.describe()}"
                ),
                v.session_datetime(
                    self.policy,
                    lambda session: session.collected_fields["session_duration"],
                ),
            ),
            FormStep(
                "session_type",
                "What type of session do you prefer? Online (Video) or Phone.",
                v.choice(SESSION_TYPES, "Please choose one of the session types: Online (Video) or Phone."),
                keyboard=[["Online (Video)", "Phone"]],
            ),
            FormStep(
                "therapy_reason",
                "Can you briefly describe what brings you to therapy?",
                v.min_length(
                    10,
                    "Please provide a bit more detail about what brings you to therapy (at least 10 characters).",
                ),
            ),
            FormStep(
                "session_goals",
                "What are your main goals for this session?",
                v.min_length(
                    10,
                    "Please provide a bit more detail about your session goals (at least 10 characters).",
                ),
            ),
            FormStep(
                "previous_therapy",
                "Have you attended therapy before? Yes or No.",
                v.yes_no,
                keyboard=[["Yes", "No"]],
            ),
            FormStep("provider", self._provider_prompt, v.numbered_choice("providers")),
            FormStep(
                "emergency_contact",
                "Please provide an emergency contact (name & phone number).\n\nExample: John Doe +254712345678",
                v.emergency_contact,
            ),
            FormStep(
                "payment_method",
                "How would you like to pay? M-Pesa or Bank.",
                v.choice(PAYMENT_METHODS, "Please choose one of the payment methods: M-Pesa or Bank."),
                keyboard=[["M-Pesa", "Bank"]],
            ),
            FormStep("confirm", _summary, v.require_yes, keyboard=[["Yes", "No"]]),
        ]

    async def start(
        self,
        user_id: str,
        username: Optional[str] = None,
        argument: Optional[str] = None,
    ) -> FlowResult:
        async with get_db_context() as db:
            providers = await list_active_providers(db)

        if not providers:
            logger.warning("Booking requested but no counselors are available")
            return None, [reply(
                self.new_session(user_id),
                "Sorry, no counselors are available right now. Please try again later.",
            )]

        session = self.new_session(
            user_id,
            username,
            providers=[{"id": str(p.id), "name": p.name} for p in providers],
        )
        logger.info(f"Booking flow started for {user_id}")
        return session, [self.prompt_for(session, self.steps[0])]

    async def complete(self, session: DialogueSession) -> FlowResult:
        fields = session.collected_fields
        start = datetime.fromisoformat(fields["session_datetime"])
        end = start + timedelta(minutes=fields["session_duration"])
        provider = fields["provider"]
        contact = fields["emergency_contact"]

        payload = ReservationPayload(
            status=AppointmentStatus.PENDING_PAYMENT,
            client=ClientDetails(
                full_name=fields["full_name"],
                date_of_birth=date.fromisoformat(fields["date_of_birth"]),
                phone=fields["contact_phone"],
                email=fields["contact_email"],
                channel_user_id=session.user_id,
                emergency_contact_name=contact["name"],
                emergency_contact_phone=contact["phone"],
                therapy_reason=fields["therapy_reason"],
                session_goals=fields["session_goals"],
                previous_therapy=fields["previous_therapy"],
            ),
            session_type=fields["session_type"],
            payment_method=fields["payment_method"],
            channel_user_id=session.user_id,
            channel_username=session.username,
        )

        try:
            appointment = await self.resolver.reserve(
                uuid.UUID(provider["id"]), start, end, payload
            )
        except (ConflictError, ValidationError) as e:
            # Keep everything else; only the time needs to change
            logger.info(f"Booking for {session.user_id} rejected: {e.reason}")
            return self.rewind(session, "session_datetime", e.reason)
        except SchedulingError as e:
            logger.error(f"Booking for {session.user_id} failed: {e.reason}")
            return None, [reply(
                session,
                "I'm sorry, there was an error processing your booking. "
                "Please try again or contact support.",
            )]

        payment_text = await request_session_payment(
            appointment.code,
            fields["session_duration"],
            fields["payment_method"],
            fields["contact_phone"],
        )

        logger.info(f"Booking flow completed for {session.user_id}: {appointment.code}")
        return None, [
            reply(
                session,
                f"Your session with {provider['name']} on {start:%A %d %B %Y at %H:%M} is reserved.\n"
                f"Your appointment code is {appointment.code}. Keep it to check the status "
                f"('status {appointment.code}') or cancel ('cancel {appointment.code}').",
            ),
            reply(session, payment_text),
        ]
