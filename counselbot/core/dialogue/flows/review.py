"""Session review flow, started with /review <code>."""

import logging
import uuid
from typing import Optional

from sqlalchemy import select

from counselbot.core.dialogue import validators as v
from counselbot.core.dialogue.forms import FlowResult, FormStep, GuidedForm, reply
from counselbot.core.dialogue.session import DialogueSession, FlowType
from counselbot.infra.database import get_db_context
from counselbot.models.database import AppointmentReview, AppointmentStatus
from counselbot.services.appointments import find_user_appointment

logger = logging.getLogger(__name__)

QUALITIES = {q: q for q in ("excellent", "good", "average", "poor")}


class ReviewFlow(GuidedForm):
    """Collects a rating and feedback for a completed session."""

    flow_type = FlowType.REVIEW
    cancel_message = "Review cancelled. You can review the session later with /review <code>."

    def build_steps(self) -> list[FormStep]:
        return [
            FormStep(
                "rating",
                lambda session: (
                    f"Let's review your session with {session.context['provider_name']}!\n\n"
                    "Please rate the session from 1 to 5 (1 = poor, 5 = excellent):"
                ),
                v.int_range(1, 5, "Please rate the session from 1 to 5 (1 = poor, 5 = excellent)."),
                keyboard=[["1", "2", "3", "4", "5"]],
            ),
            FormStep(
                "session_quality",
                "How would you describe the overall quality of the session? "
                "excellent, good, average or poor",
                v.choice(QUALITIES, "Please type one of: excellent, good, average, or poor"),
                keyboard=[["excellent", "good"], ["average", "poor"]],
            ),
            FormStep(
                "would_recommend",
                "Would you recommend this counselor to others? Type 'yes' or 'no':",
                v.yes_no,
                keyboard=[["Yes", "No"]],
            ),
            FormStep(
                "review_text",
                "Please write a brief review of your session (optional, type 'skip' to skip):",
                v.optional_text,
            ),
            FormStep(
                "additional_feedback",
                "Any additional feedback or suggestions (optional, type 'skip' to skip):",
                v.optional_text,
            ),
        ]

    async def start(
        self,
        user_id: str,
        username: Optional[str] = None,
        argument: Optional[str] = None,
    ) -> FlowResult:
        placeholder = self.new_session(user_id)
        if not argument:
            return None, [reply(placeholder, "Please provide an appointment code. Usage: /review [appointment_code]")]

        async with get_db_context() as db:
            found = await find_user_appointment(db, argument, user_id)
            if found is None:
                return None, [reply(placeholder, "Appointment not found or doesn't belong to you.")]

            appointment, provider_name = found
            if appointment.status != AppointmentStatus.COMPLETED:
                return None, [reply(
                    placeholder,
                    "This appointment hasn't been completed yet. "
                    "Reviews are only available for completed sessions.",
                )]

            existing = await db.execute(
                select(AppointmentReview.id).where(AppointmentReview.appointment_id == appointment.id)
            )
            if existing.first() is not None:
                return None, [reply(placeholder, "You've already reviewed this session. Thank you!")]

        session = self.new_session(
            user_id,
            username,
            appointment_id=str(appointment.id),
            client_id=str(appointment.client_id) if appointment.client_id else None,
            provider_id=str(appointment.provider_id),
            provider_name=provider_name,
        )
        return session, [self.prompt_for(session, self.steps[0])]

    async def complete(self, session: DialogueSession) -> FlowResult:
        fields = session.collected_fields
        context = session.context

        async with get_db_context() as db:
            db.add(AppointmentReview(
                appointment_id=uuid.UUID(context["appointment_id"]),
                client_id=uuid.UUID(context["client_id"]) if context["client_id"] else None,
                provider_id=uuid.UUID(context["provider_id"]),
                rating=fields["rating"],
                session_quality=fields["session_quality"],
                would_recommend=fields["would_recommend"],
                review_text=fields.get("review_text"),
                additional_feedback=fields.get("additional_feedback"),
            ))

        logger.info(f"Review submitted by {session.user_id} for appointment {context['appointment_id']}")
        return None, [reply(session, "Thank you for your feedback! Your review has been submitted.")]
