"""Mentorship program application flow."""

import logging
import uuid
from typing import Optional

from sqlalchemy import select

from counselbot.core.dialogue import validators as v
from counselbot.core.dialogue.forms import FlowResult, FormStep, GuidedForm, reply
from counselbot.core.dialogue.session import DialogueSession, FlowType
from counselbot.infra.database import get_db_context
from counselbot.models.database import MentorshipApplication, MentorshipProgram
from counselbot.services.payments import format_amount

logger = logging.getLogger(__name__)

PAYMENT_METHODS = {"m-pesa": "M-Pesa", "mpesa": "M-Pesa", "bank": "Bank"}


def _program_label(program: dict) -> str:
    label = f"{program['title']} - {format_amount(program['price_cents'])}"
    if program.get("description"):
        label += f"\n   {program['description']}"
    return label


def _programs_prompt(session: DialogueSession) -> str:
    listing = v.options_text(session.context["programs"], _program_label)
    return (
        f"Available Mentorship Programs:\n\n{listing}\n\n"
        "Reply with the number of the program you want to apply for."
    )


def _reference_prompt(session: DialogueSession) -> str:
    if session.collected_fields["payment_method"] == "M-Pesa":
        return "Enter your M-Pesa transaction code (e.g., QXT123ABC4)."
    return "Enter your bank payment details (bank name and reference number)."


def _summary(session: DialogueSession) -> str:
    fields = session.collected_fields
    program = fields["program"]
    text = (
        "Please confirm your application:\n\n"
        f"Program: {program['title']} ({format_amount(program['price_cents'])})\n"
        f"Name: {fields['applicant_name']}\n"
        f"Contact: {fields['contact_info']}\n"
        f"Payment: {fields['payment_method']} ({fields['payment_reference']})\n"
    )
    if fields.get("additional_details"):
        text += f"Details: {fields['additional_details']}\n"
    return text + "\nType 'yes' to submit or 'no' to cancel."


class MentorshipFlow(GuidedForm):
    """Collects an application for one of the listed programs."""

    flow_type = FlowType.MENTORSHIP
    cancel_message = "Application canceled. If you want to try again, type /mentorships."

    def build_steps(self) -> list[FormStep]:
        return [
            FormStep(
                "program",
                _programs_prompt,
                v.numbered_choice("programs", "Please reply with a valid number from the list above."),
            ),
            FormStep("applicant_name", "Great! What's your full name?", v.full_name),
            FormStep("contact_info", "Thanks. What's your contact info (phone or email)?", v.free_text),
            FormStep(
                "payment_method",
                "Select your payment method: type 'M-Pesa' or 'Bank'.",
                v.choice(PAYMENT_METHODS, "Please type 'M-Pesa' or 'Bank'"),
                keyboard=[["M-Pesa", "Bank"]],
            ),
            FormStep("payment_reference", _reference_prompt, v.free_text),
            FormStep(
                "additional_details",
                "Any additional details you'd like to include? If none, type 'none'.",
                v.optional_text,
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
            result = await db.execute(
                select(MentorshipProgram).order_by(MentorshipProgram.created_at.desc()).limit(20)
            )
            programs = list(result.scalars())

        if not programs:
            return None, [reply(
                self.new_session(user_id),
                "Mentorship Programs\n\nNo mentorship programs are available at the moment. "
                "Check back later for new programs!",
            )]

        session = self.new_session(
            user_id,
            username,
            programs=[
                {
                    "id": str(p.id),
                    "title": p.title,
                    "description": p.description,
                    "price_cents": p.price_cents,
                    "provider_id": str(p.provider_id) if p.provider_id else None,
                }
                for p in programs
            ],
        )
        return session, [self.prompt_for(session, self.steps[0])]

    async def complete(self, session: DialogueSession) -> FlowResult:
        fields = session.collected_fields
        program = fields["program"]

        async with get_db_context() as db:
            application = MentorshipApplication(
                program_id=uuid.UUID(program["id"]),
                program_title=program["title"],
                applicant_name=fields["applicant_name"],
                contact_info=fields["contact_info"],
                payment_method=fields["payment_method"],
                payment_reference=fields["payment_reference"],
                additional_details=fields.get("additional_details"),
                provider_id=uuid.UUID(program["provider_id"]) if program["provider_id"] else None,
                channel_user_id=session.user_id,
            )
            db.add(application)
            await db.flush()
            application_id = application.id

        logger.info(f"Mentorship application #{application_id} submitted by {session.user_id}")
        return None, [reply(
            session,
            f"Application submitted! Your reference is #{application_id}.\n"
            "A counselor will review your payment and contact you.",
        )]
