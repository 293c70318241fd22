"""Support ticket flow."""

import logging

from counselbot.core.dialogue import validators as v
from counselbot.core.dialogue.forms import FieldError, FlowResult, FormStep, GuidedForm, reply
from counselbot.core.dialogue.session import DialogueSession, FlowType
from counselbot.infra.database import get_db_context
from counselbot.models.database import SupportTicket

logger = logging.getLogger(__name__)

CATEGORY_KEYWORDS = (
    ("Technical", ("login", "app", "website", "technical", "bug", "error")),
    ("Academic", ("school", "grade", "exam", "assignment", "course", "study", "work")),
    ("Personal", ("stress", "depressed", "anxiety", "sad", "worried", "personal",
                  "relationship", "family", "money")),
)

PRIORITY_KEYWORDS = (
    ("urgent", ("right now", "urgent", "immediately", "asap")),
    ("high", ("today", "soon", "quickly")),
    ("low", ("week", "not urgent", "whenever")),
)


def classify(text: str, table: tuple, default: str) -> str:
    lowered = text.lower()
    for label, keywords in table:
        if any(keyword in lowered for keyword in keywords):
            return label
    return default


def category(text: str, session: DialogueSession) -> str:
    if not text:
        raise FieldError("Please tell me briefly what you need help with.")
    return classify(text, CATEGORY_KEYWORDS, "General")


def priority(text: str, session: DialogueSession) -> str:
    if not text:
        raise FieldError("Please tell me how quickly you need help.")
    return classify(text, PRIORITY_KEYWORDS, "medium")


def _priority_prompt(session: DialogueSession) -> str:
    opener = ""
    if session.collected_fields.get("category") == "Personal":
        opener = "It sounds like you're going through a tough time. "
    return (
        f"I understand. {opener}How urgent is this? Do you need help:\n\n"
        "- Right now (very urgent)\n- Today (urgent)\n- This week (not urgent)"
    )


class SupportFlow(GuidedForm):
    """Turns a conversation into a support ticket."""

    flow_type = FlowType.SUPPORT
    cancel_message = "Support request cancelled. Type 'support' any time you need help."

    def build_steps(self) -> list[FormStep]:
        return [
            FormStep(
                "category",
                "I'm here to help. What's going on? Tell me briefly what you need help with.",
                category,
            ),
            FormStep("priority", _priority_prompt, priority),
            FormStep(
                "subject",
                "Got it. Can you give me a short title for your issue?\n\n"
                "For example: \"Can't login\" or \"Stressed about exams\"",
                v.min_length(3, "Please give me a bit more detail. What would you call this issue?"),
            ),
            FormStep(
                "message",
                "Now tell me everything about what's happening. What exactly is going on?",
                v.min_length(
                    5,
                    "Please tell me more about your issue so I can help you properly.",
                ),
            ),
        ]

    async def complete(self, session: DialogueSession) -> FlowResult:
        fields = session.collected_fields
        async with get_db_context() as db:
            ticket = SupportTicket(
                channel_user_id=session.user_id,
                channel_username=session.username,
                subject=f"{fields['category']}: {fields['subject']}",
                message=fields["message"],
                category=fields["category"],
                priority=fields["priority"],
            )
            db.add(ticket)
            await db.flush()
            ticket_id = ticket.id

        logger.info(f"Support ticket #{ticket_id} ({fields['priority']}) created for {session.user_id}")
        return None, [reply(
            session,
            f"Thank you for sharing that with me. I've created a support ticket for you "
            f"(Ticket #{ticket_id}).\n\nA counselor will read your message and get back to you soon.",
        )]
