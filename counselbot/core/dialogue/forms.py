"""
Guided form abstraction.

Every flow is an ordered list of FormStep entries. The user's answer to
a step goes through that step's validator; on FieldError the same
prompt is repeated with the reason and nothing in the session changes.
When the last step accepts its answer, the flow's ``complete`` runs.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from counselbot.core.dialogue.session import DialogueSession, FlowType
from counselbot.infra.messaging import OutgoingMessage

logger = logging.getLogger(__name__)


class FieldError(Exception):
    """An answer failed validation. ``reason`` is shown to the user."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class FlowCancelled(Exception):
    """The user declined a step that gates the rest of the flow."""


Prompt = Union[str, Callable[[DialogueSession], str]]
Validator = Callable[[str, DialogueSession], Any]

# (session to keep, or None to end the flow), replies
FlowResult = tuple[Optional[DialogueSession], list[OutgoingMessage]]

# Context key holding the step to jump back to after a rewind
RESUME_KEY = "_resume_at"


@dataclass
class FormStep:
    """One question of a guided form."""

    name: str
    prompt: Prompt
    validate: Validator
    keyboard: list[list[str]] = field(default_factory=list)

    def render(self, session: DialogueSession) -> str:
        if callable(self.prompt):
            return self.prompt(session)
        return self.prompt


def reply(session: DialogueSession, text: str, keyboard: Optional[list[list[str]]] = None) -> OutgoingMessage:
    return OutgoingMessage(user_id=session.user_id, text=text, keyboard=keyboard or [])


class GuidedForm(ABC):
    """Base class for a multi-step intake flow."""

    flow_type: FlowType
    cancel_message = "Okay, I've cancelled that. Send /help to see what I can do."

    def __init__(self) -> None:
        self.steps: list[FormStep] = self.build_steps()
        self._index = {step.name: i for i, step in enumerate(self.steps)}

    @abstractmethod
    def build_steps(self) -> list[FormStep]:
        """Ordered steps of this flow."""

    @abstractmethod
    async def complete(self, session: DialogueSession) -> FlowResult:
        """Run the flow's terminal action once every step is answered."""

    async def start(
        self,
        user_id: str,
        username: Optional[str] = None,
        argument: Optional[str] = None,
    ) -> FlowResult:
        """Open a new session at the first step.

        Flows that need data loaded up front override this and may
        refuse to start by returning no session.
        """
        session = self.new_session(user_id, username)
        return session, [self.prompt_for(session, self.steps[0])]

    def new_session(self, user_id: str, username: Optional[str] = None, **context: Any) -> DialogueSession:
        return DialogueSession(
            user_id=user_id,
            flow_type=self.flow_type,
            step=self.steps[0].name,
            username=username,
            context=dict(context),
        )

    def step(self, name: str) -> FormStep:
        return self.steps[self._index[name]]

    def next_step(self, name: str) -> Optional[FormStep]:
        i = self._index[name] + 1
        return self.steps[i] if i < len(self.steps) else None

    def prompt_for(self, session: DialogueSession, step: FormStep, prefix: str = "") -> OutgoingMessage:
        text = step.render(session)
        if prefix:
            text = f"{prefix}\n\n{text}"
        return reply(session, text, step.keyboard)

    def rewind(self, session: DialogueSession, step_name: str, reason: str) -> FlowResult:
        """Ask ``step_name`` again, then return to the step the user was on.

        Every other answer is kept.
        """
        session.collected_fields.pop(step_name, None)
        session.context[RESUME_KEY] = session.step
        session.step = step_name
        return session, [self.prompt_for(session, self.step(step_name), prefix=reason)]

    def cancel(self, session: DialogueSession) -> FlowResult:
        logger.info(f"{self.flow_type.value} flow cancelled by {session.user_id} at {session.step}")
        return None, [reply(session, self.cancel_message)]

    async def advance(self, session: DialogueSession, text: str) -> FlowResult:
        """Feed one answer to the current step."""
        if session.step not in self._index:
            logger.warning(f"Unknown step {session.step} in {self.flow_type.value} flow, restarting")
            return None, [reply(session, "I lost track of our conversation. Let's start over.")]

        current = self.step(session.step)
        try:
            value = current.validate(text.strip(), session)
        except FieldError as e:
            return session, [self.prompt_for(session, current, prefix=e.reason)]
        except FlowCancelled:
            return self.cancel(session)

        session.collected_fields[current.name] = value

        resume_at = session.context.pop(RESUME_KEY, None)
        following = self.step(resume_at) if resume_at else self.next_step(current.name)
        if following is None:
            return await self.complete(session)

        session.step = following.name
        return session, [self.prompt_for(session, following)]
