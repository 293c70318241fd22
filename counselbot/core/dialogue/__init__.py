"""Guided conversational intake."""

from .engine import (
    CANCEL_TOKENS,
    DialogueEngine,
    InboundMessage,
    get_dialogue_engine,
)
from .forms import FieldError, FlowCancelled, FormStep, GuidedForm

__all__ = [
    "CANCEL_TOKENS",
    "DialogueEngine",
    "InboundMessage",
    "get_dialogue_engine",
    "FieldError",
    "FlowCancelled",
    "FormStep",
    "GuidedForm",
]
