"""Dialogue session state and storage."""

from .models import DialogueSession, FlowType
from .repository import (
    InMemorySessionRepository,
    RedisSessionRepository,
    SessionRepository,
    get_session_repository,
)

__all__ = [
    "DialogueSession",
    "FlowType",
    "SessionRepository",
    "InMemorySessionRepository",
    "RedisSessionRepository",
    "get_session_repository",
]
