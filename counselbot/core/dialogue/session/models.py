"""Dialogue session data model."""

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class FlowType(str, Enum):
    """Guided conversations a user can be in."""

    BOOKING = "booking"
    SUPPORT = "support"
    MENTORSHIP = "mentorship"
    BOOK_ORDER = "book-order"
    REVIEW = "review"


@dataclass
class DialogueSession:
    """
    In-progress guided conversation for one user.

    ``collected_fields`` only ever holds answers that passed their step's
    validation. ``context`` holds data loaded when the flow started,
    such as the numbered provider list the user picks from.
    """

    user_id: str
    flow_type: FlowType
    step: str
    collected_fields: dict[str, Any] = field(default_factory=dict)
    context: dict[str, Any] = field(default_factory=dict)
    username: Optional[str] = None

    # Last prompt sent, so it can be deleted when the flow advances
    last_message_id: Optional[int] = None

    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def touch(self) -> None:
        self.updated_at = _utcnow()

    def expires_at(self, idle_ttl: int) -> datetime:
        return self.updated_at + timedelta(seconds=idle_ttl)

    def is_expired(self, idle_ttl: int, now: Optional[datetime] = None) -> bool:
        return (now or _utcnow()) >= self.expires_at(idle_ttl)

    def to_json(self) -> str:
        """Convert to JSON string for Redis storage."""
        return json.dumps({
            "user_id": self.user_id,
            "flow_type": self.flow_type.value,
            "step": self.step,
            "collected_fields": self.collected_fields,
            "context": self.context,
            "username": self.username,
            "last_message_id": self.last_message_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        })

    @classmethod
    def from_json(cls, json_str: str) -> "DialogueSession":
        """Create from JSON string."""
        data = json.loads(json_str)
        return cls(
            user_id=data["user_id"],
            flow_type=FlowType(data["flow_type"]),
            step=data["step"],
            collected_fields=data.get("collected_fields", {}),
            context=data.get("context", {}),
            username=data.get("username"),
            last_message_id=data.get("last_message_id"),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )
