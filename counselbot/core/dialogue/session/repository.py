"""
Dialogue session storage.

One session per user id: starting a new flow replaces whatever flow the
user was in. Idle sessions expire after ``session_idle_ttl`` seconds.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from counselbot.config import get_settings
from counselbot.infra.redis import APP_PREFIX, get_redis

from .models import DialogueSession

logger = logging.getLogger(__name__)

SESSION_PREFIX = f"{APP_PREFIX}dialogue:session:"


class SessionRepository(ABC):
    """Keyed store of dialogue sessions."""

    def __init__(self, idle_ttl: Optional[int] = None):
        self.idle_ttl = idle_ttl if idle_ttl is not None else get_settings().session_idle_ttl

    @abstractmethod
    async def get(self, user_id: str) -> Optional[DialogueSession]:
        """Return the user's live session, or None."""

    @abstractmethod
    async def set(self, session: DialogueSession) -> None:
        """Store (or replace) the user's session and restart its idle timer."""

    @abstractmethod
    async def clear(self, user_id: str) -> None:
        """Drop the user's session, if any."""

    async def evict_expired(self) -> int:
        """Remove idle sessions. Returns how many were dropped."""
        return 0


class InMemorySessionRepository(SessionRepository):
    """
    Process-local session map.

    Only correct when a user's messages always reach the same instance.
    """

    def __init__(self, idle_ttl: Optional[int] = None):
        super().__init__(idle_ttl)
        self._sessions: dict[str, DialogueSession] = {}

    async def get(self, user_id: str) -> Optional[DialogueSession]:
        session = self._sessions.get(user_id)
        if session is None:
            return None
        if session.is_expired(self.idle_ttl):
            del self._sessions[user_id]
            logger.info(f"Session expired for user {user_id} ({session.flow_type.value})")
            return None
        return session

    async def set(self, session: DialogueSession) -> None:
        session.touch()
        self._sessions[session.user_id] = session

    async def clear(self, user_id: str) -> None:
        self._sessions.pop(user_id, None)

    async def evict_expired(self) -> int:
        now = datetime.now(timezone.utc)
        expired = [
            user_id for user_id, session in self._sessions.items()
            if session.is_expired(self.idle_ttl, now)
        ]
        for user_id in expired:
            del self._sessions[user_id]
        if expired:
            logger.info(f"Evicted {len(expired)} idle dialogue sessions")
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)


class RedisSessionRepository(SessionRepository):
    """
    Redis-backed sessions shared across instances.

    Key pattern: counselbot:v1:dialogue:session:{user_id}

    Expiry is the Redis key TTL, so there is nothing to evict.
    """

    def __init__(self, redis: Redis, idle_ttl: Optional[int] = None):
        super().__init__(idle_ttl)
        self.redis = redis

    def _key(self, user_id: str) -> str:
        return f"{SESSION_PREFIX}{user_id}"

    async def get(self, user_id: str) -> Optional[DialogueSession]:
        data = await self.redis.get(self._key(user_id))
        if data is None:
            return None
        return DialogueSession.from_json(data)

    async def set(self, session: DialogueSession) -> None:
        session.touch()
        await self.redis.setex(self._key(session.user_id), self.idle_ttl, session.to_json())
        logger.debug(f"Session saved: {session.user_id} at {session.step}")

    async def clear(self, user_id: str) -> None:
        try:
            await self.redis.delete(self._key(user_id))
        except RedisError as e:
            logger.error(f"Failed to delete session {user_id}: {e}")
            raise


# Singleton
_repository: Optional[SessionRepository] = None


async def get_session_repository() -> SessionRepository:
    """Get the configured session repository.

    Falls back to the in-memory store when Redis is configured but
    unreachable at first use.
    """
    global _repository
    if _repository is None:
        settings = get_settings()
        if settings.session_backend == "redis":
            redis = await get_redis()
            if redis is not None:
                _repository = RedisSessionRepository(redis)
            else:
                logger.warning("Redis unavailable, using in-memory dialogue sessions")
                _repository = InMemorySessionRepository()
        else:
            _repository = InMemorySessionRepository()
    return _repository
