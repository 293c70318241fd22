"""
Appointment code generation.

Codes are short, upper-case and drawn from an alphabet without the
look-alike characters 0/O and 1/I, so they can be read out over the
phone or typed back into the bot.
"""

import logging
import secrets
from typing import Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from counselbot.config import get_settings
from counselbot.core.scheduling.errors import ExhaustionError
from counselbot.models.database import Appointment

logger = logging.getLogger(__name__)

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

# (existing appointment count, minimum code length), highest first
LENGTH_THRESHOLDS = (
    (1_000_000, 9),
    (100_000, 8),
    (10_000, 7),
)


class CodeGenerator:
    """
    Produces appointment codes that no appointment has ever used.

    Length grows with the number of stored appointments. When a whole
    attempt budget collides, the length is bumped by one and the budget
    restarts, until ``max_length`` is exhausted.
    """

    def __init__(
        self,
        min_length: int = 6,
        max_length: int = 10,
        attempts_per_length: int = 100,
        choice: Callable[[str], str] = secrets.choice,
    ):
        if min_length > max_length:
            raise ValueError("min_length must not exceed max_length")
        self.min_length = min_length
        self.max_length = max_length
        self.attempts_per_length = attempts_per_length
        self._choice = choice

    @classmethod
    def from_settings(cls) -> "CodeGenerator":
        settings = get_settings()
        return cls(
            min_length=settings.code_min_length,
            max_length=settings.code_max_length,
            attempts_per_length=settings.code_attempts_per_length,
        )

    def length_for(self, existing: int) -> int:
        """Starting code length for a store holding ``existing`` appointments."""
        length = self.min_length
        for threshold, minimum in LENGTH_THRESHOLDS:
            if existing > threshold:
                length = max(length, minimum)
                break
        return min(length, self.max_length)

    def draw(self, length: int) -> str:
        return "".join(self._choice(CODE_ALPHABET) for _ in range(length))

    async def _count_existing(self, db: AsyncSession) -> int:
        result = await db.execute(select(func.count(Appointment.id)))
        return result.scalar_one()

    async def _code_exists(self, db: AsyncSession, code: str) -> bool:
        result = await db.execute(
            select(Appointment.id).where(Appointment.code == code).limit(1)
        )
        return result.first() is not None

    async def generate(self, db: AsyncSession) -> str:
        """Return a code not used by any stored appointment.

        Runs on the caller's session so the check shares the transaction
        that inserts the appointment. The unique index on
        ``appointments.code`` remains the final guard.

        Raises:
            ExhaustionError: every attempt up to ``max_length`` collided
        """
        existing = await self._count_existing(db)
        length = self.length_for(existing)

        while length <= self.max_length:
            for _ in range(self.attempts_per_length):
                candidate = self.draw(length)
                if not await self._code_exists(db, candidate):
                    return candidate

            logger.warning(
                f"{self.attempts_per_length} code collisions at length {length}, "
                f"increasing length"
            )
            length += 1

        logger.critical(
            f"Appointment code space exhausted up to length {self.max_length} "
            f"({existing} appointments stored)"
        )
        raise ExhaustionError("Could not generate a unique appointment code")


# Singleton
_generator: Optional[CodeGenerator] = None


def get_code_generator() -> CodeGenerator:
    """Get singleton CodeGenerator built from settings."""
    global _generator
    if _generator is None:
        _generator = CodeGenerator.from_settings()
    return _generator
