"""Collision-free identifiers for tickets and equipment."""

from __future__ import annotations

import logging
import secrets
import string
from datetime import datetime, timezone
from typing import Awaitable, Callable, TypeVar

from .errors import CapacityError, DuplicateCodeError

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
TICKET_SUFFIX_LENGTH = 6
EQUIPMENT_SUFFIX_LENGTH = 8
DEFAULT_MAX_ATTEMPTS = 10

IsTaken = Callable[[str], Awaitable[bool]]
RandomSource = Callable[[int], str]
T = TypeVar("T")
Claim = Callable[[str], Awaitable[T]]
Clock = Callable[[], datetime]


def random_suffix(length: int) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CodeAllocator:
    """Generate unique codes, retrying on collision up to ``max_attempts`` times.

    Ticket numbers look like ``TKT-2410-7GQ2ZK`` (year and month of issue
    followed by six random characters); equipment codes look like
    ``EQ-K3M9Q0ZD``. Uniqueness is checked through the ``is_taken``
    callback, but the store's unique index remains the final arbiter when
    two callers race for the same candidate.
    """

    def __init__(
        self,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        random_source: RandomSource | None = None,
        clock: Clock | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._max_attempts = max_attempts
        self._random = random_source or random_suffix
        self._clock = clock or _utcnow

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def ticket_number_candidate(self) -> str:
        now = self._clock()
        return f"TKT-{now:%y%m}-{self._random(TICKET_SUFFIX_LENGTH)}"

    def equipment_code_candidate(self) -> str:
        return f"EQ-{self._random(EQUIPMENT_SUFFIX_LENGTH)}"

    async def claim_ticket_number(self, is_taken: IsTaken, insert: Claim[T]) -> T:
        return await self._claim("ticket number", self.ticket_number_candidate, is_taken, insert)

    async def claim_equipment_code(self, is_taken: IsTaken, insert: Claim[T]) -> T:
        return await self._claim("equipment code", self.equipment_code_candidate, is_taken, insert)

    async def _claim(
        self,
        kind: str,
        candidate: Callable[[], str],
        is_taken: IsTaken,
        insert: Claim[T],
    ) -> T:
        """Try candidates and hand the first free one to ``insert``.

        Pre-check collisions and inserts rejected by the unique index draw on
        the same ``max_attempts`` budget.
        """

        for attempt in range(1, self._max_attempts + 1):
            code = candidate()
            if await is_taken(code):
                logger.info("Collision allocating %s %s (attempt %d)", kind, code, attempt)
                continue
            try:
                return await insert(code)
            except DuplicateCodeError:
                logger.info("%s %s taken by a concurrent insert (attempt %d)", kind.capitalize(), code, attempt)
        raise CapacityError(f"Could not allocate a unique {kind} after {self._max_attempts} attempts")
