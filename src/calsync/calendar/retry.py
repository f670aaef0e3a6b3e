"""Bounded exponential backoff for transient provider failures."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from calsync.calendar.errors import Transient

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_SECONDS = 0.5
DEFAULT_MAX_DELAY_SECONDS = 8.0


@dataclass(frozen=True)
class RetryPolicy:
    """Retry ``Transient`` failures up to ``max_attempts`` total attempts.

    The delay doubles after every failed attempt, starting at
    ``base_delay_seconds`` and capped at ``max_delay_seconds``.  A provider
    ``Retry-After`` hint replaces the computed delay (still capped).
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS
    max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("retry delays must be non-negative")

    def delay_for(self, attempt: int, retry_after: float | None = None) -> float:
        """Delay before retrying after the 1-based *attempt* failed."""
        if retry_after is not None and retry_after >= 0:
            return min(retry_after, self.max_delay_seconds)
        return min(self.base_delay_seconds * (2 ** (attempt - 1)), self.max_delay_seconds)

    async def run(self, operation: Callable[[], Awaitable[T]], *, description: str = "") -> T:
        """Await ``operation()``, retrying on ``Transient`` until attempts run out."""
        attempt = 1
        while True:
            try:
                return await operation()
            except Transient as exc:
                if attempt >= self.max_attempts:
                    logger.warning(
                        "Giving up on %s after %d attempt(s): %s",
                        description or "provider call",
                        attempt,
                        exc,
                    )
                    raise
                delay = self.delay_for(attempt, exc.retry_after)
                logger.warning(
                    "Transient provider failure on %s, retrying in %.1fs (attempt %d/%d): %s",
                    description or "provider call",
                    delay,
                    attempt,
                    self.max_attempts,
                    exc,
                )
                await self.sleep(delay)
                attempt += 1
