"""Retry policy — Bounded exponential backoff for sync tasks.

Only :class:`~searchindex.engines.base.exceptions.TransientError`
subclasses are retried.  Validation, schema, configuration and capability
errors are permanent and surface on the first attempt.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, TypeVar

from searchindex.engines.base.exceptions import TransientError

if TYPE_CHECKING:
    from searchindex.config.settings import RetrySettings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Retry an awaitable with exponential backoff.

    The delay before retry ``n`` (1-based) is
    ``min(max_delay, base_delay * multiplier ** (n - 1))``.

    Attributes:
        max_attempts: Attempts including the first; 1 disables retrying.
        base_delay: Delay before the first retry, in seconds.
        max_delay: Cap for any single delay.
        multiplier: Growth factor between consecutive delays.
        retry_on: Exception types considered transient.
        sleep: Awaitable sleep, replaceable in tests.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    retry_on: tuple[type[BaseException], ...] = (TransientError,)
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
        )

    def delay_for(self, retry: int) -> float:
        return min(self.max_delay, self.base_delay * self.multiplier ** max(0, retry - 1))

    def is_retryable(self, exc: BaseException) -> bool:
        return isinstance(exc, self.retry_on)

    async def run(self, fn: Callable[[], Awaitable[T]], *, description: str = "operation") -> T:
        """Await ``fn()`` until it succeeds or the attempts are used up.

        Raises:
            The last exception raised by ``fn``; permanent errors are
            raised immediately.
        """
        attempt = 1
        while True:
            try:
                return await fn()
            except Exception as e:
                if not self.is_retryable(e) or attempt >= self.max_attempts:
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                    description,
                    attempt,
                    self.max_attempts,
                    delay,
                    e,
                )
                await self.sleep(delay)
                attempt += 1
