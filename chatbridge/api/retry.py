"""Retry policy for budget-overflow errors.

The policy only answers "should this attempt be retried" and "how long
to wait first". What changes between attempts (a smaller token budget)
is the caller's business, via output_allowance().
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from chatbridge.errors import is_budget_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


def no_backoff(attempt: int) -> float:
    return 0.0


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 2
    backoff: Callable[[int], float] = no_backoff
    is_retryable: Callable[[BaseException], bool] = is_budget_error
    # Each retry shrinks the output allowance by this factor
    budget_factor: float = 0.7

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        return attempt + 1 < self.max_attempts and self.is_retryable(error)

    def output_allowance(self, max_output_tokens: int, attempt: int) -> int:
        return max(1, int(max_output_tokens * self.budget_factor**attempt))

    async def wait(self, attempt: int) -> None:
        delay = self.backoff(attempt)
        if delay > 0:
            await asyncio.sleep(delay)

    async def execute(self, call: Callable[[int], Awaitable[T]]) -> T:
        """Run ``call(attempt)`` until it succeeds or the error isn't retryable."""
        attempt = 0
        while True:
            try:
                return await call(attempt)
            except Exception as e:
                if not self.should_retry(e, attempt):
                    raise
                logger.warning(
                    "Attempt %d failed with retryable error, retrying with a "
                    "smaller budget: %s",
                    attempt + 1, e,
                )
                await self.wait(attempt)
                attempt += 1
