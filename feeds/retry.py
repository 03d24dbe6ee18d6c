"""
GridPulse — Retry on semantically incomplete results.

Some upstreams answer HTTP 200 with a well-formed body that is missing the
values we asked for.  Transport-level retry cannot see that, so the caller
supplies an acceptability predicate over the parsed result.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from loguru import logger

T = TypeVar("T")


class RetryPolicy:
    """
    Re-invoke a fetch until its result is acceptable or attempts run out.

    Delays follow ``base_delay ** attempt`` with 1-indexed attempts, so the
    default schedule is 2s, 4s, 8s, ...  When every attempt is rejected the
    last result is returned, not an error: callers treat it as "no data".
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep

    def delay_for(self, attempt: int) -> float:
        return self.base_delay ** attempt

    async def execute(
        self,
        fetch_fn: Callable[[], Awaitable[T]],
        is_acceptable: Callable[[T], bool],
        max_attempts: Optional[int] = None,
        label: str = "fetch",
    ) -> T:
        attempts = max_attempts or self.max_attempts
        attempt = 1
        while True:
            result = await fetch_fn()
            if is_acceptable(result):
                if attempt > 1:
                    logger.info("{} acceptable on attempt {}/{}.", label, attempt, attempts)
                return result
            if attempt >= attempts:
                logger.warning("{} still incomplete after {} attempts; giving up.", label, attempts)
                return result
            wait = self.delay_for(attempt)
            logger.info(
                "{} incomplete (attempt {}/{}); retrying in {:.1f}s…",
                label, attempt, attempts, wait,
            )
            await self._sleep(wait)
            attempt += 1
