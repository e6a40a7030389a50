"""Reusable exponential-backoff retry policy built on tenacity."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Run an async operation up to *attempts* times with exponential backoff.

    The operation receives the zero-based attempt index.  After a failed
    attempt ``i`` that is not the last one, the policy sleeps
    ``base_delay * 2 ** i`` seconds, plus up to ``jitter`` seconds of random
    spread when jitter is enabled.  The last failure is re-raised unchanged.
    """

    attempts: int = 3
    base_delay: float = 1.0
    jitter: float = 0.0
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)

    def _wait(self):
        wait = wait_exponential(multiplier=self.base_delay, exp_base=2)
        if self.jitter:
            wait = wait + wait_random(0, self.jitter)
        return wait

    async def run(
        self,
        operation: Callable[[int], Awaitable[T]],
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> T:
        if self.attempts < 1:
            raise ValueError("RetryPolicy.attempts must be at least 1.")

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=self._wait(),
            retry=retry_if_exception_type(self.retry_on),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=sleep or asyncio.sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                result = await operation(attempt.retry_state.attempt_number - 1)
        return result
