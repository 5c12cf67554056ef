"""Bounded retry around single calls to the image service."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt, wait_fixed

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _log_failed_attempt(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.error("Attempt %d failed: %s", retry_state.attempt_number, exc)


class ResilientInvoker:
    """Retry a call on any exception with a fixed delay between attempts.

    ``retries=2`` means three attempts in total. When every attempt fails the
    last exception is re-raised unchanged. A retried call may already have
    taken effect upstream; no deduplication happens here.
    """

    def __init__(
        self,
        retries: int = 2,
        delay: float = 3.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.retries = retries
        self.delay = delay
        self._sleep = sleep

    async def invoke(self, call: Callable[[], Awaitable[T]]) -> T:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retries + 1),
            wait=wait_fixed(self.delay),
            after=_log_failed_attempt,
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await call()
        raise AssertionError("unreachable")  # pragma: no cover
