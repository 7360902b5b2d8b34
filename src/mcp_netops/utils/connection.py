"""Reconnect backoff built on tenacity."""
import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
)
from tenacity.wait import wait_base

from .. import errors
from ..config.settings import CoreSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")


# Failures worth another session-open attempt
RETRYABLE_EXCEPTIONS = (
    errors.ConnectionError,
    ConnectionRefusedError,
    ConnectionResetError,
    TimeoutError,
    asyncio.TimeoutError,
    OSError,
    EOFError,
)


class wait_jittered_exponential(wait_base):
    """Exponential backoff with a cap and symmetric relative jitter.

    Attempt ``n`` (1-based) waits ``min(cap, base * factor ** (n - 1))``
    scaled by a random factor in ``[1 - jitter, 1 + jitter]``, never above
    ``cap``.
    """

    def __init__(
        self,
        base: float = 1.0,
        factor: float = 2.0,
        cap: float = 30.0,
        jitter: float = 0.2,
        rng: Callable[[], float] = random.random,
    ):
        self.base = base
        self.factor = factor
        self.cap = cap
        self.jitter = jitter
        self.rng = rng

    @classmethod
    def from_settings(cls, settings: CoreSettings, rng: Callable[[], float] = random.random):
        return cls(
            base=settings.backoff_base,
            factor=settings.backoff_factor,
            cap=settings.backoff_cap,
            jitter=settings.backoff_jitter,
            rng=rng,
        )

    def delay_for(self, attempt: int) -> float:
        delay = min(self.cap, self.base * self.factor ** max(attempt - 1, 0))
        spread = 1 + self.jitter * (2 * self.rng() - 1)
        return max(0.0, min(self.cap, delay * spread))

    def __call__(self, retry_state: RetryCallState) -> float:
        return self.delay_for(retry_state.attempt_number)


async def retry_async(
    func: Callable[[], Awaitable[T]],
    attempts: int,
    wait: wait_base,
    exceptions: tuple = RETRYABLE_EXCEPTIONS,
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
) -> T:
    """Await ``func()`` until it succeeds or ``attempts`` are used up.

    The last exception is re-raised unchanged once attempts run out.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait,
        retry=retry_if_exception_type(exceptions),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
        sleep=sleep or asyncio.sleep,
    )
    async for attempt in retrying:
        with attempt:
            return await func()
    raise AssertionError("unreachable")  # pragma: no cover
