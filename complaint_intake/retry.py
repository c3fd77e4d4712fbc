"""
Bounded retry with exponential backoff and jitter for external calls.

Every network hop in the ingestion pipeline (recording download,
speech-to-text, classification) goes through ``with_retry`` with one of the
named policies below, so retry behaviour lives in one place.
"""

from __future__ import annotations

import asyncio
import dataclasses
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import structlog

log = structlog.get_logger(__name__)

T = TypeVar("T")


def _always(_: BaseException) -> bool:
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try an operation and how long to wait in between.

    Delays are in seconds. ``max_attempts`` counts the first try.
    """

    max_attempts: int = 3
    initial_delay: float = 0.5
    backoff_multiplier: float = 2.0
    jitter_fraction: float = 0.1
    is_retryable: Callable[[BaseException], bool] = _always

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay < 0 or self.backoff_multiplier < 0:
            raise ValueError("delays must be non-negative")
        if not 0 <= self.jitter_fraction <= 1:
            raise ValueError("jitter_fraction must be between 0 and 1")

    def with_predicate(self, is_retryable: Callable[[BaseException], bool]) -> "RetryPolicy":
        return dataclasses.replace(self, is_retryable=is_retryable)

    def without_delay(self) -> "RetryPolicy":
        return dataclasses.replace(self, initial_delay=0.0, jitter_fraction=0.0)

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the ``attempt``-th failure (1-based)."""
        base = self.initial_delay * self.backoff_multiplier ** (attempt - 1)
        spread = base * self.jitter_fraction
        return max(0.0, base + random.uniform(-spread, spread))


# Named presets shared by the clients.
NETWORK_IO = RetryPolicy(max_attempts=3, initial_delay=0.5, backoff_multiplier=2.0, jitter_fraction=0.1)
AI_INFERENCE = RetryPolicy(max_attempts=2, initial_delay=1.0, backoff_multiplier=2.0, jitter_fraction=0.1)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy = NETWORK_IO,
    *,
    operation_name: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` until it succeeds or the policy gives up.

    The last exception is re-raised unchanged once ``max_attempts`` is
    reached or ``policy.is_retryable`` rejects it.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as exc:
            if not policy.is_retryable(exc):
                log.warning(
                    "retry_aborted",
                    operation=operation_name,
                    attempt=attempt,
                    max_attempts=policy.max_attempts,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                raise
            if attempt >= policy.max_attempts:
                log.error(
                    "retry_exhausted",
                    operation=operation_name,
                    attempts=attempt,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                raise

            delay = policy.delay_for(attempt)
            log.warning(
                "retry_scheduled",
                operation=operation_name,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay_seconds=round(delay, 3),
                error=str(exc),
                error_type=type(exc).__name__,
            )
            await sleep(delay)
