"""Bounded exponential-backoff retry around a single remote call."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from common.config import PipelineSettings
from pipeline.cancellation import CancellationToken
from pipeline.errors import ExhaustedRetries, PipelineError, TransientRemoteFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_MARKERS = ("429", "quota", "resource_exhausted", "resource exhausted")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 15
    base_delay_s: float = 1.0
    max_delay_s: float = 20.0
    rate_limit_wait_s: float = 15.0
    rate_limit_jitter_s: float = 5.0

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            base_delay_s=settings.backoff_base_s,
            max_delay_s=settings.backoff_cap_s,
            rate_limit_wait_s=settings.rate_limit_wait_s,
            rate_limit_jitter_s=settings.rate_limit_jitter_s,
        )

    def delay(self, attempt: int, rate_limited: bool) -> float:
        """Seconds to wait after the zero-based ``attempt`` failed."""
        if rate_limited:
            return self.rate_limit_wait_s + random.uniform(0, self.rate_limit_jitter_s)
        return min(self.max_delay_s, self.base_delay_s * (2 ** attempt))


def is_rate_limited(exc: BaseException) -> bool:
    if isinstance(exc, TransientRemoteFailure) and exc.rate_limited:
        return True
    if isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code == 429:
        return True
    text = f"{exc!r} {exc}".lower()
    return any(marker in text for marker in RATE_LIMIT_MARKERS)


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, PipelineError):
        return exc.retryable
    return True


def retry_message(delay: float, rate_limited: bool) -> str:
    seconds = round(delay)
    if rate_limited:
        return f"Rate limited, backing off ({seconds}s)..."
    return f"Temporary failure, retrying ({seconds}s)..."


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    on_retry: Optional[Callable[[str], None]] = None,
    max_attempts: Optional[int] = None,
    policy: Optional[RetryPolicy] = None,
    cancel_token: Optional[CancellationToken] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> T:
    """Call ``fn`` until it succeeds, at most ``max_attempts`` times.

    Raises ExhaustedRetries (chained to the last error) once every attempt
    has failed. Non-retryable pipeline errors propagate immediately.
    """
    policy = policy or RetryPolicy()
    attempts = max_attempts if max_attempts is not None else policy.max_attempts
    if attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    if sleep is None:
        sleep = cancel_token.sleep if cancel_token is not None else asyncio.sleep

    for attempt in range(attempts):
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        try:
            return await fn()
        except Exception as exc:
            if not is_retryable(exc):
                raise
            if attempt == attempts - 1:
                logger.warning("Giving up after %d attempts: %s", attempts, exc)
                raise ExhaustedRetries(attempts, exc) from exc

            rate_limited = is_rate_limited(exc)
            delay = policy.delay(attempt, rate_limited)
            logger.info(
                "Attempt %d/%d failed (%s), retrying in %.1fs",
                attempt + 1, attempts, exc, delay,
            )
            if on_retry is not None:
                on_retry(retry_message(delay, rate_limited))
            await sleep(delay)

    raise AssertionError("unreachable")
