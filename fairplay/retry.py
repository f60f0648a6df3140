"""
fairplay.retry
==============

Bounded exponential backoff for external calls (registry transactions,
treasury credits, chain reads).

Usage
-----
    policy = RetryPolicy.from_config(cfg)
    handle = await aretry_call(registry.create_subscription, owner, policy=policy)

Design notes
------------
- Exponential backoff with +/- jitter and an upper bound per attempt.
- Only errors classified "transient" are retried; policy rejections and Fatal
  errors propagate on the first occurrence.
- Exhausting the budget raises `RetryError` wrapping the last exception.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .errors import ErrorCategory, FairplayError

log = logging.getLogger(__name__)

T = TypeVar("T")


class RetryError(RuntimeError):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, last_exception: BaseException, attempts: int) -> None:
        super().__init__(f"exhausted after {attempts} attempts: {last_exception!r}")
        self.last_exception = last_exception
        self.attempts = attempts


@dataclass(frozen=True)
class RetryPolicy:
    """
    Backoff policy parameters and error classification.

    attempts_cap: Maximum number of retries after the first attempt.
    base_delay: Delay before the first retry (seconds).
    multiplier: Exponential scale factor per attempt.
    max_delay: Upper bound for a single backoff.
    jitter_fraction: +/- fraction applied as random jitter.
    """

    attempts_cap: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter_fraction: float = 0.20

    @classmethod
    def from_config(cls, cfg: Any) -> "RetryPolicy":
        return cls(attempts_cap=int(cfg.max_retries), base_delay=float(cfg.retry_base_delay_s))

    def classify(self, exc: BaseException) -> str:
        if isinstance(exc, FairplayError):
            return "transient" if exc.category is ErrorCategory.TRANSIENT else "permanent"
        if isinstance(exc, (asyncio.TimeoutError, ConnectionError)):
            return "transient"
        return "permanent"

    def backoff_seconds(self, attempts: int) -> float:
        """
        Delay for the given attempts count (1-based after first failure).
        attempts = 1 → first retry delay = base_delay
        """
        a = max(1, int(attempts))
        raw = self.base_delay * (self.multiplier ** (a - 1))
        return float(min(self.max_delay, raw))

    def with_jitter(self, seconds: float) -> float:
        jf = self.jitter_fraction
        jitter = seconds * jf * (2.0 * random.random() - 1.0)
        return max(0.0, seconds + jitter)


DEFAULT_POLICY = RetryPolicy()


async def aretry_call(
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    policy: Optional[RetryPolicy] = None,
    op: str = "",
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    **kwargs: Any,
) -> T:
    """
    Await `fn(*args, **kwargs)`, retrying transient failures per `policy`.

    `on_retry` receives (attempt_index, exception, sleep_seconds).
    """
    pol = policy or DEFAULT_POLICY
    name = op or getattr(fn, "__name__", "call")
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn(*args, **kwargs)
        except Exception as exc:  # noqa: BLE001
            if pol.classify(exc) != "transient":
                raise
            if attempt > pol.attempts_cap:
                log.warning("retry: %s exhausted after %d attempts: %s", name, attempt, exc)
                raise RetryError(exc, attempts=attempt) from exc

            delay = pol.with_jitter(pol.backoff_seconds(attempt))
            log.info("retry: %s attempt=%d failed (%s); sleeping %.2fs", name, attempt, exc, delay)
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            await sleep(delay)


__all__ = ["RetryError", "RetryPolicy", "DEFAULT_POLICY", "aretry_call"]
