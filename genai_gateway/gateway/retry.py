"""Retry Controller with exponential backoff.

States per call:
  ATTEMPT(n) → DONE                        on success
  ATTEMPT(n) → FAILED                      on a non-retryable error (re-raised as-is)
  ATTEMPT(n) → BACKOFF(delay) → ATTEMPT(n+1)  on a retryable error, n < max_attempts
  ATTEMPT(n) → FAILED                      on a retryable error at n == max_attempts
                                           (raised as RetriesExhausted)

Backoff strategy:
  delay(n) = initial_delay_ms * multiplier^(n-1)
  + optional jitter: delay * jitter * random(0, 1)
  capped at max_delay_ms when set
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from genai_gateway.core.config import Settings, settings
from genai_gateway.core.metrics import RETRIES
from genai_gateway.gateway.errors import GatewayError, RetriesExhausted
from genai_gateway.gateway.types import ErrorKind, RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryOutcome(Generic[T]):
    value: T
    attempts: int
    total_delay_ms: float = 0.0


def retry_policy_from_settings(cfg: Settings | None = None) -> RetryPolicy:
    cfg = cfg or settings
    return RetryPolicy(
        max_attempts=cfg.retry_max_attempts,
        initial_delay_ms=cfg.retry_delay_ms,
        multiplier=cfg.retry_multiplier,
        retryable_kinds=frozenset(ErrorKind(k) for k in cfg.retry_on),
        max_delay_ms=cfg.retry_max_delay_ms,
        jitter=cfg.retry_jitter,
    )


class RetryController:
    """Runs an async operation under a ``RetryPolicy``.

    Usage:
        controller = RetryController(policy)
        outcome = await controller.run(lambda: dispatcher.dispatch(config), label="openai")
        outcome.value, outcome.attempts
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.policy = policy or retry_policy_from_settings()
        self._sleep = sleep
        self._rng = rng

    def delay_ms(self, attempt: int) -> float:
        """Backoff after the ``attempt``-th failure (1-based)."""
        policy = self.policy
        delay = policy.initial_delay_ms * (policy.multiplier ** (attempt - 1))
        if policy.jitter > 0:
            delay += delay * policy.jitter * self._rng()
        if policy.max_delay_ms is not None:
            delay = min(delay, policy.max_delay_ms)
        return delay

    async def run(self, operation: Callable[[], Awaitable[T]], label: str = "") -> RetryOutcome[T]:
        max_attempts = max(self.policy.max_attempts, 1)
        total_delay_ms = 0.0
        attempt = 1

        while True:
            try:
                value = await operation()
                return RetryOutcome(value=value, attempts=attempt, total_delay_ms=total_delay_ms)
            except GatewayError as e:
                if not self.policy.is_retryable(e.kind):
                    raise
                if attempt >= max_attempts:
                    logger.warning(
                        "%s: giving up after %d attempts (%s)",
                        label or "request",
                        attempt,
                        e.kind.value,
                        extra={"provider": label, "error_kind": e.kind.value, "attempt": attempt},
                    )
                    raise RetriesExhausted(attempt, e) from e

                delay = self.delay_ms(attempt)
                RETRIES.labels(provider=label, kind=e.kind.value).inc()
                logger.info(
                    "Retrying %s (attempt %d/%d) in %.0fms after %s",
                    label or "request",
                    attempt + 1,
                    max_attempts,
                    delay,
                    e.kind.value,
                    extra={"provider": label, "error_kind": e.kind.value, "attempt": attempt},
                )
                await self._sleep(delay / 1000)
                total_delay_ms += delay
                attempt += 1
