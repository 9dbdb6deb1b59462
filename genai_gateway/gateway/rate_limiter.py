"""Fixed-window Rate Limiter — per (provider, model, caller) admission control.

Three dimensions, each with its own counter and window:
  - requests per minute (window = floor(now / 60))
  - tokens per minute (same window)
  - requests per day (window = UTC calendar date)

``check`` only reads counters; ``record`` increments them once a call has
completed. The limiter never sleeps: a denial is a decision the caller acts on.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone

from genai_gateway.core.config import RateLimitConfig, RateLimitRule, Settings, settings
from genai_gateway.core.metrics import RATE_LIMIT_DENIALS
from genai_gateway.gateway.stores import CounterStore
from genai_gateway.gateway.types import LimitDimension, RateLimitDecision

logger = logging.getLogger(__name__)

KEY_PREFIX = "genai:rate_limit"
ANONYMOUS = "anonymous"

MINUTE_TTL = 60
DAY_TTL = 86400


def estimate_tokens(prompt: str) -> int:
    """Rough pre-call estimate: four characters per token."""
    return len(prompt) // 4


class RateLimiter:
    """Fixed-window limiter over a shared ``CounterStore``.

    Usage:
        limiter = RateLimiter(counter_store)

        decision = await limiter.check("openai", "gpt-4.1-mini", estimated_tokens=120)
        if decision.allowed:
            ...  # call the provider
            await limiter.record("openai", "gpt-4.1-mini", actual_tokens=350)
    """

    def __init__(
        self,
        store: CounterStore,
        config: RateLimitConfig | None = None,
        clock: Callable[[], float] = time.time,
        cfg: Settings | None = None,
    ):
        self.store = store
        self.config = config or (cfg or settings).rate_limits
        self._clock = clock

    # --- Limits ---

    def limits_for(self, provider: str, model: str) -> RateLimitRule:
        """Most specific block wins: model, then provider, then default."""
        if model in self.config.models:
            return self.config.models[model]
        if provider in self.config.providers:
            return self.config.providers[provider]
        return self.config.default

    @staticmethod
    def _limit_map(rule: RateLimitRule) -> dict[LimitDimension, int | None]:
        # 0 and None both mean "not enforced"
        return {
            LimitDimension.REQUESTS: rule.requests_per_minute or None,
            LimitDimension.TOKENS: rule.tokens_per_minute or None,
            LimitDimension.DAILY: rule.requests_per_day or None,
        }

    # --- Keys ---

    def _windows(self) -> tuple[str, str, float]:
        now = self._clock()
        minute = int(now // 60)
        day = datetime.fromtimestamp(now, tz=timezone.utc).strftime("%Y-%m-%d")
        return str(minute), day, float((minute + 1) * 60)

    def _keys(self, provider: str, model: str, caller_id: str | None) -> dict[LimitDimension, str]:
        caller = caller_id or ANONYMOUS
        minute, day, _ = self._windows()
        return {
            LimitDimension.REQUESTS: f"{KEY_PREFIX}:requests:{provider}:{model}:{caller}:{minute}",
            LimitDimension.TOKENS: f"{KEY_PREFIX}:tokens:{provider}:{model}:{caller}:{minute}",
            LimitDimension.DAILY: f"{KEY_PREFIX}:daily:{provider}:{model}:{caller}:{day}",
        }

    async def _read(self, key: str) -> int:
        try:
            return await self.store.get(key)
        except Exception as e:
            logger.error("Rate limit counter read failed for %s: %s", key, e)
            return 0

    # --- Operations ---

    async def check(
        self,
        provider: str,
        model: str,
        estimated_tokens: int = 0,
        caller_id: str | None = None,
    ) -> RateLimitDecision:
        """Decide whether one more call fits in every window. Does not increment."""
        limits = self._limit_map(self.limits_for(provider, model))
        keys = self._keys(provider, model, caller_id)
        _, _, reset_at = self._windows()

        decision = RateLimitDecision(limits=limits, reset_at=reset_at)

        for dim, limit in limits.items():
            if limit is None:
                decision.remaining[dim] = None
                continue
            if dim == LimitDimension.TOKENS and estimated_tokens <= 0:
                decision.remaining[dim] = None
                continue

            current = await self._read(keys[dim])
            decision.current[dim] = current
            decision.remaining[dim] = max(limit - current, 0)

            if dim == LimitDimension.TOKENS:
                ok = current + estimated_tokens <= limit
            else:
                ok = current < limit
            if not ok:
                decision.denied.append(dim)

        decision.allowed = not decision.denied
        if not decision.allowed:
            RATE_LIMIT_DENIALS.labels(provider=provider, model=model).inc()
            logger.warning(
                "Rate limit exceeded for %s/%s caller=%s: %s",
                provider,
                model,
                caller_id or ANONYMOUS,
                ", ".join(d.value for d in decision.denied),
                extra={"provider": provider, "model": model, "caller_id": caller_id or ANONYMOUS},
            )
        return decision

    async def record(
        self,
        provider: str,
        model: str,
        actual_tokens: int = 0,
        caller_id: str | None = None,
    ) -> None:
        """Count one completed call and its tokens."""
        keys = self._keys(provider, model, caller_id)
        await self.store.incr(keys[LimitDimension.REQUESTS], 1, MINUTE_TTL)
        if actual_tokens > 0:
            await self.store.incr(keys[LimitDimension.TOKENS], actual_tokens, MINUTE_TTL)
        await self.store.incr(keys[LimitDimension.DAILY], 1, DAY_TTL)

    async def get_stats(self, provider: str, model: str, caller_id: str | None = None) -> dict:
        """Current counters and limits for one scope."""
        limits = self._limit_map(self.limits_for(provider, model))
        keys = self._keys(provider, model, caller_id)
        _, _, reset_at = self._windows()
        stats: dict = {
            "provider": provider,
            "model": model,
            "caller_id": caller_id or ANONYMOUS,
            "reset_at": reset_at,
        }
        for dim, key in keys.items():
            current = await self._read(key)
            limit = limits[dim]
            stats[dim.value] = {
                "current": current,
                "limit": limit,
                "remaining": None if limit is None else max(limit - current, 0),
            }
        return stats

    async def reset(self, provider: str, model: str, caller_id: str | None = None) -> None:
        """Clear the current windows for one scope."""
        for key in self._keys(provider, model, caller_id).values():
            await self.store.delete(key)
        logger.info("Rate limit counters reset for %s/%s caller=%s", provider, model, caller_id or ANONYMOUS)
