"""Response Cache Manager.

Identical requests (same provider, model, prompt and effective options) map to
the same key and return the stored response without calling the provider.
Keys look like ``{prefix}:{provider}:{model}:{sha256}``.

Backend failures never fail a request: they are logged and read as a miss.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any

from genai_gateway.core.config import Settings, settings
from genai_gateway.core.metrics import CACHE_EVENTS
from genai_gateway.gateway.stores import CacheStore

logger = logging.getLogger(__name__)

# Options that change how a call is made but not what it returns
NON_SEMANTIC_OPTIONS = frozenset({"stream", "async", "timeout"})


def normalize_options(options: dict[str, Any] | None) -> dict[str, Any]:
    """Drop non-semantic options and sort the rest by key."""
    return {k: options[k] for k in sorted(options or {}) if k not in NON_SEMANTIC_OPTIONS}


def cache_tags(provider: str, model: str, base_tags: list[str] | None = None) -> list[str]:
    return [
        *(base_tags or []),
        f"provider:{provider}",
        f"model:{model}",
        f"provider-model:{provider}:{model}",
    ]


class CacheManager:
    """Get/put/forget/invalidate over a ``CacheStore`` with hit/miss stats."""

    def __init__(self, store: CacheStore, cfg: Settings | None = None):
        cfg = cfg or settings
        self.store = store
        self.enabled = cfg.cache_enabled
        self.ttl = cfg.cache_ttl
        self.prefix = cfg.cache_prefix
        self.base_tags = list(cfg.cache_tags)
        self._hits = 0
        self._misses = 0
        self._errors = 0

    def cache_key(
        self,
        provider: str,
        model: str,
        prompt: str,
        options: dict[str, Any] | None = None,
        system_prompt: str | None = None,
    ) -> str:
        payload: dict[str, Any] = {"prompt": prompt, "options": normalize_options(options)}
        if system_prompt is not None:
            payload["system_prompt"] = system_prompt
        raw = json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str, separators=(",", ":"))
        digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()
        return f"{self.prefix}:{provider}:{model}:{digest}"

    async def get(
        self,
        provider: str,
        model: str,
        prompt: str,
        options: dict[str, Any] | None = None,
        system_prompt: str | None = None,
    ) -> dict[str, Any] | None:
        """Return the stored entry, or None on miss, disabled cache or backend error."""
        if not self.enabled:
            return None

        key = self.cache_key(provider, model, prompt, options, system_prompt)
        try:
            raw = await self.store.get(key)
        except Exception as e:
            self._record_error()
            logger.warning("Cache read failed for %s: %s", key, e, extra={"cache_key": key})
            self.record_miss()
            return None

        if raw is None:
            logger.debug("Cache MISS for key %s", key)
            self.record_miss()
            return None

        try:
            entry = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning("Discarding unreadable cache entry %s: %s", key, e)
            self.record_miss()
            return None

        logger.debug("Cache HIT for key %s", key)
        self.record_hit()
        return entry

    async def put(
        self,
        provider: str,
        model: str,
        prompt: str,
        options: dict[str, Any] | None,
        entry: dict[str, Any],
        ttl: int | None = None,
        system_prompt: str | None = None,
    ) -> None:
        if not self.enabled:
            return

        key = self.cache_key(provider, model, prompt, options, system_prompt)
        value = json.dumps(entry, ensure_ascii=False, default=str)
        try:
            await self.store.set(
                key,
                value,
                ttl=self.ttl if ttl is None else ttl,
                tags=cache_tags(provider, model, self.base_tags),
            )
        except Exception as e:
            self._record_error()
            logger.warning("Cache write failed for %s: %s", key, e, extra={"cache_key": key})

    async def forget(
        self,
        provider: str,
        model: str,
        prompt: str,
        options: dict[str, Any] | None = None,
        system_prompt: str | None = None,
    ) -> None:
        key = self.cache_key(provider, model, prompt, options, system_prompt)
        try:
            await self.store.delete(key)
        except Exception as e:
            self._record_error()
            logger.warning("Cache delete failed for %s: %s", key, e)

    async def invalidate(self, tag: str | None = None) -> int:
        """Evict every entry carrying ``tag``, or the whole cache when tag is None."""
        try:
            if tag is None:
                removed = await self.store.flush_all()
            else:
                removed = await self.store.flush_tag(tag)
        except Exception as e:
            self._record_error()
            logger.warning("Cache invalidation failed (tag=%s): %s", tag, e)
            return 0
        logger.info("Invalidated %d cache entries (tag=%s)", removed, tag or "*")
        return removed

    async def flush_provider(self, provider: str) -> int:
        return await self.invalidate(f"provider:{provider}")

    async def flush_model(self, model: str) -> int:
        return await self.invalidate(f"model:{model}")

    async def flush_provider_model(self, provider: str, model: str) -> int:
        return await self.invalidate(f"provider-model:{provider}:{model}")

    # --- Stats ---

    def record_hit(self) -> None:
        self._hits += 1
        CACHE_EVENTS.labels(event="hit").inc()

    def record_miss(self) -> None:
        self._misses += 1
        CACHE_EVENTS.labels(event="miss").inc()

    def _record_error(self) -> None:
        self._errors += 1
        CACHE_EVENTS.labels(event="error").inc()

    def hit_rate(self) -> float:
        total = self._hits + self._misses
        return round(self._hits / total, 4) if total else 0.0

    def get_stats(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "hits": self._hits,
            "misses": self._misses,
            "errors": self._errors,
            "hit_rate": self.hit_rate(),
            "ttl": self.ttl,
            "prefix": self.prefix,
        }

    def reset_stats(self) -> None:
        self._hits = 0
        self._misses = 0
        self._errors = 0
