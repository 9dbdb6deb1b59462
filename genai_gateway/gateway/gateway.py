"""GenAI Gateway — orchestrator integrating all pipeline components.

One call flows through:
  1. Config Resolver (request < preset < defaults)
  2. Cache lookup (hit → replay, skip everything below)
  3. Rate limit check (denial → error response, no upstream call)
  4. Provider dispatch with retry/backoff
  5. Normalization and cost accounting
  6. Cache store and rate limit record
  7. Request logger hand-off

Failures never raise out of ``execute``: they come back as a NormalizedResponse
with ``error`` and ``error_kind`` set. ``raise_for_error()`` and ``ask()`` give
exception-style access.

Usage:
    gateway = LlmGateway()

    response = await gateway.execute(RequestSpec(prompt="Hello", preset="ask"))
    responses = await gateway.execute_batch(specs, caller_id="user-42")
    text = await gateway.ask("Summarize this", temperature=0.2)
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections.abc import Awaitable, Callable
from decimal import Decimal
from typing import Any

import httpx

from genai_gateway.core.config import Settings, settings, validate_settings
from genai_gateway.core.metrics import COST, REQUEST_COUNT, REQUEST_DURATION, TOKENS
from genai_gateway.gateway.cache import CacheManager
from genai_gateway.gateway.config_resolver import ConfigResolver, ModelFamilyRule
from genai_gateway.gateway.cost import CostCalculator
from genai_gateway.gateway.errors import GatewayError, RateLimitExceeded, RequestTimeoutError
from genai_gateway.gateway.normalizer import build_cached, build_error, build_success, to_cache_entry
from genai_gateway.gateway.presets import PresetRepository, YamlPresetRepository
from genai_gateway.gateway.pricing import PricingTable
from genai_gateway.gateway.providers import (
    ParsedResponse,
    ProviderDispatcher,
    SettingsProviderConfigSource,
    StaticProviderConfigSource,
)
from genai_gateway.gateway.rate_limiter import RateLimiter, estimate_tokens
from genai_gateway.gateway.request_logger import LoggingRequestLogger, RequestLogger
from genai_gateway.gateway.retry import RetryController, retry_policy_from_settings
from genai_gateway.gateway.single_flight import SingleFlight
from genai_gateway.gateway.stores import CacheStore, CounterStore, create_stores
from genai_gateway.gateway.types import (
    NormalizedResponse,
    ProviderConfig,
    RequestSpec,
    ResolvedConfig,
    RetryPolicy,
)

logger = logging.getLogger(__name__)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class LlmGateway:
    """Main gateway orchestrator.

    Integrates:
      - ConfigResolver: preset and default merging
      - CacheManager: response cache with tags and stats
      - RateLimiter: fixed-window requests/tokens/daily admission
      - ProviderDispatcher + RetryController: upstream calls with backoff
      - CostCalculator: usage-based cost in the display currency
      - RequestLogger: one hand-off per finished call
    """

    def __init__(
        self,
        presets: PresetRepository | None = None,
        provider_configs: dict[str, ProviderConfig]
        | StaticProviderConfigSource
        | SettingsProviderConfigSource
        | None = None,
        pricing: PricingTable | None = None,
        cache_store: CacheStore | None = None,
        counter_store: CounterStore | None = None,
        request_logger: RequestLogger | None = None,
        cfg: Settings | None = None,
        retry_policy: RetryPolicy | None = None,
        extra_model_rules: tuple[ModelFamilyRule, ...] = (),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Args:
            presets: Preset repository; defaults to YAML files under ``presets_path``
            provider_configs: Provider name → ProviderConfig, or a config source;
                defaults to API keys from settings
            pricing: Pricing table; defaults to the ``models_path`` catalogue
            cache_store / counter_store: Backends; default per ``redis_url``
            request_logger: Receives every finished call
            sleep: Awaitable used for retry backoff
            clock: Epoch-seconds clock for rate limit windows
            transport: httpx transport for upstream calls
        """
        cfg = cfg or settings
        validate_settings(cfg)
        self.settings = cfg

        if cache_store is None or counter_store is None:
            default_cache, default_counter = create_stores(cfg)
            cache_store = cache_store or default_cache
            counter_store = counter_store or default_counter

        if provider_configs is None:
            config_source = SettingsProviderConfigSource(cfg)
        elif isinstance(provider_configs, dict):
            config_source = StaticProviderConfigSource(provider_configs)
        else:
            config_source = provider_configs

        self.resolver = ConfigResolver(
            presets if presets is not None else YamlPresetRepository(cfg.presets_path),
            cfg=cfg,
            extra_rules=extra_model_rules,
        )
        self.cache = CacheManager(cache_store, cfg=cfg)
        self.rate_limiter = RateLimiter(counter_store, config=cfg.rate_limits, clock=clock)
        self.dispatcher = ProviderDispatcher(config_source, default_timeout=cfg.request_timeout, transport=transport)
        self.retry = RetryController(retry_policy or retry_policy_from_settings(cfg), sleep=sleep)
        self.cost_calculator = CostCalculator(
            pricing if pricing is not None else PricingTable.from_yaml(cfg.models_path),
            cfg=cfg,
        )
        self.request_logger = request_logger or LoggingRequestLogger()

        self._single_flight: SingleFlight[NormalizedResponse] | None = (
            SingleFlight() if cfg.cache_single_flight else None
        )
        self.batch_max_concurrency = cfg.batch_max_concurrency
        self.batch_request_timeout = cfg.batch_request_timeout

    # ------------------------------------------------------------------
    # Single call
    # ------------------------------------------------------------------

    async def execute(self, spec: RequestSpec, caller_id: str | None = None) -> NormalizedResponse:
        """Run one request through the full pipeline. Never raises for request failures."""
        return await self._execute(spec, caller_id)

    def _try_resolve(self, spec: RequestSpec) -> ResolvedConfig | None:
        try:
            return self.resolver.resolve(spec)
        except GatewayError:
            return None

    async def _execute(
        self,
        spec: RequestSpec,
        caller_id: str | None,
        config: ResolvedConfig | None = None,
    ) -> NormalizedResponse:
        start = time.monotonic()
        provider, model = spec.provider or "", spec.model or ""

        try:
            if config is None:
                config = self.resolver.resolve(spec)
            provider, model = config.provider, config.model

            cache_args = (provider, model, config.prompt, config.options, config.system_prompt)
            entry = await self.cache.get(*cache_args)
            if entry is not None:
                response = build_cached(entry, provider, model, _elapsed_ms(start))
            elif self._single_flight is not None:
                key = self.cache.cache_key(*cache_args)
                response, shared = await self._single_flight.do(
                    key, lambda: self._execute_miss(config, caller_id, start)
                )
                if shared:
                    response = dataclasses.replace(
                        response,
                        meta={**response.meta, "coalesced": True},
                        response_time_ms=_elapsed_ms(start),
                    )
            else:
                response = await self._execute_miss(config, caller_id, start)
        except GatewayError as e:
            response = build_error(e, provider, model, _elapsed_ms(start))
        except Exception as e:
            logger.exception("Unexpected gateway error for %s/%s", provider, model)
            response = build_error(e, provider, model, _elapsed_ms(start))

        return await self._finish(spec, response, caller_id)

    async def _execute_miss(self, config: ResolvedConfig, caller_id: str | None, start: float) -> NormalizedResponse:
        """Everything after a cache miss: admission, dispatch, cost, store, record."""
        provider, model = config.provider, config.model

        decision = await self.rate_limiter.check(
            provider, model, estimated_tokens=estimate_tokens(config.prompt), caller_id=caller_id
        )
        if not decision.allowed:
            error = RateLimitExceeded(provider, model, [d.value for d in decision.denied])
            return build_error(error, provider, model, _elapsed_ms(start), meta={"reset_at": decision.reset_at})

        async def attempt() -> ParsedResponse:
            raw = await self.dispatcher.dispatch(config)
            return self.dispatcher.parse(config, raw)

        try:
            outcome = await self.retry.run(attempt, label=provider)
        except GatewayError as e:
            return build_error(e, provider, model, _elapsed_ms(start))

        parsed = outcome.value
        cost = self.cost_calculator.calculate(model, parsed.usage, image_options=config.options)
        response = build_success(parsed, cost, provider, model, _elapsed_ms(start))

        await self.cache.put(
            provider,
            model,
            config.prompt,
            config.options,
            to_cache_entry(response),
            system_prompt=config.system_prompt,
        )

        if outcome.attempts > 1:
            response.meta["attempts"] = outcome.attempts
            response.meta["retry_delay_ms"] = int(outcome.total_delay_ms)

        try:
            await self.rate_limiter.record(provider, model, parsed.usage.total_tokens, caller_id=caller_id)
        except Exception as e:
            logger.warning("Rate limit record failed for %s/%s: %s", provider, model, e)

        return response

    async def _finish(
        self,
        spec: RequestSpec,
        response: NormalizedResponse,
        caller_id: str | None,
    ) -> NormalizedResponse:
        """Metrics and the single request-logger hand-off for a final response."""
        provider, model = response.provider or "unknown", response.model or "unknown"
        if response.error_kind is not None:
            status = response.error_kind.value
        else:
            status = "cached" if response.cached else "success"

        REQUEST_COUNT.labels(provider=provider, model=model, status=status).inc()
        REQUEST_DURATION.labels(provider=provider, model=model).observe(response.response_time_ms / 1000)
        if response.ok and not response.cached:
            TOKENS.labels(provider=provider, model=model, direction="input").inc(response.usage.input_tokens)
            TOKENS.labels(provider=provider, model=model, direction="output").inc(response.usage.output_tokens)
            COST.labels(provider=provider, model=model).inc(float(response.cost))

        try:
            await self.request_logger.log_request(
                spec,
                response,
                response.provider,
                response.model,
                response.response_time_ms,
                response.error,
                caller_id=caller_id,
            )
        except Exception:
            logger.exception("Request logger failed for %s/%s", provider, model)

        return response

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def execute_batch(
        self,
        specs: list[RequestSpec],
        caller_id: str | None = None,
        max_concurrency: int | None = None,
    ) -> list[NormalizedResponse]:
        """Execute many requests concurrently; results keep the input order.

        Each slot has its own admission check, retry loop and optional deadline,
        so one failure only fills its own slot.
        """
        if not specs:
            return []

        semaphore = asyncio.Semaphore(max(max_concurrency or self.batch_max_concurrency, 1))
        deadline = self.batch_request_timeout

        async def _execute_with_semaphore(spec: RequestSpec) -> NormalizedResponse:
            async with semaphore:
                config = self._try_resolve(spec)
                if not deadline:
                    return await self._execute(spec, caller_id, config)
                try:
                    return await asyncio.wait_for(self._execute(spec, caller_id, config), timeout=deadline)
                except asyncio.TimeoutError:
                    error = RequestTimeoutError(f"Batch request exceeded {deadline}s")
                    provider = config.provider if config else spec.provider or ""
                    model = config.model if config else spec.model or ""
                    response = build_error(error, provider, model, int(deadline * 1000))
                    return await self._finish(spec, response, caller_id)

        results = await asyncio.gather(*(_execute_with_semaphore(s) for s in specs), return_exceptions=True)

        responses: list[NormalizedResponse] = []
        for spec, result in zip(specs, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.error("Batch slot failed outside the pipeline: %s", result)
                result = await self._finish(spec, build_error(result, spec.provider or "", spec.model or "", 0), caller_id)
            responses.append(result)

        logger.info(
            "Batch of %d finished: %d ok, %d failed",
            len(responses),
            sum(1 for r in responses if r.ok),
            sum(1 for r in responses if not r.ok),
        )
        return responses

    # ------------------------------------------------------------------
    # Convenience
    # ------------------------------------------------------------------

    async def ask(
        self,
        prompt: str,
        *,
        preset: str = "default",
        provider: str | None = None,
        model: str | None = None,
        system_prompt: str | None = None,
        vars: dict[str, str] | None = None,
        caller_id: str | None = None,
        **options: Any,
    ) -> str:
        """Return just the content; raises the typed GatewayError on failure."""
        spec = RequestSpec(
            prompt=prompt,
            system_prompt=system_prompt,
            provider=provider,
            model=model,
            options=options,
            vars=vars or {},
            preset=preset,
        )
        response = await self.execute(spec, caller_id)
        return response.raise_for_error().content

    def estimate_cost(self, model: str, prompt: str, output_tokens: int = 0) -> Decimal:
        return self.cost_calculator.estimate_cost(model, estimate_tokens(prompt), output_tokens)

    async def get_status(self, caller_id: str | None = None) -> dict:
        """Cache stats plus rate limit usage for the default provider/model."""
        return {
            "cache": self.cache.get_stats(),
            "rate_limits": await self.rate_limiter.get_stats(
                self.settings.default_provider, self.settings.default_model, caller_id
            ),
            "single_flight": self._single_flight is not None,
        }
