from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest

from genai_gateway.core.config import RateLimitConfig, RateLimitRule, Settings
from genai_gateway.gateway.gateway import LlmGateway
from genai_gateway.gateway.presets import InMemoryPresetRepository
from genai_gateway.gateway.pricing import PricingEntry, PricingTable
from genai_gateway.gateway.stores import MemoryCacheStore, MemoryCounterStore
from genai_gateway.gateway.types import Preset, ProviderConfig

# 2023-11-14 22:13:20 UTC, 20 seconds into its minute window
T0 = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingRequestLogger:
    def __init__(self):
        self.calls: list[dict] = []

    async def log_request(self, spec, response, provider, model, duration_ms, error, caller_id=None):
        self.calls.append(
            {
                "spec": spec,
                "response": response,
                "provider": provider,
                "model": model,
                "duration_ms": duration_ms,
                "error": error,
                "caller_id": caller_id,
            }
        )


def openai_payload(text="Hello world", model="gpt-4.1-mini", input_tokens=10, output_tokens=20, **usage_extra):
    usage = {
        "prompt_tokens": input_tokens,
        "completion_tokens": output_tokens,
        "total_tokens": input_tokens + output_tokens,
    }
    usage.update(usage_extra)
    return {
        "id": "chatcmpl-123",
        "model": model,
        "choices": [{"message": {"role": "assistant", "content": text}, "finish_reason": "stop"}],
        "usage": usage,
    }


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        default_provider="openai",
        default_model="gpt-4.1-mini",
        openai_api_key="sk-test",
        claude_api_key="claude-test",
        gemini_api_key="gemini-test",
        grok_api_key="xai-test",
        redis_url="",
        cache_enabled=True,
        cache_ttl=3600,
        retry_max_attempts=3,
        retry_delay_ms=1000,
        retry_multiplier=2.0,
        rate_limits=RateLimitConfig(
            default=RateLimitRule(requests_per_minute=60, tokens_per_minute=90_000, requests_per_day=1000),
            providers={},
            models={},
        ),
    )


@pytest.fixture
def pricing() -> PricingTable:
    return PricingTable(
        [
            PricingEntry(
                model="gpt-4.1-mini",
                provider="openai",
                input=Decimal("0.40"),
                output=Decimal("1.60"),
                cached_input=Decimal("0.10"),
            ),
            PricingEntry(model="claude-sonnet-4-20250514", provider="claude", input=Decimal("3"), output=Decimal("15")),
        ]
    )


@pytest.fixture
def presets() -> InMemoryPresetRepository:
    return InMemoryPresetRepository(
        [
            Preset(name="default"),
            Preset(
                name="analyze",
                provider="claude",
                model="claude-sonnet-4-20250514",
                system_prompt="You are a data analyst.",
                options={"temperature": 0.4, "max_tokens": 3000},
            ),
        ]
    )


@pytest.fixture
def provider_configs() -> dict[str, ProviderConfig]:
    return {
        "openai": ProviderConfig(api_key="sk-test", base_url="https://api.openai.test/v1"),
        "grok": ProviderConfig(api_key="xai-test", base_url="https://api.x.test/v1"),
        "claude": ProviderConfig(api_key="claude-test", base_url="https://api.anthropic.test/v1"),
        "gemini": ProviderConfig(api_key="gemini-test", base_url="https://gemini.test/v1beta"),
    }


@pytest.fixture
def make_gateway(test_settings, pricing, presets, provider_configs, clock):
    """Build a gateway around in-memory stores and an httpx.MockTransport handler."""

    def _make(handler=None, cfg: Settings | None = None, **overrides):
        if handler is None:
            handler = lambda request: httpx.Response(200, json=openai_payload())  # noqa: E731
        kwargs = {
            "presets": presets,
            "provider_configs": provider_configs,
            "pricing": pricing,
            "cache_store": MemoryCacheStore(clock=clock),
            "counter_store": MemoryCounterStore(clock=clock),
            "request_logger": RecordingRequestLogger(),
            "cfg": cfg or test_settings,
            "sleep": AsyncMock(),
            "clock": clock,
            "transport": httpx.MockTransport(handler),
        }
        kwargs.update(overrides)
        return LlmGateway(**kwargs)

    return _make
