"""Provider adapters — protocol-level handling for each LLM provider.

Each adapter translates a ResolvedConfig into the provider's HTTP request,
sends it, and parses the reply into content + Usage.

Provider-specific behaviors:
  - OpenAI / Grok: chat completions, Bearer auth, penalties passed through
  - Claude: Messages API, x-api-key + anthropic-version, max_tokens required
  - Gemini: generateContent, key as query param, generationConfig, systemInstruction
  - Mock: no network, echoes the prompt
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from genai_gateway.core.config import Settings, settings
from genai_gateway.gateway.errors import (
    ProviderConfigMissing,
    ProviderRequestError,
    RequestTimeoutError,
    UnsupportedProvider,
    error_kind_for_status,
)
from genai_gateway.gateway.types import ErrorKind, ProviderConfig, ResolvedConfig, Usage

logger = logging.getLogger(__name__)


@dataclass
class WireRequest:
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, str] = field(default_factory=dict)
    json: dict[str, Any] = field(default_factory=dict)


@dataclass
class ParsedResponse:
    content: str
    usage: Usage
    meta: dict[str, Any] = field(default_factory=dict)


def _malformed(provider: str, detail: str) -> ProviderRequestError:
    return ProviderRequestError(
        f"{provider} returned an unexpected response: {detail}",
        kind=ErrorKind.MALFORMED_RESPONSE,
    )


class BaseProvider(ABC):
    """Base class for all provider adapters."""

    name: str
    default_headers: dict[str, str] = {}
    default_query_params: dict[str, str] = {}

    def __init__(self, config: ProviderConfig):
        self.config = config

    def _render(self, template: dict[str, str]) -> dict[str, str]:
        return {k: v.replace("{api_key}", self.config.api_key) for k, v in template.items()}

    def headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        headers.update(self._render(self.config.headers or self.default_headers))
        return headers

    def query_params(self) -> dict[str, str]:
        return self._render(self.config.query_params or self.default_query_params)

    @abstractmethod
    def transform_options(self, options: dict[str, Any]) -> dict[str, Any]:
        """Map gateway option names to the provider's wire fields."""
        ...

    @abstractmethod
    def build_request(self, config: ResolvedConfig) -> WireRequest: ...

    @abstractmethod
    def parse_response(self, data: dict[str, Any]) -> ParsedResponse: ...

    async def send(
        self,
        config: ResolvedConfig,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> dict[str, Any]:
        """POST the wire request and return the decoded JSON body.

        Raises ProviderRequestError (or RequestTimeoutError) classified by kind.
        """
        wire = self.build_request(config)
        start = time.monotonic()

        try:
            async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
                resp = await client.post(wire.url, json=wire.json, headers=wire.headers, params=wire.params)
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(f"{self.name} timeout after {timeout}s") from e
        except httpx.TransportError as e:
            raise ProviderRequestError(
                f"{self.name} connection failed: {e}", kind=ErrorKind.CONNECTION
            ) from e

        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.debug("%s %s -> %d in %dms", self.name, config.model, resp.status_code, elapsed_ms)

        if resp.status_code >= 400:
            body = resp.text
            kind = error_kind_for_status(resp.status_code)
            message = f"{self.name} API request failed with status {resp.status_code}: {body[:500]}"
            if kind == ErrorKind.TIMEOUT:
                raise RequestTimeoutError(message, status_code=resp.status_code, body=body)
            raise ProviderRequestError(message, kind=kind, status_code=resp.status_code, body=body)

        try:
            data = resp.json()
        except ValueError as e:
            raise _malformed(self.name, "body is not JSON") from e
        if not isinstance(data, dict):
            raise _malformed(self.name, "body is not a JSON object")
        return data


# ---------------------------------------------------------------------------
# OpenAI / Grok
# ---------------------------------------------------------------------------


class OpenAIProvider(BaseProvider):
    """OpenAI Chat Completions adapter."""

    name = "openai"
    default_base_url = "https://api.openai.com/v1"
    default_headers = {"Authorization": "Bearer {api_key}"}

    _PASSTHROUGH = (
        "temperature",
        "max_tokens",
        "max_completion_tokens",
        "top_p",
        "frequency_penalty",
        "presence_penalty",
    )

    def transform_options(self, options: dict[str, Any]) -> dict[str, Any]:
        return {k: options[k] for k in self._PASSTHROUGH if options.get(k) is not None}

    def build_request(self, config: ResolvedConfig) -> WireRequest:
        messages = []
        if config.system_prompt:
            messages.append({"role": "system", "content": config.system_prompt})
        messages.append({"role": "user", "content": config.prompt})

        payload = {"model": config.model, "messages": messages}
        payload.update(self.transform_options(config.options))

        base_url = (self.config.base_url or self.default_base_url).rstrip("/")
        return WireRequest(
            url=f"{base_url}/chat/completions",
            headers=self.headers(),
            params=self.query_params(),
            json=payload,
        )

    def parse_response(self, data: dict[str, Any]) -> ParsedResponse:
        try:
            choice = data["choices"][0]
            content = choice["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise _malformed(self.name, "missing choices[0].message.content") from e

        usage = data.get("usage") or {}
        input_details = usage.get("prompt_tokens_details") or usage.get("input_tokens_details") or {}
        output_details = usage.get("completion_tokens_details") or usage.get("output_tokens_details") or {}

        return ParsedResponse(
            content=content,
            usage=Usage(
                input_tokens=usage.get("prompt_tokens", usage.get("input_tokens", 0)),
                output_tokens=usage.get("completion_tokens", usage.get("output_tokens", 0)),
                total_tokens=usage.get("total_tokens", 0),
                cached_tokens=input_details.get("cached_tokens", 0),
                reasoning_tokens=output_details.get("reasoning_tokens", 0),
            ),
            meta={
                "id": data.get("id"),
                "model": data.get("model"),
                "finish_reason": choice.get("finish_reason"),
            },
        )


class GrokProvider(OpenAIProvider):
    """xAI Grok: OpenAI-compatible wire format."""

    name = "grok"
    default_base_url = "https://api.x.ai/v1"


# ---------------------------------------------------------------------------
# Claude
# ---------------------------------------------------------------------------


class ClaudeProvider(BaseProvider):
    """Anthropic Messages API adapter."""

    name = "claude"
    default_base_url = "https://api.anthropic.com/v1"
    default_headers = {"x-api-key": "{api_key}", "anthropic-version": "2023-06-01"}
    default_max_tokens = 4096

    def transform_options(self, options: dict[str, Any]) -> dict[str, Any]:
        out = {"max_tokens": options.get("max_tokens") or self.default_max_tokens}
        for key in ("temperature", "top_p"):
            if options.get(key) is not None:
                out[key] = options[key]
        return out

    def build_request(self, config: ResolvedConfig) -> WireRequest:
        payload: dict[str, Any] = {
            "model": config.model,
            "messages": [{"role": "user", "content": config.prompt}],
        }
        if config.system_prompt:
            payload["system"] = config.system_prompt
        payload.update(self.transform_options(config.options))

        base_url = (self.config.base_url or self.default_base_url).rstrip("/")
        return WireRequest(
            url=f"{base_url}/messages",
            headers=self.headers(),
            params=self.query_params(),
            json=payload,
        )

    def parse_response(self, data: dict[str, Any]) -> ParsedResponse:
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise _malformed(self.name, "missing content blocks")
        content = "".join(b.get("text", "") for b in blocks if isinstance(b, dict) and b.get("type", "text") == "text")

        usage = data.get("usage") or {}
        return ParsedResponse(
            content=content,
            usage=Usage(
                input_tokens=usage.get("input_tokens", 0),
                output_tokens=usage.get("output_tokens", 0),
                cached_tokens=usage.get("cache_read_input_tokens", 0),
            ),
            meta={
                "id": data.get("id"),
                "model": data.get("model"),
                "stop_reason": data.get("stop_reason"),
            },
        )


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------


class GeminiProvider(BaseProvider):
    """Google AI generateContent adapter."""

    name = "gemini"
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"
    default_query_params = {"key": "{api_key}"}

    _GENERATION_CONFIG = {
        "temperature": "temperature",
        "max_tokens": "maxOutputTokens",
        "top_p": "topP",
    }

    def transform_options(self, options: dict[str, Any]) -> dict[str, Any]:
        generation_config = {
            wire: options[opt] for opt, wire in self._GENERATION_CONFIG.items() if options.get(opt) is not None
        }
        return {"generationConfig": generation_config} if generation_config else {}

    def build_request(self, config: ResolvedConfig) -> WireRequest:
        payload: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": config.prompt}]}],
        }
        if config.system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": config.system_prompt}]}
        payload.update(self.transform_options(config.options))

        base_url = (self.config.base_url or self.default_base_url).rstrip("/")
        return WireRequest(
            url=f"{base_url}/models/{config.model}:generateContent",
            headers=self.headers(),
            params=self.query_params(),
            json=payload,
        )

    def parse_response(self, data: dict[str, Any]) -> ParsedResponse:
        try:
            candidate = data["candidates"][0]
            parts = candidate.get("content", {}).get("parts", [])
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise _malformed(self.name, "missing candidates[0]") from e
        content = "".join(p.get("text", "") for p in parts if isinstance(p, dict))

        usage = data.get("usageMetadata") or {}
        return ParsedResponse(
            content=content,
            usage=Usage(
                input_tokens=usage.get("promptTokenCount", 0),
                output_tokens=usage.get("candidatesTokenCount", 0),
                total_tokens=usage.get("totalTokenCount", 0),
                cached_tokens=usage.get("cachedContentTokenCount", 0),
                reasoning_tokens=usage.get("thoughtsTokenCount", 0),
            ),
            meta={
                "model": data.get("modelVersion"),
                "finish_reason": candidate.get("finishReason"),
            },
        )


# ---------------------------------------------------------------------------
# Mock
# ---------------------------------------------------------------------------


class MockProvider(OpenAIProvider):
    """Offline provider for development and tests. Never touches the network."""

    name = "mock"
    default_headers = {}

    async def send(
        self,
        config: ResolvedConfig,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> dict[str, Any]:
        content = f"Mock response to: {config.prompt}"
        if config.system_prompt:
            content += f" (System: {config.system_prompt})"
        input_tokens = len(config.prompt) // 4
        return {
            "id": f"chatcmpl-mock-{int(time.time() * 1000)}",
            "model": config.model,
            "choices": [{"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": "stop"}],
            "usage": {
                "prompt_tokens": input_tokens,
                "completion_tokens": 20,
                "total_tokens": input_tokens + 20,
            },
        }


# ---------------------------------------------------------------------------
# Provider registry
# ---------------------------------------------------------------------------

PROVIDER_REGISTRY: dict[str, type[BaseProvider]] = {
    "openai": OpenAIProvider,
    "grok": GrokProvider,
    "claude": ClaudeProvider,
    "gemini": GeminiProvider,
    "mock": MockProvider,
}


def get_provider(name: str, config: ProviderConfig) -> BaseProvider:
    """Factory: get the adapter for a provider name."""
    cls = PROVIDER_REGISTRY.get(name)
    if cls is None:
        raise UnsupportedProvider(name)
    return cls(config)


# ---------------------------------------------------------------------------
# Provider configuration sources
# ---------------------------------------------------------------------------


class StaticProviderConfigSource:
    def __init__(self, configs: dict[str, ProviderConfig]):
        self._configs = dict(configs)

    def get(self, provider: str) -> ProviderConfig:
        if provider == "mock":
            return self._configs.get(provider, ProviderConfig())
        try:
            return self._configs[provider]
        except KeyError:
            raise ProviderConfigMissing(provider) from None


class SettingsProviderConfigSource:
    """Builds provider configs from ``{provider}_api_key`` / ``{provider}_base_url`` settings."""

    def __init__(self, cfg: Settings | None = None):
        self._cfg = cfg or settings

    def get(self, provider: str) -> ProviderConfig:
        if provider == "mock":
            return ProviderConfig()
        api_key = getattr(self._cfg, f"{provider}_api_key", "")
        if not api_key:
            raise ProviderConfigMissing(provider)
        return ProviderConfig(api_key=api_key, base_url=getattr(self._cfg, f"{provider}_base_url", ""))


class ProviderDispatcher:
    """Selects the adapter for a resolved request and performs one upstream call."""

    def __init__(
        self,
        config_source: StaticProviderConfigSource | SettingsProviderConfigSource,
        default_timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config_source = config_source
        self.default_timeout = default_timeout
        self.transport = transport
        self._providers: dict[str, BaseProvider] = {}

    def provider_for(self, name: str) -> BaseProvider:
        if name not in self._providers:
            if name not in PROVIDER_REGISTRY:
                raise UnsupportedProvider(name)
            self._providers[name] = get_provider(name, self.config_source.get(name))
        return self._providers[name]

    def timeout_for(self, config: ResolvedConfig) -> float:
        value = config.options.get("timeout")
        return float(value) if value else self.default_timeout

    async def dispatch(self, config: ResolvedConfig) -> dict[str, Any]:
        """One attempt; the raw provider payload on success."""
        provider = self.provider_for(config.provider)
        return await provider.send(config, timeout=self.timeout_for(config), transport=self.transport)

    def parse(self, config: ResolvedConfig, data: dict[str, Any]) -> ParsedResponse:
        return self.provider_for(config.provider).parse_response(data)
