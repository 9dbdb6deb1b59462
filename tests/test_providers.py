"""Tests for provider adapters (mocked HTTP), config sources and the dispatcher."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from conftest import openai_payload
from genai_gateway.gateway.errors import (
    ProviderConfigMissing,
    ProviderRequestError,
    RequestTimeoutError,
    UnsupportedProvider,
)
from genai_gateway.gateway.providers import (
    PROVIDER_REGISTRY,
    ClaudeProvider,
    GeminiProvider,
    GrokProvider,
    MockProvider,
    OpenAIProvider,
    ProviderDispatcher,
    SettingsProviderConfigSource,
    StaticProviderConfigSource,
    get_provider,
)
from genai_gateway.gateway.types import ErrorKind, ProviderConfig, ResolvedConfig


def _config(provider="openai", model="gpt-4.1-mini", prompt="Hello", system_prompt=None, **options):
    return ResolvedConfig(provider=provider, model=model, prompt=prompt, system_prompt=system_prompt, options=options)


def _make_httpx_response(status_code: int, json_data: dict | None = None, text: str = "") -> httpx.Response:
    """Create a proper httpx.Response with request set."""
    request = httpx.Request("POST", "https://example.com")
    if json_data is not None:
        return httpx.Response(status_code, json=json_data, request=request)
    return httpx.Response(status_code, text=text, request=request)


def _patched_client(mock_client_cls, **post_kwargs):
    mock_client = AsyncMock()
    for name, value in post_kwargs.items():
        setattr(mock_client.post, name, value)
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=None)
    mock_client_cls.return_value = mock_client
    return mock_client


# ==========================================================================
# Wire shapes
# ==========================================================================


class TestOpenAIWire:
    def test_build_request(self):
        provider = OpenAIProvider(ProviderConfig(api_key="sk-test"))
        wire = provider.build_request(
            _config(
                system_prompt="Be brief.",
                temperature=0.7,
                max_tokens=100,
                top_p=0.9,
                frequency_penalty=0.1,
                presence_penalty=0.2,
                timeout=5,
                stream=True,
            )
        )
        assert wire.url == "https://api.openai.com/v1/chat/completions"
        assert wire.headers["Authorization"] == "Bearer sk-test"
        assert wire.json["model"] == "gpt-4.1-mini"
        assert wire.json["messages"] == [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hello"},
        ]
        assert wire.json["frequency_penalty"] == 0.1
        assert wire.json["presence_penalty"] == 0.2
        assert "timeout" not in wire.json
        assert "stream" not in wire.json

    def test_no_system_message_without_system_prompt(self):
        wire = OpenAIProvider(ProviderConfig(api_key="k")).build_request(_config())
        assert wire.json["messages"] == [{"role": "user", "content": "Hello"}]

    def test_max_completion_tokens_passed(self):
        wire = OpenAIProvider(ProviderConfig(api_key="k")).build_request(_config(model="o3", max_completion_tokens=50))
        assert wire.json["max_completion_tokens"] == 50
        assert "max_tokens" not in wire.json

    def test_grok_base_url(self):
        wire = GrokProvider(ProviderConfig(api_key="xai")).build_request(_config(provider="grok", model="grok-3"))
        assert wire.url == "https://api.x.ai/v1/chat/completions"
        assert wire.headers["Authorization"] == "Bearer xai"

    def test_custom_header_template(self):
        config = ProviderConfig(api_key="k", base_url="https://proxy/v1/", headers={"api-key": "{api_key}"})
        wire = OpenAIProvider(config).build_request(_config())
        assert wire.url == "https://proxy/v1/chat/completions"
        assert wire.headers["api-key"] == "k"
        assert "Authorization" not in wire.headers


class TestClaudeWire:
    def test_build_request(self):
        provider = ClaudeProvider(ProviderConfig(api_key="claude-key"))
        wire = provider.build_request(
            _config(
                provider="claude",
                model="claude-sonnet-4-20250514",
                system_prompt="Be brief.",
                temperature=0.4,
                top_p=0.9,
                frequency_penalty=0.5,
            )
        )
        assert wire.url == "https://api.anthropic.com/v1/messages"
        assert wire.headers["x-api-key"] == "claude-key"
        assert wire.headers["anthropic-version"] == "2023-06-01"
        assert wire.json["system"] == "Be brief."
        assert wire.json["messages"] == [{"role": "user", "content": "Hello"}]
        assert wire.json["max_tokens"] == 4096
        assert wire.json["temperature"] == 0.4
        assert "frequency_penalty" not in wire.json

    def test_max_tokens_passed(self):
        wire = ClaudeProvider(ProviderConfig(api_key="k")).build_request(_config(provider="claude", max_tokens=300))
        assert wire.json["max_tokens"] == 300
        assert "system" not in wire.json


class TestGeminiWire:
    def test_build_request(self):
        provider = GeminiProvider(ProviderConfig(api_key="g-key"))
        wire = provider.build_request(
            _config(
                provider="gemini",
                model="gemini-2.5-flash",
                system_prompt="Be brief.",
                temperature=0.3,
                max_tokens=256,
                top_p=0.8,
                presence_penalty=0.1,
            )
        )
        assert wire.url == "https://generativelanguage.googleapis.com/v1beta/models/gemini-2.5-flash:generateContent"
        assert wire.params == {"key": "g-key"}
        assert wire.json["contents"] == [{"role": "user", "parts": [{"text": "Hello"}]}]
        assert wire.json["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
        assert wire.json["generationConfig"] == {"temperature": 0.3, "maxOutputTokens": 256, "topP": 0.8}

    def test_no_generation_config_without_options(self):
        wire = GeminiProvider(ProviderConfig(api_key="k")).build_request(_config(provider="gemini"))
        assert "generationConfig" not in wire.json
        assert "systemInstruction" not in wire.json


# ==========================================================================
# Response parsing
# ==========================================================================


class TestParsing:
    def test_openai_usage_details(self):
        data = openai_payload(
            input_tokens=100,
            output_tokens=50,
            prompt_tokens_details={"cached_tokens": 40},
            completion_tokens_details={"reasoning_tokens": 30},
        )
        parsed = OpenAIProvider(ProviderConfig()).parse_response(data)
        assert parsed.content == "Hello world"
        assert parsed.usage.input_tokens == 100
        assert parsed.usage.output_tokens == 50
        assert parsed.usage.total_tokens == 150
        assert parsed.usage.cached_tokens == 40
        assert parsed.usage.reasoning_tokens == 30
        assert parsed.meta["finish_reason"] == "stop"

    def test_openai_input_output_naming(self):
        data = {
            "choices": [{"message": {"content": "ok"}}],
            "usage": {
                "input_tokens": 7,
                "output_tokens": 3,
                "input_tokens_details": {"cached_tokens": 2},
                "output_tokens_details": {"reasoning_tokens": 1},
            },
        }
        usage = OpenAIProvider(ProviderConfig()).parse_response(data).usage
        assert (usage.input_tokens, usage.output_tokens, usage.total_tokens) == (7, 3, 10)
        assert usage.cached_tokens == 2
        assert usage.reasoning_tokens == 1

    def test_openai_null_content(self):
        data = {"choices": [{"message": {"content": None}}]}
        assert OpenAIProvider(ProviderConfig()).parse_response(data).content == ""

    def test_openai_malformed(self):
        with pytest.raises(ProviderRequestError) as info:
            OpenAIProvider(ProviderConfig()).parse_response({"choices": []})
        assert info.value.kind == ErrorKind.MALFORMED_RESPONSE

    def test_claude(self):
        data = {
            "id": "msg_1",
            "model": "claude-sonnet-4-20250514",
            "content": [{"type": "text", "text": "Hello "}, {"type": "text", "text": "there"}],
            "stop_reason": "end_turn",
            "usage": {"input_tokens": 12, "output_tokens": 8, "cache_read_input_tokens": 4},
        }
        parsed = ClaudeProvider(ProviderConfig()).parse_response(data)
        assert parsed.content == "Hello there"
        assert parsed.usage.total_tokens == 20
        assert parsed.usage.cached_tokens == 4
        assert parsed.meta["stop_reason"] == "end_turn"

    def test_claude_malformed(self):
        with pytest.raises(ProviderRequestError) as info:
            ClaudeProvider(ProviderConfig()).parse_response({"usage": {}})
        assert info.value.kind == ErrorKind.MALFORMED_RESPONSE

    def test_gemini(self):
        data = {
            "candidates": [{"content": {"parts": [{"text": "Bonjour"}, {"text": "!"}]}, "finishReason": "STOP"}],
            "usageMetadata": {
                "promptTokenCount": 5,
                "candidatesTokenCount": 2,
                "totalTokenCount": 9,
                "cachedContentTokenCount": 1,
                "thoughtsTokenCount": 2,
            },
        }
        parsed = GeminiProvider(ProviderConfig()).parse_response(data)
        assert parsed.content == "Bonjour!"
        assert parsed.usage.input_tokens == 5
        assert parsed.usage.output_tokens == 2
        assert parsed.usage.total_tokens == 9
        assert parsed.usage.cached_tokens == 1
        assert parsed.usage.reasoning_tokens == 2
        assert parsed.meta["finish_reason"] == "STOP"

    def test_gemini_malformed(self):
        with pytest.raises(ProviderRequestError) as info:
            GeminiProvider(ProviderConfig()).parse_response({"candidates": []})
        assert info.value.kind == ErrorKind.MALFORMED_RESPONSE


# ==========================================================================
# Sending (mocked HTTP)
# ==========================================================================


class TestSend:
    @pytest.mark.asyncio
    async def test_success(self):
        provider = OpenAIProvider(ProviderConfig(api_key="sk-test"))
        with patch("genai_gateway.gateway.providers.httpx.AsyncClient") as mock_client_cls:
            mock_client = _patched_client(mock_client_cls, return_value=_make_httpx_response(200, openai_payload()))
            data = await provider.send(_config(), timeout=12.0)

        assert data["choices"][0]["message"]["content"] == "Hello world"
        assert mock_client_cls.call_args.kwargs["timeout"] == 12.0
        call = mock_client.post.call_args
        assert call.args[0] == "https://api.openai.com/v1/chat/completions"
        assert call.kwargs["json"]["model"] == "gpt-4.1-mini"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,kind",
        [
            (429, ErrorKind.RATE_LIMITED),
            (500, ErrorKind.SERVER_ERROR),
            (503, ErrorKind.SERVER_ERROR),
            (400, ErrorKind.CLIENT_ERROR),
            (401, ErrorKind.CLIENT_ERROR),
        ],
    )
    async def test_status_classification(self, status, kind):
        provider = OpenAIProvider(ProviderConfig(api_key="sk-test"))
        with patch("genai_gateway.gateway.providers.httpx.AsyncClient") as mock_client_cls:
            _patched_client(mock_client_cls, return_value=_make_httpx_response(status, text="upstream says no"))
            with pytest.raises(ProviderRequestError) as info:
                await provider.send(_config())

        assert info.value.kind == kind
        assert info.value.status_code == status
        assert info.value.body == "upstream says no"

    @pytest.mark.asyncio
    async def test_408_is_timeout(self):
        provider = ClaudeProvider(ProviderConfig(api_key="k"))
        with patch("genai_gateway.gateway.providers.httpx.AsyncClient") as mock_client_cls:
            _patched_client(mock_client_cls, return_value=_make_httpx_response(408, text="slow"))
            with pytest.raises(RequestTimeoutError) as info:
                await provider.send(_config(provider="claude"))
        assert info.value.status_code == 408

    @pytest.mark.asyncio
    async def test_timeout_exception(self):
        provider = GeminiProvider(ProviderConfig(api_key="k"))
        with patch("genai_gateway.gateway.providers.httpx.AsyncClient") as mock_client_cls:
            _patched_client(mock_client_cls, side_effect=httpx.ReadTimeout("timeout"))
            with pytest.raises(RequestTimeoutError) as info:
                await provider.send(_config(provider="gemini"), timeout=5.0)
        assert info.value.kind == ErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_connection_error(self):
        provider = OpenAIProvider(ProviderConfig(api_key="k"))
        with patch("genai_gateway.gateway.providers.httpx.AsyncClient") as mock_client_cls:
            _patched_client(mock_client_cls, side_effect=httpx.ConnectError("refused"))
            with pytest.raises(ProviderRequestError) as info:
                await provider.send(_config())
        assert info.value.kind == ErrorKind.CONNECTION

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        provider = OpenAIProvider(ProviderConfig(api_key="k"))
        with patch("genai_gateway.gateway.providers.httpx.AsyncClient") as mock_client_cls:
            _patched_client(mock_client_cls, return_value=_make_httpx_response(200, text="<html>oops</html>"))
            with pytest.raises(ProviderRequestError) as info:
                await provider.send(_config())
        assert info.value.kind == ErrorKind.MALFORMED_RESPONSE

    @pytest.mark.asyncio
    async def test_gemini_over_mock_transport(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "hi"}]}}]})

        provider = GeminiProvider(ProviderConfig(api_key="g-key"))
        data = await provider.send(
            _config(provider="gemini", model="gemini-2.5-flash", temperature=0.2),
            transport=httpx.MockTransport(handler),
        )

        assert data["candidates"][0]["content"]["parts"][0]["text"] == "hi"
        request = seen[0]
        assert request.url.path == "/v1beta/models/gemini-2.5-flash:generateContent"
        assert request.url.params["key"] == "g-key"
        assert json.loads(request.content)["generationConfig"] == {"temperature": 0.2}

    @pytest.mark.asyncio
    async def test_mock_provider_never_calls_network(self):
        provider = MockProvider(ProviderConfig())
        with patch("genai_gateway.gateway.providers.httpx.AsyncClient") as mock_client_cls:
            data = await provider.send(_config(provider="mock", prompt="abcdefgh", system_prompt="sys"))
        mock_client_cls.assert_not_called()
        parsed = provider.parse_response(data)
        assert parsed.content == "Mock response to: abcdefgh (System: sys)"
        assert parsed.usage.input_tokens == 2
        assert parsed.usage.output_tokens == 20


# ==========================================================================
# Registry, config sources, dispatcher
# ==========================================================================


class TestRegistry:
    def test_registry_contents(self):
        assert set(PROVIDER_REGISTRY) == {"openai", "grok", "claude", "gemini", "mock"}

    def test_get_provider(self):
        assert isinstance(get_provider("claude", ProviderConfig(api_key="k")), ClaudeProvider)

    def test_unknown_provider(self):
        with pytest.raises(UnsupportedProvider):
            get_provider("nonexistent", ProviderConfig())


class TestConfigSources:
    def test_static_source(self):
        source = StaticProviderConfigSource({"openai": ProviderConfig(api_key="k")})
        assert source.get("openai").api_key == "k"
        assert source.get("mock") == ProviderConfig()
        with pytest.raises(ProviderConfigMissing):
            source.get("claude")

    def test_settings_source(self, test_settings):
        source = SettingsProviderConfigSource(test_settings)
        config = source.get("claude")
        assert config.api_key == "claude-test"
        assert config.base_url == "https://api.anthropic.com/v1"

    def test_settings_source_missing_key(self, test_settings):
        source = SettingsProviderConfigSource(test_settings.model_copy(update={"grok_api_key": ""}))
        with pytest.raises(ProviderConfigMissing):
            source.get("grok")


class TestDispatcher:
    def test_timeout_from_options(self):
        dispatcher = ProviderDispatcher(StaticProviderConfigSource({}), default_timeout=30.0)
        assert dispatcher.timeout_for(_config(timeout=5)) == 5.0
        assert dispatcher.timeout_for(_config()) == 30.0

    def test_unknown_provider_before_config_lookup(self):
        dispatcher = ProviderDispatcher(StaticProviderConfigSource({}))
        with pytest.raises(UnsupportedProvider):
            dispatcher.provider_for("nonexistent")

    @pytest.mark.asyncio
    async def test_dispatch_and_parse(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json=openai_payload(text="yo")))
        dispatcher = ProviderDispatcher(
            StaticProviderConfigSource({"openai": ProviderConfig(api_key="k")}), transport=transport
        )
        config = _config()
        raw = await dispatcher.dispatch(config)
        assert dispatcher.parse(config, raw).content == "yo"
