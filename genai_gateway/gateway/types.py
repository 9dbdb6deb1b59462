"""Core types and DTOs for the GenAI request pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from genai_gateway.gateway.errors import GatewayError


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ErrorKind(str, Enum):
    """Classification of a failed call, used by the retry allow-list."""

    CONFIGURATION = "configuration"
    RATE_LIMITED = "rate_limited"  # local admission denial or upstream 429
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    SERVER_ERROR = "server_error"  # upstream 5xx
    CLIENT_ERROR = "client_error"  # upstream 4xx other than 408/429
    MALFORMED_RESPONSE = "malformed_response"
    RETRIES_EXHAUSTED = "retries_exhausted"
    UNKNOWN = "unknown"


class LimitDimension(str, Enum):
    """Rate limit dimensions, each with its own window."""

    REQUESTS = "requests"  # per minute
    TOKENS = "tokens"  # per minute
    DAILY = "daily"  # requests per calendar day


# ---------------------------------------------------------------------------
# Request side
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RequestSpec:
    """A caller's generation request, before any preset or default is applied."""

    prompt: str
    system_prompt: str | None = None
    provider: str | None = None
    model: str | None = None
    options: dict[str, Any] = field(default_factory=dict)
    vars: dict[str, str] = field(default_factory=dict)
    stream: bool = False
    preset: str = "default"


@dataclass(frozen=True)
class Preset:
    """Named bundle of provider/model/system prompt/options."""

    name: str
    provider: str = ""
    model: str = ""
    system_prompt: str | None = None
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ResolvedConfig:
    """Fully merged request; nothing downstream needs another lookup."""

    provider: str
    model: str
    prompt: str
    system_prompt: str | None = None
    options: dict[str, Any] = field(default_factory=dict)
    vars: dict[str, str] = field(default_factory=dict)
    stream: bool = False


@dataclass(frozen=True)
class ProviderConfig:
    """Connection settings for one provider.

    ``headers`` and ``query_params`` are templates: ``{api_key}`` is replaced
    with the key when the wire request is built.
    """

    api_key: str = ""
    base_url: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    query_params: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff policy: delay(n) = initial_delay_ms * multiplier ** (n - 1)."""

    max_attempts: int = 3
    initial_delay_ms: int = 1000
    multiplier: float = 2.0
    retryable_kinds: frozenset[ErrorKind] = frozenset(
        {ErrorKind.RATE_LIMITED, ErrorKind.TIMEOUT, ErrorKind.CONNECTION, ErrorKind.SERVER_ERROR}
    )
    max_delay_ms: int | None = None
    jitter: float = 0.0

    def is_retryable(self, kind: ErrorKind) -> bool:
        return kind in self.retryable_kinds


# ---------------------------------------------------------------------------
# Response side
# ---------------------------------------------------------------------------


@dataclass
class Usage:
    """Token counts reported by (or inferred for) a provider call."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cached_tokens: int = 0
    reasoning_tokens: int = 0

    def __post_init__(self) -> None:
        for name in ("input_tokens", "output_tokens", "total_tokens", "cached_tokens", "reasoning_tokens"):
            value = int(getattr(self, name) or 0)
            setattr(self, name, max(value, 0))
        # Ensure total_tokens is consistent
        if self.total_tokens == 0 and (self.input_tokens or self.output_tokens):
            self.total_tokens = self.input_tokens + self.output_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "cached_tokens": self.cached_tokens,
            "reasoning_tokens": self.reasoning_tokens,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Usage:
        data = data or {}
        return cls(
            input_tokens=data.get("input_tokens", 0),
            output_tokens=data.get("output_tokens", 0),
            total_tokens=data.get("total_tokens", 0),
            cached_tokens=data.get("cached_tokens", 0),
            reasoning_tokens=data.get("reasoning_tokens", 0),
        )


@dataclass
class NormalizedResponse:
    """Unified result of one pipeline call, whichever provider answered.

    Failures are results too: ``error`` and ``error_kind`` are set, ``content``
    is empty and ``cost`` is zero.
    """

    content: str = ""
    usage: Usage = field(default_factory=Usage)
    cost: Decimal = Decimal("0")
    meta: dict[str, Any] = field(default_factory=dict)
    cached: bool = False
    response_time_ms: int = 0
    error: str | None = None
    error_kind: ErrorKind | None = None

    provider: str = ""
    model: str = ""

    # The typed failure behind ``error``; kept out of serialization
    exception: GatewayError | None = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.response_time_ms = max(int(self.response_time_ms), 0)
        if self.error is not None:
            self.content = ""
            self.cost = Decimal("0")
        elif self.cost < 0:
            self.cost = Decimal("0")

    @property
    def ok(self) -> bool:
        return self.error is None

    def raise_for_error(self) -> NormalizedResponse:
        """Raise the typed failure for an error response; return self otherwise."""
        if self.error is None:
            return self
        if self.exception is not None:
            raise self.exception
        from genai_gateway.gateway.errors import GatewayError

        raise GatewayError(self.error, kind=self.error_kind or ErrorKind.UNKNOWN)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict for logging/storage."""
        return {
            "content": self.content,
            "usage": self.usage.to_dict(),
            "cost": str(self.cost),
            "meta": self.meta,
            "cached": self.cached,
            "response_time_ms": self.response_time_ms,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "provider": self.provider,
            "model": self.model,
        }


@dataclass
class RateLimitDecision:
    """Outcome of an admission check. ``allowed`` is False if any dimension is over limit."""

    allowed: bool = True
    remaining: dict[LimitDimension, int | None] = field(default_factory=dict)
    current: dict[LimitDimension, int] = field(default_factory=dict)
    limits: dict[LimitDimension, int | None] = field(default_factory=dict)
    denied: list[LimitDimension] = field(default_factory=list)
    reset_at: float = 0.0  # epoch seconds when the minute window rolls over
