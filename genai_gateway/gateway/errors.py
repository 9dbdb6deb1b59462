"""Gateway error hierarchy.

Every failure the pipeline can produce is a ``GatewayError`` carrying an
``ErrorKind``; the retry controller decides on the kind alone.
"""

from __future__ import annotations

from genai_gateway.gateway.types import ErrorKind


class GatewayError(Exception):
    """Base class for all gateway failures."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.UNKNOWN):
        super().__init__(message)
        self.message = message
        self.kind = kind


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigurationError(GatewayError):
    """Request cannot be resolved into a runnable configuration. Never retried."""

    def __init__(self, message: str):
        super().__init__(message, kind=ErrorKind.CONFIGURATION)


class PresetNotFound(ConfigurationError):
    def __init__(self, name: str):
        super().__init__(f"Preset not found: {name}")
        self.name = name


class ProviderConfigMissing(ConfigurationError):
    def __init__(self, provider: str):
        super().__init__(f"No configuration for provider: {provider}")
        self.provider = provider


class UnsupportedProvider(ConfigurationError):
    def __init__(self, provider: str):
        super().__init__(f"Unsupported provider: {provider}")
        self.provider = provider


# ---------------------------------------------------------------------------
# Admission
# ---------------------------------------------------------------------------


class RateLimitExceeded(GatewayError):
    """Local admission denied the call before it reached the provider."""

    def __init__(self, provider: str, model: str, dimensions: list[str] | None = None):
        dims = ", ".join(dimensions or []) or "unknown"
        super().__init__(
            f"Rate limit exceeded for {provider}/{model} ({dims})",
            kind=ErrorKind.RATE_LIMITED,
        )
        self.provider = provider
        self.model = model
        self.dimensions = dimensions or []


# ---------------------------------------------------------------------------
# Upstream
# ---------------------------------------------------------------------------


class ProviderRequestError(GatewayError):
    """Upstream call failed: bad status, transport error or unreadable body."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        status_code: int = 0,
        body: str = "",
    ):
        super().__init__(message, kind=kind)
        self.status_code = status_code
        self.body = body


class RequestTimeoutError(ProviderRequestError):
    def __init__(self, message: str, status_code: int = 0, body: str = ""):
        super().__init__(message, kind=ErrorKind.TIMEOUT, status_code=status_code, body=body)


class RetriesExhausted(GatewayError):
    """All attempts failed with retryable errors."""

    def __init__(self, attempts: int, last_error: GatewayError):
        super().__init__(
            f"Gave up after {attempts} attempts: {last_error.message}",
            kind=ErrorKind.RETRIES_EXHAUSTED,
        )
        self.attempts = attempts
        self.last_error = last_error


def error_kind_for_status(status_code: int) -> ErrorKind:
    """Map an upstream HTTP status to an error kind."""
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code == 408:
        return ErrorKind.TIMEOUT
    if status_code >= 500:
        return ErrorKind.SERVER_ERROR
    if status_code >= 400:
        return ErrorKind.CLIENT_ERROR
    return ErrorKind.UNKNOWN
