"""Request logger collaborator.

The gateway hands every finished call (success, cache hit or failure) to a
``RequestLogger`` exactly once. Persistent storage is left to other
implementations; the default writes one structured log line.
"""

from __future__ import annotations

import logging
from typing import Protocol

from genai_gateway.gateway.types import NormalizedResponse, RequestSpec

logger = logging.getLogger(__name__)


class RequestLogger(Protocol):
    async def log_request(
        self,
        spec: RequestSpec,
        response: NormalizedResponse,
        provider: str,
        model: str,
        duration_ms: int,
        error: str | None,
        caller_id: str | None = None,
    ) -> None: ...


class LoggingRequestLogger:
    """Writes one log line per call through stdlib logging."""

    def __init__(self, log: logging.Logger | None = None):
        self._log = log or logger

    async def log_request(
        self,
        spec: RequestSpec,
        response: NormalizedResponse,
        provider: str,
        model: str,
        duration_ms: int,
        error: str | None,
        caller_id: str | None = None,
    ) -> None:
        extra = {
            "provider": provider,
            "model": model,
            "caller_id": caller_id or "anonymous",
            "duration_ms": duration_ms,
            "cost": str(response.cost),
            "cached": response.cached,
            "error_kind": response.error_kind.value if response.error_kind else None,
        }
        if error:
            self._log.warning(
                "GenAI request failed: %s/%s preset=%s in %dms: %s",
                provider,
                model,
                spec.preset,
                duration_ms,
                error,
                extra=extra,
            )
            return
        self._log.info(
            "GenAI request: %s/%s preset=%s tokens=%d cost=%s cached=%s in %dms",
            provider,
            model,
            spec.preset,
            response.usage.total_tokens,
            response.cost,
            response.cached,
            duration_ms,
            extra=extra,
        )
