"""Response Normalizer — builds NormalizedResponses.

All three outcomes of a pipeline call go through here so the response
guarantees hold in one place:
  - success: content + usage + cost from a parsed provider reply
  - cached: a stored cache entry replayed with ``cached=True``
  - error: empty content, zero cost, error text and kind set
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any

from genai_gateway.gateway.errors import GatewayError, ProviderRequestError, RetriesExhausted
from genai_gateway.gateway.providers import ParsedResponse
from genai_gateway.gateway.types import ErrorKind, NormalizedResponse, Usage

logger = logging.getLogger(__name__)


def build_success(
    parsed: ParsedResponse,
    cost: Decimal,
    provider: str,
    model: str,
    response_time_ms: int,
    meta: dict[str, Any] | None = None,
) -> NormalizedResponse:
    merged = {k: v for k, v in parsed.meta.items() if v is not None}
    merged.update(meta or {})
    return NormalizedResponse(
        content=parsed.content,
        usage=parsed.usage,
        cost=cost,
        meta=merged,
        cached=False,
        response_time_ms=response_time_ms,
        provider=provider,
        model=model,
    )


def build_cached(
    entry: dict[str, Any],
    provider: str,
    model: str,
    response_time_ms: int,
) -> NormalizedResponse:
    """Replay a cache entry; the stored cost is reported unchanged."""
    try:
        cost = Decimal(str(entry.get("cost", "0")))
    except (InvalidOperation, ValueError):
        logger.warning("Cache entry for %s/%s has an unreadable cost; reporting 0", provider, model)
        cost = Decimal("0")
    return NormalizedResponse(
        content=entry.get("content", ""),
        usage=Usage.from_dict(entry.get("usage")),
        cost=cost,
        meta=dict(entry.get("meta") or {}),
        cached=True,
        response_time_ms=response_time_ms,
        provider=provider,
        model=model,
    )


def build_error(
    error: BaseException,
    provider: str,
    model: str,
    response_time_ms: int,
    meta: dict[str, Any] | None = None,
) -> NormalizedResponse:
    if not isinstance(error, GatewayError):
        error = GatewayError(f"{type(error).__name__}: {error}", kind=ErrorKind.UNKNOWN)

    details: dict[str, Any] = dict(meta or {})
    if isinstance(error, RetriesExhausted):
        details["attempts"] = error.attempts
        details["last_error_kind"] = error.last_error.kind.value
        if isinstance(error.last_error, ProviderRequestError) and error.last_error.status_code:
            details["status_code"] = error.last_error.status_code
    elif isinstance(error, ProviderRequestError) and error.status_code:
        details["status_code"] = error.status_code

    return NormalizedResponse(
        content="",
        cost=Decimal("0"),
        meta=details,
        response_time_ms=response_time_ms,
        error=error.message,
        error_kind=error.kind,
        provider=provider,
        model=model,
        exception=error,
    )


def to_cache_entry(response: NormalizedResponse) -> dict[str, Any]:
    return {
        "content": response.content,
        "usage": response.usage.to_dict(),
        "cost": str(response.cost),
        "meta": response.meta,
    }
