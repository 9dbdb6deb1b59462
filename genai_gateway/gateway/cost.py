"""Cost Calculator — usage + pricing → cost in the display currency."""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from genai_gateway.core.config import Settings, settings
from genai_gateway.gateway.pricing import PricingTable
from genai_gateway.gateway.types import Usage

logger = logging.getLogger(__name__)

_PER_MILLION = Decimal(1_000_000)


class CostCalculator:
    """Prices a call from its ``Usage``.

    Text: each token class × its per-1M rate (cached and reasoning tokens only
    when the model prices them). Image: per-image price × count. The USD sum is
    converted with ``exchange_rate`` and rounded half-up.
    """

    def __init__(
        self,
        pricing: PricingTable,
        exchange_rate: Decimal | None = None,
        decimal_places: int | None = None,
        currency: str | None = None,
        cfg: Settings | None = None,
    ):
        cfg = cfg or settings
        self.pricing = pricing
        self.exchange_rate = Decimal(str(exchange_rate if exchange_rate is not None else cfg.pricing_exchange_rate))
        self.decimal_places = cfg.pricing_decimal_places if decimal_places is None else decimal_places
        self.currency = currency or cfg.pricing_currency

    def calculate(self, model: str, usage: Usage, image_options: dict[str, Any] | None = None) -> Decimal:
        entry = self.pricing.get(model)
        if entry is None:
            logger.debug("No pricing for model %s; cost is 0", model)
            return self._quantize(Decimal("0"))

        cost = Decimal("0")
        if entry.type == "text":
            cost += Decimal(usage.input_tokens) / _PER_MILLION * entry.input
            cost += Decimal(usage.output_tokens) / _PER_MILLION * entry.output
            if usage.cached_tokens > 0 and entry.cached_input is not None:
                cost += Decimal(usage.cached_tokens) / _PER_MILLION * entry.cached_input
            if usage.reasoning_tokens > 0 and entry.reasoning is not None:
                cost += Decimal(usage.reasoning_tokens) / _PER_MILLION * entry.reasoning
        else:
            opts = image_options or {}
            quality = opts.get("quality", "standard")
            size = opts.get("size", "1024x1024")
            count = int(opts.get("n", 1))
            cost += entry.images.get(quality, {}).get(size, Decimal("0")) * count

        return self._quantize(cost * self.exchange_rate)

    def estimate_cost(self, model: str, input_tokens: int, output_tokens: int = 0) -> Decimal:
        return self.calculate(model, Usage(input_tokens=input_tokens, output_tokens=output_tokens))

    def _quantize(self, value: Decimal) -> Decimal:
        exp = Decimal(1).scaleb(-self.decimal_places)
        return max(value, Decimal("0")).quantize(exp, rounding=ROUND_HALF_UP)
