"""Model pricing catalogue.

Loaded from a YAML file shaped as::

    openai:
      gpt-4.1-mini:
        type: text
        pricing: {input: 0.40, output: 1.60, cached_input: 0.10}
        features: [chat, vision]
      dall-e-3:
        type: image
        pricing:
          standard: {1024x1024: 0.04, 1024x1792: 0.08}
          hd: {1024x1024: 0.08}

Text rates are USD per 1M tokens; image prices are USD per image.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class PricingEntry(BaseModel):
    model: str
    provider: str
    type: Literal["text", "image"] = "text"

    # Text rates, USD per 1M tokens
    input: Decimal = Decimal("0")
    output: Decimal = Decimal("0")
    cached_input: Decimal | None = None
    reasoning: Decimal | None = None

    # Image prices, USD per image: {quality: {size: price}}
    images: dict[str, dict[str, Decimal]] = Field(default_factory=dict)

    features: list[str] = Field(default_factory=list)

    @classmethod
    def from_catalogue(cls, provider: str, model: str, data: dict[str, Any]) -> PricingEntry:
        kind = data.get("type", "text")
        pricing = data.get("pricing") or {}
        fields: dict[str, Any] = {
            "model": model,
            "provider": provider,
            "type": kind,
            "features": data.get("features") or [],
        }
        # YAML numbers arrive as floats; go through str so 0.4 stays 0.4
        if kind == "image":
            fields["images"] = {
                quality: {size: Decimal(str(price)) for size, price in (sizes or {}).items()}
                for quality, sizes in pricing.items()
            }
        else:
            fields.update(
                {
                    k: Decimal(str(v))
                    for k, v in pricing.items()
                    if k in ("input", "output", "cached_input", "reasoning") and v is not None
                }
            )
        return cls.model_validate(fields)


class PricingTable:
    """Model name → ``PricingEntry`` lookup."""

    def __init__(self, entries: list[PricingEntry] | None = None):
        self._entries: dict[str, PricingEntry] = {e.model: e for e in entries or []}

    def get(self, model: str) -> PricingEntry | None:
        return self._entries.get(model)

    def add(self, entry: PricingEntry) -> None:
        self._entries[entry.model] = entry

    def models(self) -> list[str]:
        return list(self._entries)

    def provider_models(self, provider: str) -> list[PricingEntry]:
        return [e for e in self._entries.values() if e.provider == provider]

    def models_with_feature(self, feature: str) -> list[PricingEntry]:
        return [e for e in self._entries.values() if feature in e.features]

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, model: str) -> bool:
        return model in self._entries

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PricingTable:
        entries = []
        for provider, models in (data or {}).items():
            for model, spec in (models or {}).items():
                entries.append(PricingEntry.from_catalogue(provider, model, spec or {}))
        return cls(entries)

    @classmethod
    def from_yaml(cls, path: str | Path) -> PricingTable:
        """Load the catalogue; a missing file yields an empty table."""
        path = Path(path)
        if not path.exists():
            logger.warning("Pricing catalogue %s not found; all costs will be 0", path)
            return cls()
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        table = cls.from_dict(data)
        logger.info("Loaded pricing for %d models from %s", len(table), path)
        return table
