"""Config Resolver — request overrides + preset + process defaults → ResolvedConfig."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from genai_gateway.core.config import Settings, settings
from genai_gateway.gateway.errors import ConfigurationError
from genai_gateway.gateway.presets import PresetRepository
from genai_gateway.gateway.types import RequestSpec, ResolvedConfig

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


@dataclass(frozen=True)
class ModelFamilyRule:
    """Option rewrites for models whose name matches ``pattern``."""

    pattern: str
    renames: dict[str, str] = field(default_factory=dict)
    drops: frozenset[str] = frozenset()

    def matches(self, model: str) -> bool:
        return re.match(self.pattern, model) is not None

    def apply(self, options: dict[str, Any]) -> dict[str, Any]:
        out = dict(options)
        for old, new in self.renames.items():
            if old in out:
                value = out.pop(old)
                out.setdefault(new, value)
        for key in self.drops:
            out.pop(key, None)
        return out


# Reasoning models (o-series, GPT-5) reject sampling options and take max_completion_tokens
MODEL_FAMILY_RULES: tuple[ModelFamilyRule, ...] = (
    ModelFamilyRule(
        pattern=r"^(o1|o3|o4|gpt-5)(-.*)?$",
        renames={"max_tokens": "max_completion_tokens"},
        drops=frozenset({"temperature", "top_p"}),
    ),
)


def render(template: str | None, variables: dict[str, str]) -> str | None:
    """Replace ``{name}`` placeholders; unknown placeholders are left as-is."""
    if template is None or not variables:
        return template
    return _PLACEHOLDER.sub(lambda m: str(variables.get(m.group(1), m.group(0))), template)


class ConfigResolver:
    def __init__(
        self,
        presets: PresetRepository,
        cfg: Settings | None = None,
        extra_rules: tuple[ModelFamilyRule, ...] = (),
    ):
        cfg = cfg or settings
        self.presets = presets
        self.default_provider = cfg.default_provider
        self.default_model = cfg.default_model
        self.default_options = dict(cfg.default_options)
        self.rules = MODEL_FAMILY_RULES + tuple(extra_rules)

    def resolve(self, spec: RequestSpec) -> ResolvedConfig:
        """Merge ``defaults < preset < request``; raises ``ConfigurationError``."""
        preset = self.presets.get(spec.preset)

        provider = spec.provider or preset.provider or self.default_provider
        model = spec.model or preset.model or self.default_model
        if not provider or not model:
            raise ConfigurationError(f"Could not resolve provider/model for preset '{spec.preset}'")

        system_prompt = spec.system_prompt if spec.system_prompt is not None else preset.system_prompt
        options = {**self.default_options, **preset.options, **spec.options}
        options = self.adjust_options(model, options)

        return ResolvedConfig(
            provider=provider,
            model=model,
            prompt=render(spec.prompt, spec.vars) or "",
            system_prompt=render(system_prompt, spec.vars),
            options=options,
            vars=dict(spec.vars),
            stream=spec.stream,
        )

    def adjust_options(self, model: str, options: dict[str, Any]) -> dict[str, Any]:
        for rule in self.rules:
            if rule.matches(model):
                logger.debug("Applying model family rule %s to %s", rule.pattern, model)
                options = rule.apply(options)
        return options
