"""Preset repositories.

A preset is a named bundle of provider, model, system prompt and options.
``YamlPresetRepository`` reads one ``<name>.yaml`` file per preset::

    provider: claude
    model: claude-sonnet-4-20250514
    system_prompt: You are a careful data analyst.
    options:
      temperature: 0.4
      max_tokens: 3000

Fields left out fall back to the process defaults at resolution time.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Protocol

import yaml
from pydantic import BaseModel, Field

from genai_gateway.gateway.errors import PresetNotFound
from genai_gateway.gateway.types import Preset

logger = logging.getLogger(__name__)

DEFAULT_PRESET = "default"


class PresetRepository(Protocol):
    def get(self, name: str) -> Preset: ...


class PresetFile(BaseModel):
    """Schema of one preset YAML file."""

    provider: str = ""
    model: str = ""
    system_prompt: str | None = None
    options: dict[str, Any] = Field(default_factory=dict)

    def to_preset(self, name: str) -> Preset:
        return Preset(
            name=name,
            provider=self.provider,
            model=self.model,
            system_prompt=self.system_prompt,
            options=dict(self.options),
        )


class InMemoryPresetRepository:
    def __init__(self, presets: list[Preset] | dict[str, Preset] | None = None):
        if isinstance(presets, dict):
            self._presets = dict(presets)
        else:
            self._presets = {p.name: p for p in presets or []}
        self._presets.setdefault(DEFAULT_PRESET, Preset(name=DEFAULT_PRESET))

    def get(self, name: str) -> Preset:
        try:
            return self._presets[name]
        except KeyError:
            raise PresetNotFound(name) from None

    def add(self, preset: Preset) -> None:
        self._presets[preset.name] = preset

    def names(self) -> list[str]:
        return sorted(self._presets)


class YamlPresetRepository:
    """Loads ``*.yaml`` presets from a directory on first use."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._presets: dict[str, Preset] | None = None

    def warm(self) -> None:
        presets: dict[str, Preset] = {}
        if self.path.is_dir():
            for file in sorted(self.path.glob("*.yaml")):
                with open(file, encoding="utf-8") as f:
                    data = yaml.safe_load(f) or {}
                presets[file.stem] = PresetFile.model_validate(data).to_preset(file.stem)
        else:
            logger.warning("Preset directory %s not found; only the default preset is available", self.path)

        presets.setdefault(DEFAULT_PRESET, Preset(name=DEFAULT_PRESET))
        self._presets = presets
        logger.info("Loaded %d presets from %s", len(presets), self.path)

    def flush(self) -> None:
        self._presets = None

    def get(self, name: str) -> Preset:
        if self._presets is None:
            self.warm()
        try:
            return self._presets[name]
        except KeyError:
            raise PresetNotFound(name) from None

    def names(self) -> list[str]:
        if self._presets is None:
            self.warm()
        return sorted(self._presets)
