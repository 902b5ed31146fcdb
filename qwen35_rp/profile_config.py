from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field


class SamplingOverrides(BaseModel):
    model_config = ConfigDict(extra="forbid")

    temperature: float | None = Field(default=None, ge=0.0)
    top_p: float | None = Field(default=None, gt=0.0, le=1.0)
    top_k: int | None = None
    min_p: float | None = Field(default=None, ge=0.0, le=1.0)
    presence_penalty: float | None = None
    repetition_penalty: float | None = Field(default=None, gt=0.0)

    def as_overrides(self) -> dict[str, float | int]:
        return self.model_dump(exclude_none=True)


class ProfileOverridesConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    thinking_general: SamplingOverrides = Field(default_factory=SamplingOverrides)
    thinking_coding: SamplingOverrides = Field(default_factory=SamplingOverrides)
    instruct_general: SamplingOverrides = Field(default_factory=SamplingOverrides)
    instruct_reasoning: SamplingOverrides = Field(default_factory=SamplingOverrides)

    def by_kind(self) -> dict[str, dict[str, float | int]]:
        return {
            "thinking_general": self.thinking_general.as_overrides(),
            "thinking_coding": self.thinking_coding.as_overrides(),
            "instruct_general": self.instruct_general.as_overrides(),
            "instruct_reasoning": self.instruct_reasoning.as_overrides(),
        }


def load_yaml_dict(path: str | Path) -> dict[str, Any]:
    resolved = Path(path)
    with resolved.open("r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}
    if isinstance(payload, dict):
        return payload
    raise ValueError(f"Expected YAML object in '{resolved}'.")


def load_profile_overrides(path: str | Path | None) -> dict[str, dict[str, float | int]]:
    if not path:
        return {}
    return ProfileOverridesConfig.model_validate(load_yaml_dict(path)).by_kind()
