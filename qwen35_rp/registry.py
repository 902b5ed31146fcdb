from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import Any, Literal

VirtualModelKind = Literal[
    "thinking_general",
    "thinking_coding",
    "instruct_general",
    "instruct_reasoning",
]

SAMPLING_KEYS: tuple[str, ...] = (
    "temperature",
    "top_p",
    "top_k",
    "min_p",
    "presence_penalty",
    "repetition_penalty",
)


@dataclass(frozen=True, slots=True)
class SamplingProfile:
    temperature: float
    top_p: float
    top_k: int
    min_p: float
    presence_penalty: float
    repetition_penalty: float

    def as_dict(self) -> dict[str, float | int]:
        return {key: getattr(self, key) for key in SAMPLING_KEYS}

    def with_overrides(self, overrides: Mapping[str, float | int]) -> SamplingProfile:
        if not overrides:
            return self
        return replace(self, **dict(overrides))


# Thinking mode for general tasks
THINKING_GENERAL_PROFILE = SamplingProfile(
    temperature=1.0,
    top_p=0.95,
    top_k=20,
    min_p=0.0,
    presence_penalty=1.5,
    repetition_penalty=1.0,
)
# Thinking mode for precise coding tasks
THINKING_CODING_PROFILE = SamplingProfile(
    temperature=0.6,
    top_p=0.95,
    top_k=20,
    min_p=0.0,
    presence_penalty=0.0,
    repetition_penalty=1.0,
)
# Instant mode for general tasks
INSTRUCT_GENERAL_PROFILE = SamplingProfile(
    temperature=0.7,
    top_p=0.8,
    top_k=20,
    min_p=0.0,
    presence_penalty=1.5,
    repetition_penalty=1.0,
)
# Instant mode for reasoning tasks
INSTRUCT_REASONING_PROFILE = SamplingProfile(
    temperature=1.0,
    top_p=0.95,
    top_k=20,
    min_p=0.0,
    presence_penalty=1.5,
    repetition_penalty=1.0,
)

DEFAULT_PROFILES: Mapping[VirtualModelKind, tuple[SamplingProfile, bool]] = (
    MappingProxyType(
        {
            "thinking_general": (THINKING_GENERAL_PROFILE, True),
            "thinking_coding": (THINKING_CODING_PROFILE, True),
            "instruct_general": (INSTRUCT_GENERAL_PROFILE, False),
            "instruct_reasoning": (INSTRUCT_REASONING_PROFILE, False),
        }
    )
)


@dataclass(frozen=True, slots=True)
class VirtualModel:
    name: str
    kind: VirtualModelKind
    profile: SamplingProfile
    thinking: bool


class ModelRegistry:
    def __init__(self, models: list[VirtualModel]) -> None:
        by_name: dict[str, VirtualModel] = {}
        for model in models:
            if not model.name:
                raise ValueError(f"Virtual model of kind '{model.kind}' has no name.")
            if model.name in by_name:
                raise ValueError(f"Duplicate virtual model name '{model.name}'.")
            by_name[model.name] = model
        self._models: Mapping[str, VirtualModel] = MappingProxyType(by_name)

    def lookup(self, name: Any) -> VirtualModel | None:
        if not isinstance(name, str):
            return None
        return self._models.get(name)

    def names(self) -> tuple[str, ...]:
        return tuple(self._models)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name in self._models

    def __iter__(self) -> Iterator[VirtualModel]:
        return iter(self._models.values())

    def __len__(self) -> int:
        return len(self._models)


def build_registry(
    virtual_model_names: Mapping[str, str],
    overrides: Mapping[str, Mapping[str, float | int]] | None = None,
) -> ModelRegistry:
    overrides = overrides or {}
    models: list[VirtualModel] = []
    for kind, (profile, thinking) in DEFAULT_PROFILES.items():
        name = virtual_model_names.get(kind, "")
        if not name:
            continue
        models.append(
            VirtualModel(
                name=name,
                kind=kind,
                profile=profile.with_overrides(overrides.get(kind, {})),
                thinking=thinking,
            )
        )
    return ModelRegistry(models)
