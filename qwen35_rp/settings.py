from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Matches uvicorn's TRACE level; used for complete request body dumps.
COMPLETE_LOG_LEVEL = 5

LogLevelName = Literal["complete", "debug", "info", "warning", "error"]


class Settings(BaseSettings):
    listen: str = "0.0.0.0"
    port: int = 9000
    target: str = "http://127.0.0.1:8000"
    log_level: LogLevelName = "info"
    served_model_name: str = ""
    thinking_general_model: str = ""
    thinking_coding_model: str = ""
    instruct_general_model: str = ""
    instruct_reasoning_model: str = ""
    enforce_sampling_params: bool = False
    fix_reasoning_content: bool = True
    stream_buffer_watermark_bytes: int = 8192
    profiles_path: str | None = None
    backend_connect_timeout_seconds: float = 5.0
    backend_read_timeout_seconds: float | None = None
    backend_write_timeout_seconds: float = 30.0
    backend_pool_timeout_seconds: float = 5.0
    stop_timeout_seconds: float = 180.0
    status_interval_seconds: float = 60.0

    model_config = SettingsConfigDict(
        env_prefix="QWEN35RP_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            normalized = value.strip().lower()
            return "warning" if normalized == "warn" else normalized
        return value

    @field_validator("listen", "target", "served_model_name")
    @classmethod
    def _require_non_empty(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("must not be empty")
        return normalized

    @field_validator(
        "thinking_general_model",
        "thinking_coding_model",
        "instruct_general_model",
        "instruct_reasoning_model",
    )
    @classmethod
    def _strip_model_name(cls, value: str) -> str:
        return value.strip()

    @field_validator("port")
    @classmethod
    def _validate_port(cls, value: int) -> int:
        if value <= 1024 or value > 65535:
            raise ValueError("port must be an integer between 1025 and 65535")
        return value

    @field_validator("stream_buffer_watermark_bytes")
    @classmethod
    def _validate_watermark(cls, value: int) -> int:
        if value < 1024:
            raise ValueError("stream buffer watermark must be at least 1024 bytes")
        return value

    @model_validator(mode="after")
    def _validate_virtual_models(self) -> Settings:
        names = [name for name in self.virtual_model_names.values() if name]
        if not names:
            raise ValueError("at least one virtual model name must be configured")
        if len(set(names)) != len(names):
            raise ValueError("virtual model names must be unique")
        if self.served_model_name in names:
            raise ValueError("virtual model names must differ from the served model name")
        return self

    @property
    def virtual_model_names(self) -> dict[str, str]:
        return {
            "thinking_general": self.thinking_general_model,
            "thinking_coding": self.thinking_coding_model,
            "instruct_general": self.instruct_general_model,
            "instruct_reasoning": self.instruct_reasoning_model,
        }

    @property
    def numeric_log_level(self) -> int:
        if self.log_level == "complete":
            return COMPLETE_LOG_LEVEL
        return int(logging.getLevelName(self.log_level.upper()))


@lru_cache
def get_settings() -> Settings:
    return Settings()
