from __future__ import annotations

import argparse
import logging
import os
from typing import Any

from pydantic import ValidationError

from qwen35_rp import __version__
from qwen35_rp.settings import Settings, get_settings

ENV_PREFIX = "QWEN35RP_"

# argparse destination -> Settings field
FLAG_FIELDS = {
    "listen": "listen",
    "port": "port",
    "target": "target",
    "loglevel": "log_level",
    "served_model": "served_model_name",
    "thinking_general": "thinking_general_model",
    "thinking_coding": "thinking_coding_model",
    "instruct_general": "instruct_general_model",
    "instruct_reasoning": "instruct_reasoning_model",
    "enforce_sampling_params": "enforce_sampling_params",
    "profiles": "profiles_path",
}

logger = logging.getLogger("qwen35_rp.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="qwen35-rp",
        description=(
            "Reverse proxy in front of a vLLM server exposing Qwen3.5 sampling "
            "profiles as virtual models."
        ),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--listen", default=None, help="Interface to listen on.")
    parser.add_argument("--port", type=int, default=None, help="Port to listen on.")
    parser.add_argument("--target", default=None, help="Backend vLLM base URL.")
    parser.add_argument(
        "--loglevel",
        default=None,
        choices=["complete", "debug", "info", "warn", "warning", "error"],
    )
    parser.add_argument(
        "--served-model", default=None, help="Model name served by the backend."
    )
    parser.add_argument("--thinking-general", default=None)
    parser.add_argument("--thinking-coding", default=None)
    parser.add_argument("--instruct-general", default=None)
    parser.add_argument("--instruct-reasoning", default=None)
    parser.add_argument(
        "--enforce-sampling-params",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Overwrite client sampling parameters with the profile values.",
    )
    parser.add_argument(
        "--profiles", default=None, help="YAML file with sampling profile overrides."
    )
    return parser


def flag_overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for dest, field in FLAG_FIELDS.items():
        value = getattr(args, dest, None)
        if value is not None:
            overrides[field] = value
    return overrides


def export_overrides(overrides: dict[str, Any]) -> None:
    for field, value in overrides.items():
        if isinstance(value, bool):
            value = "true" if value else "false"
        os.environ[f"{ENV_PREFIX}{field.upper()}"] = str(value)


def load_settings(args: argparse.Namespace) -> Settings:
    overrides = flag_overrides(args)
    settings = Settings(**overrides)
    # The app reads its settings through get_settings(); flags take precedence
    # over any value already present in the environment.
    export_overrides(overrides)
    get_settings.cache_clear()
    return settings


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s"
    )

    try:
        settings = load_settings(args)
    except ValidationError as exc:
        for error in exc.errors():
            location = ".".join(str(part) for part in error["loc"]) or "settings"
            logger.error("invalid_configuration field=%s error=%s", location, error["msg"])
        return 1

    import uvicorn

    from qwen35_rp.main import app

    uvicorn.run(
        app,
        host=settings.listen,
        port=settings.port,
        log_level=settings.numeric_log_level,
        timeout_graceful_shutdown=int(settings.stop_timeout_seconds),
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
