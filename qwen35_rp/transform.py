from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from qwen35_rp.errors import MalformedBodyError, UnknownModelError
from qwen35_rp.metrics import RequestCounters
from qwen35_rp.registry import ModelRegistry, VirtualModel
from qwen35_rp.settings import COMPLETE_LOG_LEVEL

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True, slots=True)
class TransformedRequest:
    body: bytes
    virtual_model: VirtualModel
    stream: bool


def dump_json(payload: Any) -> bytes:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode(
        "utf-8"
    )


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def apply_sampling_params(
    payload: dict[str, Any],
    virtual_model: VirtualModel,
    *,
    enforce: bool,
    request_id: str | None = None,
) -> None:
    for key, default_value in virtual_model.profile.as_dict().items():
        current = payload.get(key)
        if current is None:
            payload[key] = default_value
            continue
        if enforce:
            if current != default_value:
                logger.debug(
                    "sampling_param_enforced request_id=%s key=%s client_value=%s value=%s",
                    request_id,
                    key,
                    current,
                    default_value,
                )
            payload[key] = default_value
            continue
        if not _is_number(current):
            raise MalformedBodyError(f"Sampling parameter '{key}' must be a number.")
        logger.debug(
            "sampling_param_kept request_id=%s key=%s value=%s default_value=%s",
            request_id,
            key,
            current,
            default_value,
        )


def apply_thinking_flag(payload: dict[str, Any], thinking: bool) -> None:
    kwargs = payload.get("chat_template_kwargs")
    if kwargs is None:
        payload["chat_template_kwargs"] = {"enable_thinking": thinking}
        return
    if not isinstance(kwargs, dict):
        raise MalformedBodyError("chat_template_kwargs must be a JSON object.")
    kwargs["enable_thinking"] = thinking


class RequestTransformer:
    def __init__(
        self,
        *,
        registry: ModelRegistry,
        served_model_name: str,
        counters: RequestCounters,
        enforce_sampling_params: bool = False,
    ) -> None:
        self._registry = registry
        self._served_model_name = served_model_name
        self._counters = counters
        self._enforce_sampling_params = enforce_sampling_params

    def parse(self, raw_body: bytes) -> dict[str, Any]:
        try:
            payload = json.loads(raw_body)
        except (ValueError, RecursionError) as exc:
            raise MalformedBodyError(f"Request body is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise MalformedBodyError("Request body must be a JSON object.")
        return payload

    def resolve(self, payload: dict[str, Any]) -> VirtualModel:
        requested_model = payload.get("model")
        if not isinstance(requested_model, str):
            raise UnknownModelError(
                "Request body has a missing or non-string model.",
                requested_model=requested_model,
            )
        virtual_model = self._registry.lookup(requested_model)
        if virtual_model is None:
            raise UnknownModelError(
                f"Model '{requested_model}' is not served by this proxy.",
                requested_model=requested_model,
            )
        return virtual_model

    def transform(
        self, raw_body: bytes, request_id: str | None = None
    ) -> TransformedRequest:
        payload = self.parse(raw_body)
        virtual_model = self.resolve(payload)
        stream = payload.get("stream")
        logger.info(
            "model_matched request_id=%s type=%s virtual_model=%s thinking=%s",
            request_id,
            virtual_model.kind,
            virtual_model.name,
            virtual_model.thinking,
        )

        apply_sampling_params(
            payload,
            virtual_model,
            enforce=self._enforce_sampling_params,
            request_id=request_id,
        )
        apply_thinking_flag(payload, virtual_model.thinking)
        payload["model"] = self._served_model_name

        body = dump_json(payload)
        logger.log(
            COMPLETE_LOG_LEVEL,
            "request_rewritten request_id=%s body=%s",
            request_id,
            body.decode("utf-8"),
        )
        self._counters.record_modified()
        return TransformedRequest(
            body=body,
            virtual_model=virtual_model,
            stream=stream if isinstance(stream, bool) else False,
        )
