from __future__ import annotations

import json
import logging
from typing import Any

from qwen35_rp.transform import dump_json

logger = logging.getLogger("uvicorn.error")

REASONING_FIELDS: tuple[str, ...] = ("reasoning_content", "reasoning")


def _load_json_object(body: bytes) -> dict[str, Any] | None:
    try:
        parsed = json.loads(body)
    except (ValueError, RecursionError):
        return None
    if isinstance(parsed, dict):
        return parsed
    return None


def _choice_message(choice: Any) -> dict[str, Any] | None:
    if not isinstance(choice, dict):
        return None
    for field in ("message", "delta"):
        message = choice.get(field)
        if isinstance(message, dict):
            return message
    return None


def move_reasoning_to_content(
    payload: dict[str, Any], request_id: str | None = None
) -> bool:
    """Repair completions whose answer landed in a reasoning field.

    vLLM can place a non-thinking answer in ``reasoning_content`` or
    ``reasoning`` and leave ``content`` empty. The text is moved into
    ``content`` (``reasoning_content`` first) and both reasoning fields are
    removed. Returns whether any choice changed.
    """
    choices = payload.get("choices")
    if not isinstance(choices, list):
        return False

    modified = False
    for index, choice in enumerate(choices):
        message = _choice_message(choice)
        if message is None:
            continue
        content = message.get("content")
        if content is not None and content != "":
            continue
        for source_field in REASONING_FIELDS:
            text = message.get(source_field)
            if isinstance(text, str) and text:
                break
        else:
            continue
        message["content"] = text
        for field in REASONING_FIELDS:
            message.pop(field, None)
        modified = True
        logger.info(
            "response_content_fixed request_id=%s source_field=%s choice_index=%d",
            request_id,
            source_field,
            index,
        )
    return modified


def restore_model_name(payload: dict[str, Any], virtual_model_name: str) -> bool:
    if "model" not in payload or payload["model"] == virtual_model_name:
        return False
    payload["model"] = virtual_model_name
    return True


def rectify_response_body(
    body: bytes,
    *,
    virtual_model_name: str,
    thinking: bool,
    fix_content: bool = True,
    request_id: str | None = None,
) -> bytes:
    payload = _load_json_object(body)
    if payload is None:
        logger.debug(
            "response_passthrough request_id=%s reason=not_json_object bytes=%d",
            request_id,
            len(body),
        )
        return body

    modified = False
    if fix_content and not thinking:
        modified = move_reasoning_to_content(payload, request_id=request_id)
    original_model = payload.get("model")
    if restore_model_name(payload, virtual_model_name):
        modified = True
        logger.debug(
            "response_model_restored request_id=%s original=%s replacement=%s",
            request_id,
            original_model,
            virtual_model_name,
        )

    if not modified:
        return body
    return dump_json(payload)
