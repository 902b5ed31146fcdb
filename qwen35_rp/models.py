from __future__ import annotations

import json
import logging
from typing import Any

from qwen35_rp.errors import BackendUnavailableError, InternalProxyError
from qwen35_rp.registry import ModelRegistry

logger = logging.getLogger("uvicorn.error")


def parse_models_listing(body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(body)
    except (ValueError, RecursionError) as exc:
        raise InternalProxyError(f"Backend model listing is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise InternalProxyError("Backend model listing is not a JSON object.")
    return payload


def find_served_model(data: list[Any], served_model_name: str) -> dict[str, Any] | None:
    for entry in data:
        if isinstance(entry, dict) and entry.get("id") == served_model_name:
            return entry
    return None


def build_virtual_models_response(
    payload: dict[str, Any],
    *,
    served_model_name: str,
    registry: ModelRegistry,
    request_id: str | None = None,
) -> dict[str, Any] | None:
    """Return the listing with one entry per virtual model, or None to pass through."""
    data = payload.get("data")
    if not isinstance(data, list) or not data:
        logger.warning(
            "models_listing_passthrough request_id=%s reason=no_models", request_id
        )
        return None

    base_entry = find_served_model(data, served_model_name)
    if base_entry is None:
        available = [
            entry.get("id") for entry in data if isinstance(entry, dict)
        ]
        logger.error(
            "served_model_missing request_id=%s expected=%s available_models=%s",
            request_id,
            served_model_name,
            available,
        )
        raise BackendUnavailableError(
            f"Backend is not serving the expected model '{served_model_name}'."
        )

    enriched = dict(payload)
    enriched["data"] = [{**base_entry, "id": model.name} for model in registry]
    logger.info(
        "models_listing_enriched request_id=%s virtual_models=%d",
        request_id,
        len(registry),
    )
    return enriched
