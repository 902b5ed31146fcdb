from __future__ import annotations

from typing import Any

import httpx
import pytest

from qwen35_rp.errors import BackendUnavailableError, InternalProxyError
from qwen35_rp.models import build_virtual_models_response, parse_models_listing
from qwen35_rp.registry import build_registry
from tests.client_test_utils import (
    INSTRUCT_GENERAL,
    INSTRUCT_REASONING,
    SERVED_MODEL,
    THINKING_CODING,
    THINKING_GENERAL,
    RecordingBackend,
    build_test_client,
)


def _listing(*ids: str) -> dict[str, Any]:
    return {
        "object": "list",
        "data": [
            {
                "id": model_id,
                "object": "model",
                "owned_by": "vllm",
                "max_model_len": 262144,
                "root": model_id,
            }
            for model_id in ids
        ],
    }


def test_build_virtual_models_response_clones_served_entry() -> None:
    registry = build_registry({"thinking_general": "tg", "instruct_general": "ig"})

    payload = build_virtual_models_response(
        _listing("other", SERVED_MODEL),
        served_model_name=SERVED_MODEL,
        registry=registry,
    )

    assert payload is not None
    assert payload["object"] == "list"
    assert [entry["id"] for entry in payload["data"]] == ["tg", "ig"]
    assert all(entry["root"] == SERVED_MODEL for entry in payload["data"])
    assert all(entry["max_model_len"] == 262144 for entry in payload["data"])


def test_build_virtual_models_response_requires_served_model() -> None:
    registry = build_registry({"thinking_general": "tg"})

    with pytest.raises(BackendUnavailableError):
        build_virtual_models_response(
            _listing("other"), served_model_name=SERVED_MODEL, registry=registry
        )


@pytest.mark.parametrize("payload", [{"object": "list"}, {"data": []}, {"data": "x"}])
def test_build_virtual_models_response_passes_through_without_data(
    payload: dict[str, Any],
) -> None:
    registry = build_registry({"thinking_general": "tg"})

    assert (
        build_virtual_models_response(
            payload, served_model_name=SERVED_MODEL, registry=registry
        )
        is None
    )


def test_parse_models_listing_rejects_non_objects() -> None:
    with pytest.raises(InternalProxyError):
        parse_models_listing(b"not json")
    with pytest.raises(InternalProxyError):
        parse_models_listing(b"[]")
    with pytest.raises(InternalProxyError):
        parse_models_listing(b'{"data": ' + b"[" * 100000 + b"]" * 100000 + b"}")


def test_models_endpoint_lists_virtual_models(monkeypatch: Any) -> None:
    backend = RecordingBackend(
        lambda request: httpx.Response(200, json=_listing(SERVED_MODEL))
    )

    with build_test_client(monkeypatch, backend) as client:
        response = client.get("/v1/models")

    assert response.status_code == 200
    assert [entry["id"] for entry in response.json()["data"]] == [
        THINKING_GENERAL,
        THINKING_CODING,
        INSTRUCT_GENERAL,
        INSTRUCT_REASONING,
    ]
    assert str(backend.requests[0].url) == "http://vllm.test:8000/v1/models"
    assert "x-request-id" in response.headers


def test_models_endpoint_only_lists_named_virtual_models(monkeypatch: Any) -> None:
    backend = RecordingBackend(
        lambda request: httpx.Response(200, json=_listing(SERVED_MODEL))
    )

    with build_test_client(
        monkeypatch,
        backend,
        QWEN35RP_THINKING_CODING_MODEL="",
        QWEN35RP_INSTRUCT_REASONING_MODEL="",
    ) as client:
        response = client.get("/v1/models")

    assert [entry["id"] for entry in response.json()["data"]] == [
        THINKING_GENERAL,
        INSTRUCT_GENERAL,
    ]


def test_models_endpoint_returns_502_when_served_model_missing(monkeypatch: Any) -> None:
    backend = RecordingBackend(
        lambda request: httpx.Response(200, json=_listing("some/other-model"))
    )

    with build_test_client(monkeypatch, backend) as client:
        response = client.get("/v1/models")

    assert response.status_code == 502
    assert response.json()["error"]["type"] == "backend_unavailable"


def test_models_endpoint_passes_through_empty_listing(monkeypatch: Any) -> None:
    backend = RecordingBackend(
        lambda request: httpx.Response(200, content=b'{"object":"list","data":[]}')
    )

    with build_test_client(monkeypatch, backend) as client:
        response = client.get("/v1/models")

    assert response.status_code == 200
    assert response.content == b'{"object":"list","data":[]}'


def test_models_endpoint_returns_500_on_invalid_backend_json(monkeypatch: Any) -> None:
    backend = RecordingBackend(lambda request: httpx.Response(200, content=b"oops"))

    with build_test_client(monkeypatch, backend) as client:
        response = client.get("/v1/models")

    assert response.status_code == 500
    assert response.json()["error"]["type"] == "internal_error"
