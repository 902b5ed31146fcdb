from __future__ import annotations

from http import HTTPStatus

from fastapi import status
from fastapi.responses import JSONResponse


class ProxyError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type: str = "internal_error"


class MalformedBodyError(ProxyError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_type = "malformed_body"


class UnknownModelError(ProxyError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_type = "unknown_model"

    def __init__(self, message: str, requested_model: object = None) -> None:
        super().__init__(message)
        self.requested_model = requested_model


class BackendUnavailableError(ProxyError):
    status_code = status.HTTP_502_BAD_GATEWAY
    error_type = "backend_unavailable"


class InternalProxyError(ProxyError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type = "internal_error"


def error_client_text(status_code: int, request_id: str) -> str:
    return (
        f"{HTTPStatus(status_code).phrase} - check qwen35-rp logs for more details "
        f"(request id #{request_id})"
    )


def error_response(
    *,
    status_code: int,
    error_type: str,
    request_id: str,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "type": error_type,
                "message": error_client_text(status_code, request_id),
                "request_id": request_id,
            }
        },
        headers={"X-Request-ID": request_id},
    )


def proxy_error_response(exc: ProxyError, request_id: str) -> JSONResponse:
    return error_response(
        status_code=exc.status_code,
        error_type=exc.error_type,
        request_id=request_id,
    )
