from __future__ import annotations

import errno
import logging
import time
from typing import Any

import httpx
from fastapi.responses import Response
from starlette.datastructures import Headers

from qwen35_rp.errors import BackendUnavailableError, InternalProxyError, ProxyError

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

logger = logging.getLogger("uvicorn.error")


def single_joining_slash(a: str, b: str) -> str:
    a_slash = a.endswith("/")
    b_slash = b.startswith("/")
    if a_slash and b_slash:
        return a + b[1:]
    if not a_slash and not b_slash:
        return a + "/" + b
    return a + b


def join_query(target_query: str, request_query: str) -> str:
    if not target_query or not request_query:
        return target_query + request_query
    return f"{target_query}&{request_query}"


def build_upstream_headers(incoming_headers: Headers) -> list[tuple[str, str]]:
    headers: list[tuple[str, str]] = []
    for name, value in incoming_headers.items():
        lower = name.lower()
        if lower in {"host", "content-length"} or lower in HOP_BY_HOP_HEADERS:
            continue
        headers.append((name, value))
    return headers


def filter_response_headers(
    headers: httpx.Headers, *, body_decoded: bool = False
) -> list[tuple[str, str]]:
    dropped = HOP_BY_HOP_HEADERS | {"content-length"}
    if body_decoded:
        dropped = dropped | {"content-encoding"}
    return [
        (name, value)
        for name, value in headers.multi_items()
        if name.lower() not in dropped
    ]


def copy_response_headers(response: Response, headers: list[tuple[str, str]]) -> None:
    for name, value in headers:
        if name.lower() == "content-type":
            response.headers[name] = value
            continue
        response.headers.append(name, value)


def is_connection_refused(exc: BaseException) -> bool:
    pending: list[BaseException] = [exc]
    seen: set[int] = set()
    while pending:
        current = pending.pop()
        if id(current) in seen:
            continue
        seen.add(id(current))
        if isinstance(current, ConnectionRefusedError):
            return True
        if isinstance(current, OSError) and current.errno == errno.ECONNREFUSED:
            return True
        if isinstance(current, BaseExceptionGroup):
            pending.extend(current.exceptions)
        for linked in (current.__cause__, current.__context__):
            if linked is not None:
                pending.append(linked)
    return "connection refused" in str(exc).lower()


def map_transport_error(exc: httpx.RequestError) -> ProxyError:
    if isinstance(exc, httpx.ConnectError) and is_connection_refused(exc):
        return BackendUnavailableError(f"Backend refused the connection: {exc}")
    return InternalProxyError(f"Backend request failed ({exc.__class__.__name__}): {exc}")


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    details: dict[str, Any] = {
        "error": str(exc).strip() or repr(exc),
        "error_type": exc.__class__.__name__,
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }
    try:
        details["request_url"] = str(exc.request.url)
    except RuntimeError:
        details["request_url"] = None
    return details


class UpstreamDispatcher:
    def __init__(
        self,
        *,
        target: str,
        connect_timeout_seconds: float = 5.0,
        read_timeout_seconds: float | None = None,
        write_timeout_seconds: float = 30.0,
        pool_timeout_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.target = httpx.URL(target)
        read_timeout = (
            max(0.1, float(read_timeout_seconds))
            if read_timeout_seconds is not None
            else None
        )
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=None,
                connect=max(0.1, float(connect_timeout_seconds)),
                read=read_timeout,
                write=max(0.1, float(write_timeout_seconds)),
                pool=max(0.1, float(pool_timeout_seconds)),
            ),
            limits=httpx.Limits(max_connections=512, max_keepalive_connections=128),
            transport=transport,
        )

    async def close(self) -> None:
        await self.client.aclose()

    def build_url(self, path: str, query: str = "") -> str:
        origin = f"{self.target.scheme}://{self.target.netloc.decode('ascii')}"
        joined_path = single_joining_slash(self.target.path, path)
        joined_query = join_query(self.target.query.decode("ascii"), query)
        if joined_query:
            return f"{origin}{joined_path}?{joined_query}"
        return f"{origin}{joined_path}"

    async def send(
        self,
        *,
        method: str,
        path: str,
        query: str = "",
        headers: Headers | None = None,
        body: bytes | None = None,
        request_id: str | None = None,
    ) -> httpx.Response:
        """Open the backend response in streaming mode; the caller must close it."""
        url = self.build_url(path, query)
        started = time.perf_counter()
        try:
            request = self.client.build_request(
                method=method,
                url=url,
                headers=build_upstream_headers(headers) if headers is not None else None,
                content=body or None,
            )
            upstream = await self.client.send(request, stream=True)
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            logger.error(
                "proxy_request_error request_id=%s url=%s error_type=%s is_timeout=%s error=%s",
                request_id,
                url,
                details["error_type"],
                details["is_timeout"],
                details["error"],
            )
            raise map_transport_error(exc) from exc
        logger.debug(
            "proxy_upstream_connected request_id=%s method=%s url=%s connect_ms=%.2f status=%d",
            request_id,
            method,
            url,
            (time.perf_counter() - started) * 1000.0,
            upstream.status_code,
        )
        return upstream
