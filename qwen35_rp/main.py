from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from uuid import uuid4

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from qwen35_rp import __version__
from qwen35_rp.errors import (
    InternalProxyError,
    ProxyError,
    UnknownModelError,
    error_response,
    proxy_error_response,
)
from qwen35_rp.metrics import RequestCounters, StatusReporter
from qwen35_rp.models import build_virtual_models_response, parse_models_listing
from qwen35_rp.profile_config import load_profile_overrides
from qwen35_rp.rectify import rectify_response_body
from qwen35_rp.registry import ModelRegistry, build_registry
from qwen35_rp.settings import Settings, get_settings
from qwen35_rp.sse import SSEReframer, reframe_sse_stream
from qwen35_rp.transform import RequestTransformer, TransformedRequest
from qwen35_rp.upstream import (
    UpstreamDispatcher,
    copy_response_headers,
    filter_response_headers,
)

app = FastAPI(
    title="qwen35-rp",
    description="OpenAI-compatible reverse proxy exposing Qwen3.5 sampling profiles as virtual models.",
    version=__version__,
)

logger = logging.getLogger("uvicorn.error")

PASSTHROUGH_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def _request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return request.headers.get("x-request-id") or uuid4().hex[:12]


@app.middleware("http")
async def request_id_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    request_id = request.headers.get("x-request-id") or uuid4().hex[:12]
    request.state.request_id = request_id
    counters: RequestCounters | None = getattr(app.state, "counters", None)
    if counters is not None:
        counters.record_proxied()
    logger.debug(
        "request_received request_id=%s method=%s path=%s client=%s",
        request_id,
        request.method,
        request.url.path,
        request.client.host if request.client else None,
    )
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


def build_dispatcher(
    settings: Settings, transport: httpx.AsyncBaseTransport | None = None
) -> UpstreamDispatcher:
    return UpstreamDispatcher(
        target=settings.target,
        connect_timeout_seconds=settings.backend_connect_timeout_seconds,
        read_timeout_seconds=settings.backend_read_timeout_seconds,
        write_timeout_seconds=settings.backend_write_timeout_seconds,
        pool_timeout_seconds=settings.backend_pool_timeout_seconds,
        transport=transport,
    )


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    overrides = load_profile_overrides(settings.profiles_path)
    registry = build_registry(settings.virtual_model_names, overrides)
    counters = RequestCounters()
    app.state.settings = settings
    app.state.registry = registry
    app.state.counters = counters
    app.state.transformer = RequestTransformer(
        registry=registry,
        served_model_name=settings.served_model_name,
        counters=counters,
        enforce_sampling_params=settings.enforce_sampling_params,
    )
    app.state.dispatcher = build_dispatcher(
        settings, transport=getattr(app.state, "upstream_transport", None)
    )
    status_reporter = StatusReporter(
        counters=counters,
        logger=logger,
        interval_seconds=settings.status_interval_seconds,
    )
    await status_reporter.start()
    app.state.status_reporter = status_reporter
    for model in registry:
        logger.info(
            "virtual_model_registered name=%s type=%s thinking=%s profile=%s",
            model.name,
            model.kind,
            model.thinking,
            model.profile.as_dict(),
        )
    logger.info(
        (
            "startup complete target=%s served_model=%s virtual_models=%d "
            "enforce_sampling_params=%s fix_reasoning_content=%s"
        ),
        settings.target,
        settings.served_model_name,
        len(registry),
        settings.enforce_sampling_params,
        settings.fix_reasoning_content,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    status_reporter: StatusReporter | None = getattr(app.state, "status_reporter", None)
    if status_reporter is not None:
        await status_reporter.stop()
        status_reporter.report_once()
    dispatcher: UpstreamDispatcher | None = getattr(app.state, "dispatcher", None)
    if dispatcher is not None:
        await dispatcher.close()
    logger.info("shutdown complete")


@app.exception_handler(ProxyError)
async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
    request_id = _request_id(request)
    level = logging.WARNING if exc.status_code < 500 else logging.ERROR
    logger.log(
        level,
        "proxy_error request_id=%s status=%d error_type=%s error=%s",
        request_id,
        exc.status_code,
        exc.error_type,
        exc,
    )
    if isinstance(exc, UnknownModelError):
        registry: ModelRegistry | None = getattr(app.state, "registry", None)
        logger.warning(
            "unknown_model request_id=%s requested_model=%r available_models=%s",
            request_id,
            exc.requested_model,
            list(registry.names()) if registry is not None else [],
        )
    return proxy_error_response(exc, request_id)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = _request_id(request)
    logger.exception("proxy_unexpected_error request_id=%s", request_id)
    return error_response(
        status_code=InternalProxyError.status_code,
        error_type=InternalProxyError.error_type,
        request_id=request_id,
    )


async def _read_upstream_body(upstream: httpx.Response) -> bytes:
    try:
        return await upstream.aread()
    except httpx.RequestError as exc:
        raise InternalProxyError(
            f"Failed to read backend response ({exc.__class__.__name__}): {exc}"
        ) from exc
    finally:
        await upstream.aclose()


def _streaming_response(
    upstream: httpx.Response,
    transformed: TransformedRequest,
    *,
    watermark_bytes: int,
    request_id: str,
) -> StreamingResponse:
    reframer = SSEReframer(
        virtual_model_name=transformed.virtual_model.name,
        watermark_bytes=watermark_bytes,
        request_id=request_id,
    )

    async def stream_generator() -> AsyncIterator[bytes]:
        try:
            async for frame in reframe_sse_stream(
                upstream.aiter_bytes(), reframer, request_id=request_id
            ):
                yield frame
        finally:
            await upstream.aclose()
            logger.debug(
                "stream_closed request_id=%s rewritten_events=%d raw_flushes=%d",
                request_id,
                reframer.rewritten_events,
                reframer.raw_flushes,
            )

    response = StreamingResponse(stream_generator(), status_code=upstream.status_code)
    copy_response_headers(
        response, filter_response_headers(upstream.headers, body_decoded=True)
    )
    return response


async def _proxy_transformed_request(request: Request) -> Response:
    request_id = _request_id(request)
    settings: Settings = app.state.settings
    transformer: RequestTransformer = app.state.transformer
    dispatcher: UpstreamDispatcher = app.state.dispatcher

    transformed = transformer.transform(await request.body(), request_id=request_id)
    upstream = await dispatcher.send(
        method=request.method,
        path=request.url.path,
        query=request.url.query,
        headers=request.headers,
        body=transformed.body,
        request_id=request_id,
    )

    if transformed.stream:
        return _streaming_response(
            upstream,
            transformed,
            watermark_bytes=settings.stream_buffer_watermark_bytes,
            request_id=request_id,
        )

    body = await _read_upstream_body(upstream)
    rectified = rectify_response_body(
        body,
        virtual_model_name=transformed.virtual_model.name,
        thinking=transformed.virtual_model.thinking,
        fix_content=settings.fix_reasoning_content,
        request_id=request_id,
    )
    response = Response(content=rectified, status_code=upstream.status_code)
    copy_response_headers(
        response, filter_response_headers(upstream.headers, body_decoded=True)
    )
    return response


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    return await _proxy_transformed_request(request)


@app.post("/v1/completions")
async def completions(request: Request) -> Response:
    return await _proxy_transformed_request(request)


@app.get("/v1/models")
async def models(request: Request) -> Response:
    request_id = _request_id(request)
    settings: Settings = app.state.settings
    dispatcher: UpstreamDispatcher = app.state.dispatcher
    upstream = await dispatcher.send(
        method="GET",
        path="/v1/models",
        headers=request.headers,
        request_id=request_id,
    )
    body = await _read_upstream_body(upstream)
    enriched = build_virtual_models_response(
        parse_models_listing(body),
        served_model_name=settings.served_model_name,
        registry=app.state.registry,
        request_id=request_id,
    )
    if enriched is None:
        return Response(
            content=body,
            status_code=upstream.status_code,
            media_type="application/json",
        )
    return JSONResponse(content=enriched, status_code=upstream.status_code)


@app.api_route("/{path:path}", methods=PASSTHROUGH_METHODS)
async def passthrough(request: Request, path: str) -> Response:
    request_id = _request_id(request)
    dispatcher: UpstreamDispatcher = app.state.dispatcher
    logger.debug(
        "passthrough_request request_id=%s method=%s path=%s",
        request_id,
        request.method,
        request.url.path,
    )
    upstream = await dispatcher.send(
        method=request.method,
        path=request.url.path,
        query=request.url.query,
        headers=request.headers,
        body=await request.body(),
        request_id=request_id,
    )

    async def stream_generator() -> AsyncIterator[bytes]:
        try:
            async for chunk in upstream.aiter_raw():
                yield chunk
        except httpx.RequestError as exc:
            logger.warning(
                "passthrough_stream_error request_id=%s error_type=%s error=%s",
                request_id,
                exc.__class__.__name__,
                exc,
            )
        finally:
            await upstream.aclose()

    response = StreamingResponse(stream_generator(), status_code=upstream.status_code)
    copy_response_headers(response, filter_response_headers(upstream.headers))
    return response


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "qwen35_rp.main:app",
        host=settings.listen,
        port=settings.port,
        log_level=settings.numeric_log_level,
        timeout_graceful_shutdown=int(settings.stop_timeout_seconds),
        reload=False,
    )


if __name__ == "__main__":
    run()
