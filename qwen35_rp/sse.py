from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator

import httpx

from qwen35_rp.transform import dump_json

logger = logging.getLogger("uvicorn.error")

EVENT_DELIMITER = b"\n\n"
DATA_PREFIX = b"data: "
DONE_SENTINEL = b"[DONE]"
DEFAULT_WATERMARK_BYTES = 8192


class SSEReframer:
    """Incremental rewriter for ``text/event-stream`` bodies.

    Chunks are accumulated until a blank line closes an event; each complete
    ``data:`` event then has its ``model`` field replaced with the virtual model
    name. The pending buffer never grows past ``watermark_bytes``: once it does
    without a complete event, the raw bytes are released unchanged.
    """

    def __init__(
        self,
        *,
        virtual_model_name: str,
        watermark_bytes: int = DEFAULT_WATERMARK_BYTES,
        request_id: str | None = None,
    ) -> None:
        self._virtual_model_name = virtual_model_name
        self._watermark_bytes = max(1, int(watermark_bytes))
        self._request_id = request_id
        self._buffer = bytearray()
        self._scan_from = 0
        self.rewritten_events = 0
        self.raw_flushes = 0

    @property
    def buffered_bytes(self) -> int:
        return len(self._buffer)

    def feed(self, chunk: bytes) -> list[bytes]:
        if chunk:
            self._buffer.extend(chunk)

        frames: list[bytes] = []
        while True:
            index = self._buffer.find(EVENT_DELIMITER, self._scan_from)
            if index == -1:
                # A delimiter may straddle the next chunk boundary.
                self._scan_from = max(0, len(self._buffer) - len(EVENT_DELIMITER) + 1)
                break
            end = index + len(EVENT_DELIMITER)
            event = bytes(self._buffer[:end])
            del self._buffer[:end]
            self._scan_from = 0
            frames.append(self.rewrite_event(event))

        if len(self._buffer) > self._watermark_bytes:
            logger.warning(
                "stream_buffer_watermark_exceeded request_id=%s buffered_bytes=%d watermark=%d",
                self._request_id,
                len(self._buffer),
                self._watermark_bytes,
            )
            frames.append(bytes(self._buffer))
            self._buffer.clear()
            self._scan_from = 0
            self.raw_flushes += 1
        return frames

    def finish(self) -> bytes:
        residual = bytes(self._buffer)
        self._buffer.clear()
        self._scan_from = 0
        return residual

    def rewrite_event(self, event: bytes) -> bytes:
        if not event.startswith(DATA_PREFIX):
            return event
        payload = event[len(DATA_PREFIX) :].strip()
        if not payload or payload == DONE_SENTINEL:
            return event
        try:
            data = json.loads(payload)
        except (ValueError, RecursionError):
            return event
        if not isinstance(data, dict):
            return event
        original_model = data.get("model")
        if not isinstance(original_model, str):
            return event
        if original_model == self._virtual_model_name:
            return event
        data["model"] = self._virtual_model_name
        self.rewritten_events += 1
        logger.debug(
            "stream_model_restored request_id=%s original=%s replacement=%s",
            self._request_id,
            original_model,
            self._virtual_model_name,
        )
        return DATA_PREFIX + dump_json(data) + EVENT_DELIMITER


async def reframe_sse_stream(
    chunks: AsyncIterator[bytes],
    reframer: SSEReframer,
    request_id: str | None = None,
) -> AsyncIterator[bytes]:
    try:
        async for chunk in chunks:
            for frame in reframer.feed(chunk):
                yield frame
    except httpx.RequestError as exc:
        logger.warning(
            "stream_backend_disconnected request_id=%s error_type=%s error=%s",
            request_id,
            exc.__class__.__name__,
            exc,
        )
    residual = reframer.finish()
    if residual:
        yield residual
