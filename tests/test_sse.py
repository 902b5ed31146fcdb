from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import httpx

from qwen35_rp.sse import SSEReframer, reframe_sse_stream


def _event(payload: dict[str, Any]) -> bytes:
    return b"data: " + json.dumps(payload).encode("utf-8") + b"\n\n"


def _reframe(chunks: list[bytes], **kwargs: Any) -> bytes:
    reframer = SSEReframer(virtual_model_name="vm", **kwargs)
    frames: list[bytes] = []
    for chunk in chunks:
        frames.extend(reframer.feed(chunk))
    frames.append(reframer.finish())
    return b"".join(frames)


async def _collect(chunks: Any, reframer: SSEReframer) -> list[bytes]:
    return [frame async for frame in reframe_sse_stream(chunks, reframer)]


def test_model_is_rewritten_in_each_event() -> None:
    stream = _event({"model": "backend", "choices": [{"delta": {"content": "Hi"}}]})
    stream += b"data: [DONE]\n\n"

    output = _reframe([stream])

    first, done, _ = output.split(b"\n\n")
    assert json.loads(first[len(b"data: ") :])["model"] == "vm"
    assert done == b"data: [DONE]"
    assert output.endswith(b"data: [DONE]\n\n")


def test_event_split_across_chunks_is_reassembled() -> None:
    stream = _event({"model": "backend", "x": 1})
    chunks = [stream[:5], stream[5:-1], stream[-1:]]

    reframer = SSEReframer(virtual_model_name="vm")
    assert reframer.feed(chunks[0]) == []
    assert reframer.feed(chunks[1]) == []
    frames = reframer.feed(chunks[2])

    assert len(frames) == 1
    assert json.loads(frames[0][len(b"data: ") :]) == {"model": "vm", "x": 1}
    assert reframer.buffered_bytes == 0


def test_multiple_events_in_one_chunk_are_emitted_in_order() -> None:
    stream = _event({"model": "a", "n": 1}) + _event({"model": "a", "n": 2})

    frames = SSEReframer(virtual_model_name="vm").feed(stream)

    assert [json.loads(frame[6:])["n"] for frame in frames] == [1, 2]


def test_non_rewritable_events_pass_through_verbatim() -> None:
    stream = (
        b": keep-alive\n\n"
        b"event: ping\n\n"
        b"data: not-json\n\n"
        b"data: [1, 2]\n\n"
        b'data: {"no_model": true}\n\n'
        b'data: {"model": "vm"}\n\n'
        b"data: [DONE]\n\n"
    )

    reframer = SSEReframer(virtual_model_name="vm")
    assert b"".join(reframer.feed(stream)) == stream
    assert reframer.finish() == b""
    assert reframer.rewritten_events == 0


def test_deeply_nested_event_passes_through_verbatim() -> None:
    nested = b'data: {"model": "a", "x": ' + b"[" * 100000 + b"]" * 100000 + b"}\n\n"
    stream = nested + _event({"model": "a"})

    reframer = SSEReframer(virtual_model_name="vm", watermark_bytes=1024 * 1024)
    frames = reframer.feed(stream)

    assert frames == [nested, b'data: {"model":"vm"}\n\n']


def test_residual_bytes_are_flushed_at_end() -> None:
    stream = _event({"model": "a"}) + b"data: {partial"

    output = _reframe([stream])

    assert output.endswith(b"data: {partial")
    assert b'"model":"vm"' in output


def test_watermark_flushes_raw_buffer(caplog: Any) -> None:
    reframer = SSEReframer(virtual_model_name="vm", watermark_bytes=1024)
    oversized = b"data: " + b"x" * 2000

    with caplog.at_level(logging.WARNING):
        frames = reframer.feed(oversized)

    assert frames == [oversized]
    assert reframer.buffered_bytes == 0
    assert reframer.raw_flushes == 1
    assert "stream_buffer_watermark_exceeded" in caplog.text


def test_buffer_below_watermark_is_kept() -> None:
    reframer = SSEReframer(virtual_model_name="vm", watermark_bytes=8192)

    assert reframer.feed(b"data: " + b"x" * 8000) == []
    assert reframer.buffered_bytes == 8006


def test_delimiter_split_across_chunks_is_found() -> None:
    reframer = SSEReframer(virtual_model_name="vm")

    assert reframer.feed(b'data: {"model": "a"}\n') == []
    frames = reframer.feed(b"\n")

    assert frames == [b'data: {"model":"vm"}\n\n']


def test_reframe_stream_stops_cleanly_on_backend_disconnect(caplog: Any) -> None:
    request = httpx.Request("POST", "http://vllm.test/v1/chat/completions")

    async def chunks() -> Any:
        yield _event({"model": "a", "n": 1})
        yield b'data: {"model": "a", "n"'
        raise httpx.ReadError("connection reset", request=request)

    with caplog.at_level(logging.WARNING):
        frames = asyncio.run(_collect(chunks(), SSEReframer(virtual_model_name="vm")))

    assert frames == [b'data: {"model":"vm","n":1}\n\n', b'data: {"model": "a", "n"']
    assert "stream_backend_disconnected" in caplog.text
