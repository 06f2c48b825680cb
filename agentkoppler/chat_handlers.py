"""Helpers for `/v1/chat/completions` endpoint handling."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from typing import Any, AsyncGenerator

from fastapi import Request
from fastapi.responses import JSONResponse, StreamingResponse

from .agent_runtime import Agent, Runner, StreamedRun
from .wire_codec import (
    RequestDecodeError,
    build_error_payload,
    decode_request,
    encode_chunk,
    encode_result,
    final_chunk,
    new_run_identity,
)

LOG = logging.getLogger(__name__)

SSE_DONE = b"data: [DONE]\n\n"


def sse_data(payload: dict[str, Any]) -> bytes:
    """Encode one SSE `data:` event."""
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def sse_comment(text: str) -> bytes:
    """Encode one SSE comment/heartbeat event."""
    return f": {text}\n\n".encode("utf-8")


def build_sse_response(stream: AsyncGenerator[bytes, None]) -> StreamingResponse:
    """Build standard SSE response with consistent proxy-safe headers."""
    return StreamingResponse(
        stream,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


def error_response(message: str, *, status_code: int, error_type: str = "invalid_request_error") -> JSONResponse:
    return JSONResponse(build_error_payload(message, error_type), status_code=status_code)


async def stream_with_keepalive(
    source: AsyncGenerator[bytes, None],
    *,
    keepalive_seconds: float,
    request: Request | None = None,
) -> AsyncGenerator[bytes, None]:
    """Forward `source` frames, inserting SSE keepalive comments while it is idle.

    The client connection is polled after every wait; on disconnect forwarding
    stops and `source` is closed, which cancels the run feeding it.
    """
    interval = keepalive_seconds if keepalive_seconds > 0 else 0.5
    started = time.monotonic()
    pending: asyncio.Future[bytes] | None = None
    try:
        while True:
            if pending is None:
                pending = asyncio.ensure_future(source.__anext__())
            finished, _ = await asyncio.wait({pending}, timeout=interval)
            if request is not None and await request.is_disconnected():
                LOG.debug("client disconnected, stopping stream elapsed=%.3fs", time.monotonic() - started)
                return
            if not finished:
                if keepalive_seconds > 0:
                    yield sse_comment("keepalive")
                continue
            ready, pending = pending, None
            try:
                frame = ready.result()
            except StopAsyncIteration:
                return
            yield frame
    finally:
        if pending is not None and not pending.done():
            pending.cancel()
            with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                await pending
        try:
            await asyncio.shield(source.aclose())
        except asyncio.CancelledError:
            LOG.debug("stream closed while cancelled elapsed=%.3fs", time.monotonic() - started)
            raise
        except Exception:
            LOG.debug("stream source close failed", exc_info=True)
        LOG.debug("stream closed elapsed=%.3fs", time.monotonic() - started)


async def stream_run_chunks(streamed: StreamedRun, model: str) -> AsyncGenerator[bytes, None]:
    """Encode a streamed run as SSE frames: chunks, the stop chunk, then `[DONE]`.

    A run failure emits one error frame before the stop chunk. The run is
    cancelled when the consumer stops early.
    """
    run_id, created = new_run_identity()
    try:
        try:
            async for event in streamed.stream_events():
                chunk = encode_chunk(event, run_id, model, created)
                if chunk is not None:
                    yield sse_data(chunk)
        except Exception as exc:
            LOG.warning("streamed run failed run_id=%s model=%s error=%s", run_id, model, exc)
            yield sse_data(build_error_payload(str(exc), "internal_error"))
        yield sse_data(final_chunk(run_id, model, created))
        yield SSE_DONE
    finally:
        await streamed.cancel()


async def handle_chat_completion(
    request: Request,
    *,
    agents: dict[str, Agent],
    runner: Runner,
    keepalive_seconds: float,
) -> JSONResponse | StreamingResponse:
    """Decode, dispatch to the named agent, and encode the reply."""
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return error_response("Request body is not valid JSON", status_code=400)

    try:
        decoded = decode_request(body)
    except RequestDecodeError as exc:
        return error_response(str(exc), status_code=400)

    agent = agents.get(decoded.model)
    if agent is None:
        available = ", ".join(sorted(agents)) or "(none)"
        return error_response(
            f"Agent '{decoded.model}' not found. Available agents: {available}",
            status_code=404,
        )

    LOG.info("chat completion agent=%s stream=%s items=%s", agent.name, decoded.stream, len(decoded.items))

    if decoded.stream:
        streamed = runner.run_streamed(agent, decoded.items)
        return build_sse_response(
            stream_with_keepalive(
                stream_run_chunks(streamed, decoded.model),
                keepalive_seconds=keepalive_seconds,
                request=request,
            )
        )

    try:
        result = await runner.run(agent, decoded.items)
    except Exception as exc:
        LOG.exception("chat/completions failed agent=%s", agent.name)
        return error_response(str(exc), status_code=500, error_type="internal_error")
    return JSONResponse(encode_result(result, decoded.model))
