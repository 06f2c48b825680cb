"""Mock MCP tool server over SSE: `GET /sse` stream plus `POST /messages`.

Serves the same tools as `mock_mcp_server.py`.
Run with `uvicorn examples.mock_mcp_sse_server:app --port 8765`.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from examples.mock_mcp_server import handle_message

app = FastAPI(title="mock-mcp-sse")

_sessions: dict[str, asyncio.Queue[dict[str, Any]]] = {}


@app.get("/sse")
async def sse() -> StreamingResponse:
    session_id = uuid.uuid4().hex
    queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
    _sessions[session_id] = queue

    async def gen():
        try:
            yield f"event: endpoint\ndata: /messages?session_id={session_id}\n\n"
            while True:
                msg = await queue.get()
                yield f"event: message\ndata: {json.dumps(msg)}\n\n"
        finally:
            _sessions.pop(session_id, None)

    return StreamingResponse(gen(), media_type="text/event-stream")


@app.post("/messages")
async def messages(request: Request, session_id: str) -> JSONResponse:
    queue = _sessions.get(session_id)
    if queue is None:
        return JSONResponse({"error": "unknown session"}, status_code=404)
    msg = await request.json()
    for out in await asyncio.to_thread(handle_message, msg):
        await queue.put(out)
    return JSONResponse({"accepted": True}, status_code=202)
