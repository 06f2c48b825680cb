"""Mock OpenAI-compatible model backend.

Asks for the first offered tool when the last user message mentions "add",
answers with the tool output once a tool result is present, and replies
plainly otherwise. Run with `uvicorn examples.mock_upstream_server:app --port 1234`.
"""

from __future__ import annotations

import json
import time
import uuid
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

app = FastAPI(title="mock-upstream")


@app.get("/v1/models")
async def models() -> JSONResponse:
    return JSONResponse(
        {
            "object": "list",
            "data": [
                {"id": "demo-model", "object": "model", "created": int(time.time()), "owned_by": "mock"},
                {"id": "gpt-4o-mini", "object": "model", "created": int(time.time()), "owned_by": "mock"},
            ],
        }
    )


def _reply(messages: list[dict[str, Any]], tools: list[dict[str, Any]]) -> dict[str, Any]:
    last_user = next((m for m in reversed(messages) if m.get("role") == "user"), {})
    last_tool = messages[-1] if messages and messages[-1].get("role") == "tool" else None

    if last_tool is None and "add" in str(last_user.get("content") or "").lower() and tools:
        tool_name = tools[0].get("function", {}).get("name", "add")
        return {
            "role": "assistant",
            "content": None,
            "tool_calls": [
                {
                    "id": f"call_{uuid.uuid4().hex}",
                    "type": "function",
                    "function": {"name": tool_name, "arguments": json.dumps({"a": 2, "b": 3})},
                }
            ],
        }
    if last_tool is not None:
        return {"role": "assistant", "content": f"Tool said: {last_tool.get('content')}"}
    return {"role": "assistant", "content": "No tools needed."}


@app.post("/v1/chat/completions")
async def chat_completions(request: Request):
    payload = await request.json()
    model = payload.get("model") or "demo-model"
    msg = _reply(payload.get("messages") or [], payload.get("tools") or [])
    completion_id = f"chatcmpl-{uuid.uuid4().hex}"
    created = int(time.time())
    usage = {"prompt_tokens": 12, "completion_tokens": 5, "total_tokens": 17}

    if not payload.get("stream"):
        return JSONResponse(
            {
                "id": completion_id,
                "object": "chat.completion",
                "created": created,
                "model": model,
                "choices": [{"index": 0, "message": msg, "finish_reason": "tool_calls" if msg.get("tool_calls") else "stop"}],
                "usage": usage,
            }
        )

    def chunk(delta: dict[str, Any], finish_reason: str | None = None) -> str:
        body = {
            "id": completion_id,
            "object": "chat.completion.chunk",
            "created": created,
            "model": model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }
        return f"data: {json.dumps(body)}\n\n"

    async def gen():
        yield chunk({"role": "assistant"})
        if msg.get("tool_calls"):
            call = msg["tool_calls"][0]
            arguments = call["function"]["arguments"]
            yield chunk({"tool_calls": [{"index": 0, "id": call["id"], "type": "function", "function": {"name": call["function"]["name"], "arguments": ""}}]})
            half = len(arguments) // 2
            yield chunk({"tool_calls": [{"index": 0, "function": {"arguments": arguments[:half]}}]})
            yield chunk({"tool_calls": [{"index": 0, "function": {"arguments": arguments[half:]}}]})
            yield chunk({}, "tool_calls")
        else:
            for word in str(msg.get("content") or "").split(" "):
                yield chunk({"content": word + " "})
            yield chunk({}, "stop")
        yield f"data: {json.dumps({'id': completion_id, 'object': 'chat.completion.chunk', 'created': created, 'model': model, 'choices': [], 'usage': usage})}\n\n"
        yield "data: [DONE]\n\n"

    return StreamingResponse(gen(), media_type="text/event-stream")
