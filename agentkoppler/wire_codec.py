"""Translation between the OpenAI Chat Completions wire format and run items.

Inbound requests become an ordered list of run items; run results and run
events become `chat.completion` objects or `chat.completion.chunk` payloads.
"""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .run_items import (
    AssistantTextItem,
    RunEvent,
    RunItem,
    SystemItem,
    TextDeltaEvent,
    ToolCalledEvent,
    ToolInvocationItem,
    ToolOutputEvent,
    ToolResultItem,
    UserItem,
)
from .stream_chunks import client_chunk, content_to_text
from .utils import format_tool_name

if TYPE_CHECKING:
    from .agent_runtime import RunResult

OWNED_BY = "agentkoppler"


class RequestDecodeError(ValueError):
    """Raised when a request body is not a usable chat completion request."""


@dataclass
class DecodedRequest:
    model: str
    items: list[RunItem]
    stream: bool = False


def _decode_tool_calls(raw_calls: Any) -> list[ToolInvocationItem]:
    """Convert prior assistant `tool_calls` into completed invocation items."""
    if not isinstance(raw_calls, list):
        return []

    calls: list[ToolInvocationItem] = []
    for raw in raw_calls:
        if not isinstance(raw, dict):
            continue
        fn = raw.get("function") or {}
        if not isinstance(fn, dict):
            continue
        name = str(fn.get("name") or "")
        arguments = fn.get("arguments")
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments if arguments is not None else {}, ensure_ascii=False)
        calls.append(
            ToolInvocationItem(
                call_id=str(raw.get("id") or f"call_{uuid.uuid4().hex}"),
                name=name,
                arguments=arguments or "{}",
                status="completed",
            )
        )
    return calls


def _decode_message(message: dict[str, Any]) -> RunItem:
    role = str(message.get("role") or "")
    text = content_to_text(message.get("content"))

    if role in {"system", "developer"}:
        return SystemItem(content=text)
    if role == "assistant":
        return AssistantTextItem(content=text, tool_calls=_decode_tool_calls(message.get("tool_calls")))
    if role == "tool":
        call_id = str(message.get("tool_call_id") or "")
        return ToolResultItem(call_id=call_id, name=str(message.get("name") or ""), output=text)
    if role == "function":
        name = str(message.get("name") or "")
        return ToolResultItem(call_id=name, name=name, output=text)
    # "user" and anything unrecognized
    return UserItem(content=text)


def decode_request(body: Any) -> DecodedRequest:
    """Decode a chat completion request body into run input items.

    Raises `RequestDecodeError` when the body is not an object or `messages`
    is not a list of message objects.
    """
    if not isinstance(body, dict):
        raise RequestDecodeError("Request body must be a JSON object")

    messages = body.get("messages")
    if not isinstance(messages, list):
        raise RequestDecodeError("'messages' must be a list")

    items: list[RunItem] = []
    for index, message in enumerate(messages):
        if not isinstance(message, dict):
            raise RequestDecodeError(f"messages[{index}] must be an object")
        items.append(_decode_message(message))

    model = body.get("model")
    return DecodedRequest(
        model=model if isinstance(model, str) else "",
        items=items,
        stream=bool(body.get("stream", False)),
    )


def new_run_identity() -> tuple[str, int]:
    """Return a fresh `(run_id, created)` pair shared by one chunk sequence."""
    return f"chatcmpl-{uuid.uuid4().hex}", int(time.time())


def _last_assistant_text(output: list[RunItem]) -> str | None:
    """Content of the last assistant text item; `None` when there is no text."""
    for item in reversed(output):
        if isinstance(item, AssistantTextItem):
            return item.content or None
    return None


def encode_result(result: "RunResult", model: str) -> dict[str, Any]:
    """Encode a completed run as one non-streaming `chat.completion` object."""
    usage = result.usage
    prompt_tokens = usage.prompt_tokens if usage else 0
    completion_tokens = usage.completion_tokens if usage else 0
    return {
        "id": result.response_id or new_run_identity()[0],
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {
                    "role": "assistant",
                    "content": _last_assistant_text(result.output),
                    "refusal": None,
                },
                "logprobs": None,
                "finish_reason": "stop",
            }
        ],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
            "prompt_tokens_details": {"cached_tokens": 0, "audio_tokens": 0},
            "completion_tokens_details": {
                "reasoning_tokens": 0,
                "audio_tokens": 0,
                "accepted_prediction_tokens": 0,
                "rejected_prediction_tokens": 0,
            },
        },
    }


def _tool_display_name(name: str, label: str | None) -> str:
    return label or format_tool_name(name)


def encode_chunk(event: RunEvent, run_id: str, model: str, created: int) -> dict[str, Any] | None:
    """Encode one run event as a streaming chunk, or `None` when it has no wire form."""
    if isinstance(event, TextDeltaEvent):
        content = event.delta
    elif isinstance(event, ToolCalledEvent):
        content = f"\n[Tool Call]: {_tool_display_name(event.item.name, event.label)}\n"
    elif isinstance(event, ToolOutputEvent):
        content = f"[Tool Complete]: {_tool_display_name(event.item.name, event.label)}\n"
    else:
        return None

    return client_chunk(
        completion_id=run_id,
        model=model,
        created=created,
        delta={"content": content},
    )


def final_chunk(run_id: str, model: str, created: int) -> dict[str, Any]:
    """Return the terminal chunk of a sequence."""
    return client_chunk(
        completion_id=run_id,
        model=model,
        created=created,
        delta={},
        finish_reason="stop",
    )


def build_models_payload(names: list[str]) -> dict[str, Any]:
    """Build the `/v1/models` listing, one record per runnable agent name."""
    created = int(time.time())
    return {
        "object": "list",
        "data": [
            {
                "id": name,
                "object": "model",
                "created": created,
                "owned_by": OWNED_BY,
                "permission": [],
                "root": name,
                "parent": None,
            }
            for name in names
        ],
    }


def build_error_payload(message: str, error_type: str = "invalid_request_error") -> dict[str, Any]:
    return {"error": {"message": message, "type": error_type}}
