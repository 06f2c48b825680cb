"""Helpers for OpenAI-compatible `chat.completion.chunk` payloads.

Used in both directions: building chunks sent to gateway clients and merging
chunks received from upstream model backends.
"""

from __future__ import annotations

import uuid
from typing import Any

TEXT_PART_TYPES = frozenset({"text", "input_text", "output_text"})


class ToolCallAccumulator:
    """Collect streamed `tool_calls` fragments into complete tool call objects.

    Fragments are keyed by their `index`; fragments without one open a new slot.
    Names are replaced, argument strings are concatenated.
    """

    def __init__(self) -> None:
        self._slots: dict[int, dict[str, Any]] = {}

    def __bool__(self) -> bool:
        return bool(self._slots)

    def add(self, fragments: Any) -> None:
        if not isinstance(fragments, list):
            return
        for fragment in fragments:
            if isinstance(fragment, dict):
                self._merge(fragment)

    def _merge(self, fragment: dict[str, Any]) -> None:
        index = fragment.get("index")
        if not isinstance(index, int):
            index = len(self._slots)
        slot = self._slots.setdefault(index, {"id": None, "name": "", "arguments": ""})

        if fragment.get("id"):
            slot["id"] = str(fragment["id"])
        function = fragment.get("function")
        if not isinstance(function, dict):
            return
        if function.get("name"):
            slot["name"] = str(function["name"])
        arguments = function.get("arguments")
        if isinstance(arguments, str):
            slot["arguments"] += arguments

    def calls(self) -> list[dict[str, Any]]:
        """Return complete tool calls in index order; nameless slots are dropped."""
        out: list[dict[str, Any]] = []
        for index in sorted(self._slots):
            slot = self._slots[index]
            name = slot["name"].strip()
            if not name:
                continue
            out.append(
                {
                    "id": slot["id"] or f"call_{uuid.uuid4().hex}",
                    "type": "function",
                    "function": {"name": name, "arguments": slot["arguments"] or "{}"},
                }
            )
        return out

    @classmethod
    def from_message(cls, raw_calls: Any) -> list[dict[str, Any]]:
        """Normalize the `tool_calls` of a complete (non-streamed) message."""
        accumulator = cls()
        if isinstance(raw_calls, list):
            accumulator.add([{**call, "index": i} for i, call in enumerate(raw_calls) if isinstance(call, dict)])
        return accumulator.calls()


def client_chunk(
    *,
    completion_id: str,
    model: str,
    created: int,
    delta: dict[str, Any],
    finish_reason: str | None = None,
) -> dict[str, Any]:
    """Build a canonical `chat.completion.chunk` payload for clients."""
    return {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason, "logprobs": None}],
    }


def primary_choice(payload: dict[str, Any]) -> dict[str, Any]:
    """Return choice 0 of an upstream payload (or its first choice); `{}` when there is none."""
    choices = [choice for choice in payload.get("choices") or [] if isinstance(choice, dict)]
    for choice in choices:
        if choice.get("index") == 0:
            return choice
    return choices[0] if choices else {}


def chunk_usage(chunk: dict[str, Any]) -> tuple[int, int] | None:
    """Return `(prompt_tokens, completion_tokens)` when an upstream payload reports usage."""
    usage = chunk.get("usage")
    if not isinstance(usage, dict):
        return None
    try:
        return int(usage.get("prompt_tokens") or 0), int(usage.get("completion_tokens") or 0)
    except (TypeError, ValueError):
        return None


def content_to_text(content: Any) -> str:
    """Flatten message content to text; list parts other than text parts are dropped."""
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    texts = []
    for part in content:
        if isinstance(part, str):
            texts.append(part)
        elif isinstance(part, dict) and part.get("type") in TEXT_PART_TYPES and isinstance(part.get("text"), str):
            texts.append(part["text"])
    return "\n".join(texts)
