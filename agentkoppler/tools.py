"""Runnable tool abstraction shared by built-in, custom, and external tools."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal, Union

from .utils import to_bounded_json

LOG = logging.getLogger(__name__)

ToolSource = Literal["builtin", "custom", "external"]

MAX_TOOL_NAME_LENGTH = 64


@dataclass
class ToolOutcome:
    """Text handed back to the model for one tool invocation."""

    output: str
    is_error: bool = False


ToolHandler = Callable[[dict[str, Any]], Awaitable[Union[ToolOutcome, str]]]


@dataclass
class RunnableTool:
    """A tool the run engine can offer to a model and execute."""

    name: str
    description: str
    handler: ToolHandler
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    source: ToolSource = "external"
    label: str | None = None

    def openai_schema(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    async def invoke(self, arguments_json: str) -> ToolOutcome:
        """Run the tool; every failure is turned into an error outcome."""
        try:
            arguments = json.loads(arguments_json or "{}")
        except json.JSONDecodeError as exc:
            return ToolOutcome(f"Invalid JSON arguments for tool '{self.name}': {exc}", is_error=True)
        if not isinstance(arguments, dict):
            return ToolOutcome(f"Arguments for tool '{self.name}' must be a JSON object", is_error=True)

        try:
            result = await self.handler(arguments)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOG.warning("Tool failed name=%s source=%s error=%s", self.name, self.source, exc)
            return ToolOutcome(f"Tool '{self.name}' failed: {exc}", is_error=True)

        if isinstance(result, ToolOutcome):
            return result
        return ToolOutcome(str(result))


def tool_result_text(result: dict[str, Any]) -> str:
    """Serialize an MCP `tools/call` result to text.

    Text content parts are newline-joined; anything else is rendered as JSON.
    """
    content = result.get("content")
    if isinstance(content, list):
        texts = [
            str(part.get("text"))
            for part in content
            if isinstance(part, dict) and part.get("type") == "text" and part.get("text") is not None
        ]
        if texts:
            return "\n".join(texts)
        return json.dumps(content, ensure_ascii=False, default=str)
    return json.dumps(result, ensure_ascii=False, default=str)


def sanitize_tool_name(name: str) -> str:
    """Map a name to the character set OpenAI-style function names accept."""
    safe = "".join(char if char.isalnum() or char in {"_", "-"} else "_" for char in name.strip())
    return safe[:MAX_TOOL_NAME_LENGTH] or "tool"


def describe_tools(tools: list[RunnableTool]) -> str:
    return to_bounded_json([tool.name for tool in tools], max_len=2000)
