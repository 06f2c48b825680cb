"""Internal run representation shared by the wire codec and the run engine.

A run consumes an ordered list of input items and produces an ordered list of
output items. Streaming runs additionally emit run events while they execute.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Union


@dataclass
class SystemItem:
    content: str
    kind: Literal["system"] = "system"


@dataclass
class UserItem:
    content: str
    kind: Literal["user"] = "user"


@dataclass
class ToolInvocationItem:
    """One tool call requested by the model."""

    call_id: str
    name: str
    arguments: str = "{}"
    status: Literal["in_progress", "completed"] = "in_progress"
    kind: Literal["tool_invocation"] = "tool_invocation"


@dataclass
class AssistantTextItem:
    """Assistant message; `tool_calls` keeps tool calls made in the same turn."""

    content: str
    tool_calls: list[ToolInvocationItem] = field(default_factory=list)
    status: Literal["in_progress", "completed"] = "completed"
    kind: Literal["assistant"] = "assistant"


@dataclass
class ToolResultItem:
    """Result of one tool invocation, keyed by the invocation's call id."""

    call_id: str
    name: str
    output: str
    is_error: bool = False
    kind: Literal["tool_result"] = "tool_result"


RunItem = Union[SystemItem, UserItem, AssistantTextItem, ToolInvocationItem, ToolResultItem]


@dataclass
class TextDeltaEvent:
    delta: str
    kind: Literal["text_delta"] = "text_delta"


@dataclass
class ReasoningDeltaEvent:
    delta: str
    kind: Literal["reasoning_delta"] = "reasoning_delta"


@dataclass
class ToolCalledEvent:
    item: ToolInvocationItem
    label: str | None = None
    kind: Literal["tool_called"] = "tool_called"


@dataclass
class ToolOutputEvent:
    item: ToolResultItem
    label: str | None = None
    kind: Literal["tool_output"] = "tool_output"


@dataclass
class MessageOutputEvent:
    item: AssistantTextItem
    kind: Literal["message_output"] = "message_output"


RunEvent = Union[TextDeltaEvent, ReasoningDeltaEvent, ToolCalledEvent, ToolOutputEvent, MessageOutputEvent]


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def add(self, prompt_tokens: int, completion_tokens: int) -> None:
        self.prompt_tokens += max(0, int(prompt_tokens))
        self.completion_tokens += max(0, int(completion_tokens))
