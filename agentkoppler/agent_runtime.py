"""Run engine: drives the model/tool loop for one agent.

A run converts input items to chat messages, calls the agent's model with
its tools, executes requested tool calls with bounded concurrency, feeds the
results back, and repeats until the model answers without tool calls.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Coroutine

from .run_items import (
    AssistantTextItem,
    MessageOutputEvent,
    ReasoningDeltaEvent,
    RunEvent,
    RunItem,
    SystemItem,
    TextDeltaEvent,
    ToolCalledEvent,
    ToolInvocationItem,
    ToolOutputEvent,
    ToolResultItem,
    Usage,
    UserItem,
)
from .stream_chunks import ToolCallAccumulator, chunk_usage, content_to_text, primary_choice
from .tools import RunnableTool, ToolOutcome

LOG = logging.getLogger(__name__)

EventSink = Callable[[RunEvent], Awaitable[None]]

_SENTINEL = object()


class MaxTurnsExceeded(Exception):
    """Raised when the model keeps requesting tools beyond the turn limit."""


@dataclass
class Agent:
    """A runnable agent: instructions, model handle, and resolved tools.

    `model` provides `complete(messages, tools)`, `stream(messages, tools)`,
    `count_messages(messages)` and `count_tokens(text)`.
    """

    name: str
    instructions: str
    model: Any
    tools: list[RunnableTool] = field(default_factory=list)
    agent_id: str = ""

    def tool_by_name(self, name: str) -> RunnableTool | None:
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None


@dataclass
class RunResult:
    output: list[RunItem]
    usage: Usage
    response_id: str


@dataclass
class _TurnOutput:
    content: str
    tool_calls: list[dict[str, Any]]
    usage: tuple[int, int] | None


def items_to_messages(items: list[RunItem]) -> list[dict[str, Any]]:
    """Convert run items to OpenAI chat messages.

    Standalone invocation items are folded into the preceding assistant message.
    """
    messages: list[dict[str, Any]] = []
    for item in items:
        if isinstance(item, SystemItem):
            messages.append({"role": "system", "content": item.content})
        elif isinstance(item, UserItem):
            messages.append({"role": "user", "content": item.content})
        elif isinstance(item, AssistantTextItem):
            msg: dict[str, Any] = {"role": "assistant", "content": item.content}
            if item.tool_calls:
                msg["tool_calls"] = [_tool_call_payload(call) for call in item.tool_calls]
            messages.append(msg)
        elif isinstance(item, ToolInvocationItem):
            previous = messages[-1] if messages else None
            if previous is None or previous.get("role") != "assistant":
                previous = {"role": "assistant", "content": None}
                messages.append(previous)
            previous.setdefault("tool_calls", []).append(_tool_call_payload(item))
        elif isinstance(item, ToolResultItem):
            msg = {"role": "tool", "tool_call_id": item.call_id, "content": item.output}
            if item.name:
                msg["name"] = item.name
            messages.append(msg)
    return messages


def _tool_call_payload(call: ToolInvocationItem) -> dict[str, Any]:
    return {"id": call.call_id, "type": "function", "function": {"name": call.name, "arguments": call.arguments}}


class StreamedRun:
    """Handle of a run executing in the background.

    Events pass through a bounded queue, so a slow consumer slows the run down.
    The event stream can be consumed once.
    """

    def __init__(self, buffer_size: int = 64) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=max(1, buffer_size))
        self._task: asyncio.Task[None] | None = None
        self._consumed = False
        self.result: RunResult | None = None
        self.error: Exception | None = None

    def _start(self, coro: Coroutine[Any, Any, RunResult]) -> None:
        self._task = asyncio.create_task(self._produce(coro))

    async def _emit(self, event: RunEvent) -> None:
        await self._queue.put(event)

    async def _produce(self, coro: Coroutine[Any, Any, RunResult]) -> None:
        try:
            self.result = await coro
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOG.warning("Streamed run failed error=%s", exc)
            self.error = exc
        await self._queue.put(_SENTINEL)

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    async def stream_events(self) -> AsyncIterator[RunEvent]:
        """Yield run events in order; re-raises the run's exception at the end."""
        if self._consumed:
            raise RuntimeError("Run events were already consumed")
        self._consumed = True
        while True:
            item = await self._queue.get()
            if item is _SENTINEL:
                break
            yield item
        if self.error is not None:
            raise self.error

    async def cancel(self) -> None:
        """Cancel the run and wait for it to unwind."""
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


class Runner:
    """Executes agent runs."""

    def __init__(
        self,
        max_turns: int = 8,
        max_tool_concurrency: int = 4,
        stream_buffer_size: int = 64,
        estimate_usage: bool = False,
    ) -> None:
        self.max_turns = max(1, max_turns)
        self.max_tool_concurrency = max(1, max_tool_concurrency)
        self.stream_buffer_size = max(1, stream_buffer_size)
        self.estimate_usage = estimate_usage

    async def run(self, agent: Agent, items: list[RunItem]) -> RunResult:
        return await self._execute(agent, items, emit=None)

    def run_streamed(self, agent: Agent, items: list[RunItem]) -> StreamedRun:
        """Start a run in the background; must be called inside a running event loop."""
        streamed = StreamedRun(self.stream_buffer_size)
        streamed._start(self._execute(agent, items, emit=streamed._emit))
        return streamed

    async def _execute(self, agent: Agent, items: list[RunItem], emit: EventSink | None) -> RunResult:
        response_id = f"chatcmpl-{uuid.uuid4().hex}"
        started = time.monotonic()
        messages: list[dict[str, Any]] = []
        if agent.instructions:
            messages.append({"role": "system", "content": agent.instructions})
        messages.extend(items_to_messages(items))
        tool_schemas = [tool.openai_schema() for tool in agent.tools] or None

        usage = Usage()
        output: list[RunItem] = []
        LOG.debug("run start agent=%s run_id=%s tools=%s", agent.name, response_id, len(agent.tools))

        for turn in range(self.max_turns):
            if emit is None:
                result = await self._complete_turn(agent, messages, tool_schemas)
            else:
                result = await self._stream_turn(agent, messages, tool_schemas, emit)
            self._account_usage(agent, usage, messages, result)

            invocations = [
                ToolInvocationItem(
                    call_id=call["id"],
                    name=call["function"]["name"],
                    arguments=call["function"]["arguments"],
                    status="completed",
                )
                for call in result.tool_calls
            ]
            if not invocations:
                final = AssistantTextItem(content=result.content)
                output.append(final)
                if emit is not None:
                    await emit(MessageOutputEvent(item=final))
                LOG.debug(
                    "run done agent=%s run_id=%s turns=%s elapsed=%.3fs",
                    agent.name,
                    response_id,
                    turn + 1,
                    time.monotonic() - started,
                )
                return RunResult(output=output, usage=usage, response_id=response_id)

            if result.content:
                output.append(AssistantTextItem(content=result.content))
            output.extend(invocations)
            messages.append({"role": "assistant", "content": result.content or None, "tool_calls": result.tool_calls})

            tool_results = await self._run_tools(agent, invocations, emit)
            output.extend(tool_results)
            messages.extend(items_to_messages(list(tool_results)))

        raise MaxTurnsExceeded(f"Agent '{agent.name}' exceeded {self.max_turns} turns")

    def _account_usage(self, agent: Agent, usage: Usage, messages: list[dict[str, Any]], result: _TurnOutput) -> None:
        if result.usage is not None:
            usage.add(*result.usage)
        elif self.estimate_usage:
            completion_text = result.content + "".join(call["function"]["arguments"] for call in result.tool_calls)
            usage.add(agent.model.count_messages(messages), agent.model.count_tokens(completion_text))

    async def _complete_turn(
        self,
        agent: Agent,
        messages: list[dict[str, Any]],
        tool_schemas: list[dict[str, Any]] | None,
    ) -> _TurnOutput:
        response = await agent.model.complete(messages, tool_schemas)
        msg = primary_choice(response).get("message") or {}
        return _TurnOutput(
            content=content_to_text(msg.get("content")),
            tool_calls=ToolCallAccumulator.from_message(msg.get("tool_calls")),
            usage=chunk_usage(response),
        )

    async def _stream_turn(
        self,
        agent: Agent,
        messages: list[dict[str, Any]],
        tool_schemas: list[dict[str, Any]] | None,
        emit: EventSink,
    ) -> _TurnOutput:
        content_parts: list[str] = []
        tool_calls = ToolCallAccumulator()
        usage: tuple[int, int] | None = None

        async with contextlib.aclosing(agent.model.stream(messages, tool_schemas)) as chunks:
            async for chunk in chunks:
                usage = chunk_usage(chunk) or usage
                delta = primary_choice(chunk).get("delta") or {}

                reasoning = delta.get("reasoning") or delta.get("reasoning_content")
                if isinstance(reasoning, str) and reasoning:
                    await emit(ReasoningDeltaEvent(delta=reasoning))

                text = delta.get("content")
                if isinstance(text, str) and text:
                    content_parts.append(text)
                    await emit(TextDeltaEvent(delta=text))

                tool_calls.add(delta.get("tool_calls"))

        return _TurnOutput(
            content="".join(content_parts),
            tool_calls=tool_calls.calls(),
            usage=usage,
        )

    async def _run_tools(
        self,
        agent: Agent,
        invocations: list[ToolInvocationItem],
        emit: EventSink | None,
    ) -> list[ToolResultItem]:
        """Execute tool calls with bounded concurrency; each yields exactly one result."""
        semaphore = asyncio.Semaphore(self.max_tool_concurrency)

        async def run_one(invocation: ToolInvocationItem) -> ToolResultItem:
            async with semaphore:
                tool = agent.tool_by_name(invocation.name)
                label = tool.label if tool is not None else None
                if emit is not None:
                    await emit(ToolCalledEvent(item=invocation, label=label))

                if tool is None:
                    outcome = ToolOutcome(f"Unknown tool '{invocation.name}'", is_error=True)
                else:
                    outcome = await tool.invoke(invocation.arguments)

                result = ToolResultItem(
                    call_id=invocation.call_id,
                    name=invocation.name,
                    output=outcome.output,
                    is_error=outcome.is_error,
                )
                if emit is not None:
                    await emit(ToolOutputEvent(item=result, label=label))
                return result

        return list(await asyncio.gather(*(run_one(invocation) for invocation in invocations)))
