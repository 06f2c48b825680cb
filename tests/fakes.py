"""Scripted stand-ins for model backends and tool provider transports."""

from __future__ import annotations

import asyncio
import contextlib
import json
from typing import Any

from agentkoppler.config import ToolProviderConfig
from agentkoppler.tool_transports import Capability, ToolProviderError


class FakeModel:
    """Model that plays back scripted turns.

    A turn is a dict with optional keys `content`, `tool_calls` (list of
    `(name, arguments)` pairs), `usage` (`(prompt, completion)`), `reasoning`,
    `fail` (exception raised after the content was streamed) and `delay`.
    Once the script is exhausted every turn answers `default`.
    `content_chunks` counts streamed content deltas; `closed_streams` counts
    streams that finished or were closed early.
    """

    def __init__(self, turns: list[dict[str, Any]] | None = None, default: str = "ok") -> None:
        self.turns = list(turns or [])
        self.default = default
        self.calls: list[dict[str, Any]] = []
        self.content_chunks = 0
        self.closed_streams = 0

    def _next(self, messages: list[dict[str, Any]], tools: list[dict[str, Any]] | None) -> dict[str, Any]:
        self.calls.append({"messages": [dict(m) for m in messages], "tools": tools})
        if self.turns:
            return self.turns.pop(0)
        return {"content": self.default}

    @staticmethod
    def _tool_calls(turn: dict[str, Any]) -> list[dict[str, Any]]:
        return [
            {
                "id": f"call_{index}_{name}",
                "type": "function",
                "function": {"name": name, "arguments": json.dumps(arguments)},
            }
            for index, (name, arguments) in enumerate(turn.get("tool_calls") or [])
        ]

    async def complete(self, messages, tools=None) -> dict[str, Any]:
        turn = self._next(messages, tools)
        if turn.get("delay"):
            await asyncio.sleep(turn["delay"])
        if turn.get("fail"):
            raise turn["fail"]
        message: dict[str, Any] = {"role": "assistant", "content": turn.get("content")}
        tool_calls = self._tool_calls(turn)
        if tool_calls:
            message["tool_calls"] = tool_calls
        response: dict[str, Any] = {"choices": [{"index": 0, "message": message, "finish_reason": "stop"}]}
        if turn.get("usage"):
            prompt, completion = turn["usage"]
            response["usage"] = {"prompt_tokens": prompt, "completion_tokens": completion}
        return response

    async def stream(self, messages, tools=None):
        try:
            async with contextlib.aclosing(self._stream_turn(self._next(messages, tools))) as chunks:
                async for chunk in chunks:
                    yield chunk
        finally:
            self.closed_streams += 1

    async def _stream_turn(self, turn: dict[str, Any]):
        def chunk(delta: dict[str, Any]) -> dict[str, Any]:
            return {"choices": [{"index": 0, "delta": delta, "finish_reason": None}]}

        yield chunk({"role": "assistant"})
        if turn.get("reasoning"):
            yield chunk({"reasoning_content": turn["reasoning"]})
        for word in str(turn.get("content") or "").split(" "):
            if turn.get("delay"):
                await asyncio.sleep(turn["delay"])
            if word:
                self.content_chunks += 1
                yield chunk({"content": word + " "})
        if turn.get("fail"):
            raise turn["fail"]
        for index, call in enumerate(self._tool_calls(turn)):
            arguments = call["function"]["arguments"]
            half = len(arguments) // 2
            yield chunk({"tool_calls": [{"index": index, "id": call["id"], "function": {"name": call["function"]["name"], "arguments": arguments[:half]}}]})
            yield chunk({"tool_calls": [{"index": index, "function": {"arguments": arguments[half:]}}]})
        if turn.get("usage"):
            prompt, completion = turn["usage"]
            yield {"choices": [], "usage": {"prompt_tokens": prompt, "completion_tokens": completion}}

    def count_messages(self, messages) -> int:
        return 10 * len(messages)

    def count_tokens(self, text: str) -> int:
        return len(text)


class FakeProvider:
    def __init__(self, models: dict[str, FakeModel] | None = None) -> None:
        self.models = models or {}

    def model(self, model_id: str) -> FakeModel:
        return self.models.setdefault(model_id, FakeModel())


class FakeProviderRegistry:
    """Registry with only live providers, keyed by id."""

    def __init__(self, providers: dict[str, FakeProvider]) -> None:
        self.providers = providers
        self.closed = False

    def get(self, provider_id: str | None) -> FakeProvider | None:
        if not provider_id:
            return None
        return self.providers.get(provider_id)

    def models_by_provider(self) -> dict[str, list[str]]:
        return {provider_id: list(provider.models) for provider_id, provider in self.providers.items()}

    async def refresh_models(self) -> dict[str, list[str]]:
        return self.models_by_provider()

    async def close(self) -> None:
        self.closed = True


class FakeTransport:
    """In-memory tool provider; `calls` records every invocation."""

    def __init__(
        self,
        cfg: ToolProviderConfig,
        capabilities: list[Capability] | None = None,
        fail_connect: bool = False,
        list_delay: float = 0.0,
    ) -> None:
        self.cfg = cfg
        self.capabilities = capabilities if capabilities is not None else [Capability("add"), Capability("echo")]
        self.fail_connect = fail_connect
        self.list_delay = list_delay
        self.connected = False
        self.closed = False
        self.list_calls = 0
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def connect(self) -> None:
        if self.fail_connect:
            raise ToolProviderError(f"Connect failed for tool provider '{self.cfg.id}'")
        self.connected = True

    async def list_capabilities(self, force_refresh: bool = False) -> list[Capability]:
        self.list_calls += 1
        if self.list_delay:
            await asyncio.sleep(self.list_delay)
        return list(self.capabilities)

    async def invoke(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        self.calls.append((name, arguments))
        if name == "boom":
            raise ToolProviderError("provider went away")
        if name == "fail":
            return {"content": [{"type": "text", "text": "bad input"}], "isError": True}
        return {"content": [{"type": "text", "text": f"{name}:{json.dumps(arguments, sort_keys=True)}"}]}

    async def close(self) -> None:
        self.closed = True
        self.connected = False


class FakeTransportFactory:
    """Callable handed to `ToolServerManager`; remembers every transport it made."""

    def __init__(self, failing: set[str] | None = None, **transport_kwargs: Any) -> None:
        self.failing = failing or set()
        self.transport_kwargs = transport_kwargs
        self.created: list[FakeTransport] = []

    def __call__(self, cfg: ToolProviderConfig) -> FakeTransport:
        transport = FakeTransport(cfg, fail_connect=cfg.id in self.failing, **self.transport_kwargs)
        self.created.append(transport)
        return transport

    def by_id(self, provider_id: str) -> list[FakeTransport]:
        return [transport for transport in self.created if transport.cfg.id == provider_id]
