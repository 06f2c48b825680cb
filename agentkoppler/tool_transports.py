"""MCP tool provider transports for stdio and SSE servers."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator
from urllib.parse import urljoin

import httpx

from .config import ToolProviderConfig
from .utils import to_bounded_json

LOG = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "agentkoppler", "version": "0.1.0"}

# Locations probed when a stdio command is not found on PATH.
COMMON_BIN_DIRS = ("/opt/homebrew/bin", "/usr/local/bin", "/usr/bin")

# Tool listings of large servers easily exceed asyncio's 64 KiB line default.
STDIO_STREAM_LIMIT = 16 * 1024 * 1024

LIST_CHANGED_METHODS = {"notifications/tools/list_changed", "tools/list_changed"}


class ToolProviderError(Exception):
    """Raised for tool provider connection, protocol, and invocation errors."""


@dataclass
class Capability:
    """One tool advertised by a provider."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})


def resolve_command(command: str, env: dict[str, str]) -> str:
    """Locate `command`, probing common install directories when PATH misses it.

    When found in a probed directory, that directory is prepended to `env["PATH"]`
    so helper binaries next to it resolve as well.
    """
    if os.sep in command:
        return command
    if shutil.which(command, path=env.get("PATH")):
        return command
    for directory in COMMON_BIN_DIRS:
        candidate = os.path.join(directory, command)
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            current = env.get("PATH", "")
            env["PATH"] = directory + (os.pathsep + current if current else "")
            return candidate
    return command


async def iter_sse_events(lines: AsyncIterator[str]) -> AsyncIterator[tuple[str, str]]:
    """Yield `(event_name, data)` pairs from an SSE line stream."""
    event_name = "message"
    data_lines: list[str] = []

    async for line in lines:
        if line == "":
            if data_lines:
                yield event_name, "\n".join(data_lines)
            event_name = "message"
            data_lines = []
            continue
        if line.startswith(":"):
            continue
        if line.startswith("event:"):
            event_name = line[6:].strip() or "message"
            continue
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())

    if data_lines:
        yield event_name, "\n".join(data_lines)


class ToolTransport(ABC):
    """JSON-RPC session with one tool provider.

    Requests carry ids; a reader routes responses to per-request futures, so
    concurrent `invoke()` calls are safe. Writes are serialized.
    """

    def __init__(self, cfg: ToolProviderConfig) -> None:
        self.cfg = cfg
        self._next_id = 0
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._write_lock = asyncio.Lock()
        self._connected = False
        self._capabilities_cache: list[Capability] | None = None

    @property
    def connected(self) -> bool:
        return self._connected

    @abstractmethod
    async def _open(self) -> None:
        """Acquire transport resources and start reading."""

    @abstractmethod
    async def _send(self, payload: dict[str, Any]) -> None:
        """Deliver one JSON-RPC message."""

    @abstractmethod
    async def _teardown(self) -> None:
        """Release transport resources."""

    async def connect(self) -> None:
        """Open the transport and run the MCP handshake.

        Raises `ToolProviderError` on failure; partially opened resources are released.
        """
        if self._connected:
            return
        try:
            await self._open()
            await self._rpc(
                "initialize",
                {"protocolVersion": PROTOCOL_VERSION, "capabilities": {}, "clientInfo": CLIENT_INFO},
                timeout=self.cfg.connect_timeout_seconds,
            )
            await self._notify("notifications/initialized")
        except Exception as exc:
            await self._teardown()
            self._fail_pending(ToolProviderError(f"Connect failed for tool provider '{self.cfg.id}'"))
            if isinstance(exc, ToolProviderError):
                raise
            raise ToolProviderError(f"Connect failed for tool provider '{self.cfg.id}': {exc}") from exc

        self._connected = True
        LOG.info("Tool provider connected provider_id=%s transport=%s", self.cfg.id, self.cfg.transport)

    async def close(self) -> None:
        """Close the transport; pending calls fail."""
        self._connected = False
        await self._teardown()
        self._fail_pending(ToolProviderError(f"Tool provider '{self.cfg.id}' closed"))
        self._capabilities_cache = None

    async def _write(self, payload: dict[str, Any]) -> None:
        async with self._write_lock:
            await self._send(payload)

    async def _rpc(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Execute one JSON-RPC request and return its `result` object."""
        async with self._write_lock:
            self._next_id += 1
            req_id = self._next_id
            future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
            self._pending[req_id] = future
            try:
                await self._send({"jsonrpc": "2.0", "id": req_id, "method": method, "params": params or {}})
            except Exception:
                self._pending.pop(req_id, None)
                raise

        try:
            msg = await asyncio.wait_for(future, timeout=timeout or self.cfg.read_timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise ToolProviderError(f"'{method}' timed out for tool provider '{self.cfg.id}'") from exc
        finally:
            self._pending.pop(req_id, None)

        if "error" in msg:
            raise ToolProviderError(json.dumps(msg["error"], ensure_ascii=False))
        result = msg.get("result")
        return result if isinstance(result, dict) else {}

    async def _notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        await self._write({"jsonrpc": "2.0", "method": method, "params": params or {}})

    async def _dispatch(self, msg: dict[str, Any]) -> None:
        """Route one inbound message: responses, server requests, notifications."""
        method = msg.get("method")
        if isinstance(method, str):
            if "id" in msg:
                if method == "ping":
                    reply: dict[str, Any] = {"jsonrpc": "2.0", "id": msg["id"], "result": {}}
                else:
                    reply = {
                        "jsonrpc": "2.0",
                        "id": msg["id"],
                        "error": {"code": -32601, "message": f"Method not found: {method}"},
                    }
                try:
                    await self._write(reply)
                except ToolProviderError as exc:
                    LOG.debug("Reply to server request failed provider_id=%s error=%s", self.cfg.id, exc)
            elif method in LIST_CHANGED_METHODS:
                LOG.info("Tool list changed provider_id=%s", self.cfg.id)
                self._capabilities_cache = None
            return

        if "id" not in msg:
            return
        try:
            req_id = int(msg["id"])
        except (TypeError, ValueError):
            return
        future = self._pending.pop(req_id, None)
        if future and not future.done():
            future.set_result(msg)

    def _fail_pending(self, exc: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(exc)
        self._pending.clear()

    def _mark_closed(self, reason: str) -> None:
        if self._connected:
            LOG.warning("Tool provider disconnected provider_id=%s reason=%s", self.cfg.id, reason)
        self._connected = False
        self._fail_pending(ToolProviderError(reason))

    async def list_capabilities(self, force_refresh: bool = False) -> list[Capability]:
        """List provider capabilities; failures are logged and yield an empty list."""
        if not force_refresh and self.cfg.cache_tools_list and self._capabilities_cache is not None:
            return list(self._capabilities_cache)
        try:
            capabilities = await self._fetch_capabilities()
        except ToolProviderError as exc:
            LOG.warning("Capability listing failed provider_id=%s error=%s", self.cfg.id, exc)
            return []
        if self.cfg.cache_tools_list:
            self._capabilities_cache = capabilities
        return list(capabilities)

    async def _fetch_capabilities(self) -> list[Capability]:
        if not self._connected:
            raise ToolProviderError(f"Tool provider '{self.cfg.id}' is not connected")

        capabilities: list[Capability] = []
        seen_cursors: set[str] = set()
        cursor: str | None = None
        while True:
            result = await self._rpc("tools/list", {"cursor": cursor} if cursor else {})
            for tool in result.get("tools") or []:
                if not isinstance(tool, dict) or not tool.get("name"):
                    continue
                schema = tool.get("inputSchema")
                capabilities.append(
                    Capability(
                        name=str(tool["name"]),
                        description=str(tool.get("description") or ""),
                        input_schema=schema if isinstance(schema, dict) else {"type": "object", "properties": {}},
                    )
                )
            next_cursor = result.get("nextCursor")
            if not next_cursor or next_cursor in seen_cursors:
                break
            seen_cursors.add(next_cursor)
            cursor = str(next_cursor)

        LOG.debug("Capabilities listed provider_id=%s count=%s", self.cfg.id, len(capabilities))
        return capabilities

    async def invoke(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Call one capability and return the raw MCP result (`content`, `isError`)."""
        if not self._connected:
            raise ToolProviderError(f"Tool provider '{self.cfg.id}' is not connected")
        LOG.debug(
            "Tool invoke provider_id=%s name=%s arguments=%s",
            self.cfg.id,
            name,
            to_bounded_json(arguments, max_len=2000),
        )
        return await self._rpc(
            "tools/call",
            {"name": name, "arguments": arguments},
            timeout=self.cfg.tool_call_timeout_seconds,
        )


class StdioToolTransport(ToolTransport):
    """Child-process provider speaking newline-delimited JSON-RPC."""

    def __init__(self, cfg: ToolProviderConfig) -> None:
        super().__init__(cfg)
        self._proc: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None

    async def _open(self) -> None:
        if not self.cfg.command:
            raise ToolProviderError(f"Missing command for tool provider '{self.cfg.id}'")

        env = {**os.environ, **self.cfg.env}
        command = resolve_command(self.cfg.command, env)
        try:
            self._proc = await asyncio.create_subprocess_exec(
                command,
                *self.cfg.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=STDIO_STREAM_LIMIT,
            )
        except OSError as exc:
            raise ToolProviderError(f"Failed to start '{self.cfg.command}' for tool provider '{self.cfg.id}': {exc}") from exc

        if self._proc.stdout is None or self._proc.stderr is None:
            raise ToolProviderError(f"Tool provider '{self.cfg.id}' started without stdio pipes")
        self._reader_task = asyncio.create_task(self._reader_loop(self._proc.stdout))
        self._stderr_task = asyncio.create_task(self._drain_stderr(self._proc.stderr))

    async def _send(self, payload: dict[str, Any]) -> None:
        proc = self._proc
        if proc is None or proc.stdin is None or proc.returncode is not None:
            raise ToolProviderError(f"Tool provider '{self.cfg.id}' process is not running")
        data = json.dumps(payload, ensure_ascii=False).encode("utf-8") + b"\n"
        try:
            proc.stdin.write(data)
            await proc.stdin.drain()
        except (ConnectionError, RuntimeError) as exc:
            raise ToolProviderError(f"Write to tool provider '{self.cfg.id}' failed: {exc}") from exc

    async def _reader_loop(self, stdout: asyncio.StreamReader) -> None:
        reason = f"Tool provider '{self.cfg.id}' stdout closed"
        try:
            while True:
                line = await stdout.readline()
                if not line:
                    break
                line = line.strip()
                if not line:
                    continue
                try:
                    msg = json.loads(line.decode("utf-8"))
                except (UnicodeDecodeError, json.JSONDecodeError):
                    LOG.debug("Ignoring non-JSON line provider_id=%s line=%r", self.cfg.id, line[:200])
                    continue
                if isinstance(msg, dict):
                    await self._dispatch(msg)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            reason = f"Tool provider '{self.cfg.id}' stream error: {exc}"
        self._mark_closed(reason)

    async def _drain_stderr(self, stderr: asyncio.StreamReader) -> None:
        with contextlib.suppress(asyncio.CancelledError, ValueError, ConnectionError):
            while True:
                line = await stderr.readline()
                if not line:
                    return
                LOG.debug("Tool provider stderr provider_id=%s %s", self.cfg.id, line.decode("utf-8", "replace").rstrip())

    async def _teardown(self) -> None:
        for task in (self._reader_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._reader_task = None
        self._stderr_task = None

        proc = self._proc
        self._proc = None
        if proc is None or proc.returncode is not None:
            return
        if proc.stdin is not None:
            with contextlib.suppress(Exception):
                proc.stdin.close()
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=5.0)
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()


class SSEToolTransport(ToolTransport):
    """Provider reached over an SSE event stream plus POSTed requests."""

    def __init__(self, cfg: ToolProviderConfig) -> None:
        super().__init__(cfg)
        self._client: httpx.AsyncClient | None = None
        self._stream_task: asyncio.Task[None] | None = None
        self._endpoint: str | None = None
        self._endpoint_ready = asyncio.Event()
        self._stream_error: str | None = None

    async def _open(self) -> None:
        if not self.cfg.url:
            raise ToolProviderError(f"Missing url for tool provider '{self.cfg.id}'")

        timeout = httpx.Timeout(
            connect=self.cfg.connect_timeout_seconds,
            read=None,
            write=self.cfg.read_timeout_seconds,
            pool=self.cfg.connect_timeout_seconds,
        )
        self._client = httpx.AsyncClient(timeout=timeout, follow_redirects=True)
        self._endpoint = None
        self._stream_error = None
        self._endpoint_ready = asyncio.Event()
        self._stream_task = asyncio.create_task(self._stream_loop(self._client, self.cfg.url))

        try:
            await asyncio.wait_for(self._endpoint_ready.wait(), timeout=self.cfg.connect_timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise ToolProviderError(f"No endpoint event from tool provider '{self.cfg.id}'") from exc
        if self._endpoint is None:
            raise ToolProviderError(self._stream_error or f"SSE stream of tool provider '{self.cfg.id}' closed")

    async def _stream_loop(self, client: httpx.AsyncClient, url: str) -> None:
        reason = f"SSE stream of tool provider '{self.cfg.id}' ended"
        try:
            async with client.stream("GET", url, headers={"Accept": "text/event-stream"}) as response:
                if response.status_code >= 400:
                    raise ToolProviderError(f"SSE stream of '{self.cfg.id}' returned HTTP {response.status_code}")
                async for event_name, data in iter_sse_events(response.aiter_lines()):
                    await self._handle_event(event_name, data, url)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            reason = f"SSE stream of tool provider '{self.cfg.id}' failed: {exc}"
        self._stream_error = reason
        self._endpoint_ready.set()
        self._mark_closed(reason)

    async def _handle_event(self, event_name: str, data: str, url: str) -> None:
        if event_name == "endpoint":
            self._endpoint = urljoin(url, data.strip())
            LOG.debug("SSE endpoint provider_id=%s endpoint=%s", self.cfg.id, self._endpoint)
            self._endpoint_ready.set()
            return
        if event_name != "message":
            return
        try:
            msg = json.loads(data)
        except json.JSONDecodeError:
            LOG.debug("Ignoring non-JSON SSE data provider_id=%s", self.cfg.id)
            return
        if isinstance(msg, dict):
            await self._dispatch(msg)

    async def _send(self, payload: dict[str, Any]) -> None:
        if self._client is None or self._endpoint is None:
            raise ToolProviderError(f"Tool provider '{self.cfg.id}' has no open session")
        try:
            response = await self._client.post(
                self._endpoint,
                json=payload,
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise ToolProviderError(f"POST to tool provider '{self.cfg.id}' failed: {exc}") from exc
        if response.status_code >= 400:
            raise ToolProviderError(f"POST to tool provider '{self.cfg.id}' returned HTTP {response.status_code}")

    async def _teardown(self) -> None:
        if self._stream_task is not None and not self._stream_task.done():
            self._stream_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._stream_task
        self._stream_task = None
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self._endpoint = None


def build_transport(cfg: ToolProviderConfig) -> ToolTransport:
    """Create an unconnected transport for `cfg`."""
    match cfg.transport:
        case "stdio":
            return StdioToolTransport(cfg)
        case "sse":
            return SSEToolTransport(cfg)
        case _:
            raise ToolProviderError(f"Unsupported transport '{cfg.transport}' for tool provider '{cfg.id}'")
