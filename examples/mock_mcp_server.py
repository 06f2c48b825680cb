"""Minimal MCP tool server speaking newline-delimited JSON-RPC over stdio.

Run with `python examples/mock_mcp_server.py`. Only the standard library is
used so the server starts quickly as a child process.

Environment:
    MOCK_MCP_PAGE_SIZE  tools per `tools/list` page (default 2)
"""

from __future__ import annotations

import json
import os
import sys
import threading
import time
from typing import Any

TOOLS: list[dict[str, Any]] = [
    {
        "name": "add",
        "description": "Adds two numbers",
        "inputSchema": {
            "type": "object",
            "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
            "required": ["a", "b"],
        },
    },
    {
        "name": "echo",
        "description": "Returns the given text",
        "inputSchema": {"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]},
    },
    {
        "name": "fail",
        "description": "Always reports a tool error",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "slow",
        "description": "Sleeps for `seconds` and returns them",
        "inputSchema": {"type": "object", "properties": {"seconds": {"type": "number"}}},
    },
    {
        "name": "notify_changed",
        "description": "Announces a changed tool list",
        "inputSchema": {"type": "object", "properties": {}},
    },
]


def _text(text: str, is_error: bool = False) -> dict[str, Any]:
    return {"content": [{"type": "text", "text": text}], "isError": is_error}


def list_tools(cursor: str | None, page_size: int) -> dict[str, Any]:
    start = int(cursor or 0)
    page = TOOLS[start : start + page_size]
    result: dict[str, Any] = {"tools": page}
    if start + page_size < len(TOOLS):
        result["nextCursor"] = str(start + page_size)
    return result


def call_tool(name: str, args: dict[str, Any]) -> tuple[dict[str, Any] | None, list[dict[str, Any]]]:
    """Return `(result, notifications)`; `None` means the tool is unknown."""
    if name == "add":
        total = float(args.get("a", 0)) + float(args.get("b", 0))
        return _text(str(total)), []
    if name == "echo":
        return _text(str(args.get("text", ""))), []
    if name == "fail":
        return _text("tool failed on purpose", is_error=True), []
    if name == "slow":
        seconds = float(args.get("seconds", 0.2))
        time.sleep(seconds)
        return _text(str(seconds)), []
    if name == "notify_changed":
        return _text("ok"), [{"jsonrpc": "2.0", "method": "notifications/tools/list_changed"}]
    return None, []


def handle_message(msg: dict[str, Any], page_size: int = 2) -> list[dict[str, Any]]:
    """Handle one inbound JSON-RPC message and return the messages to send back."""
    method = msg.get("method")
    req_id = msg.get("id")
    params = msg.get("params") or {}

    if req_id is None:
        return []
    if method == "initialize":
        result: dict[str, Any] = {
            "protocolVersion": params.get("protocolVersion", "2024-11-05"),
            "capabilities": {"tools": {"listChanged": True}},
            "serverInfo": {"name": "mock-mcp", "version": "0.1.0"},
        }
        return [{"jsonrpc": "2.0", "id": req_id, "result": result}]
    if method == "ping":
        return [{"jsonrpc": "2.0", "id": req_id, "result": {}}]
    if method == "tools/list":
        return [{"jsonrpc": "2.0", "id": req_id, "result": list_tools(params.get("cursor"), page_size)}]
    if method == "tools/call":
        result, notifications = call_tool(str(params.get("name")), params.get("arguments") or {})
        if result is None:
            return [{"jsonrpc": "2.0", "id": req_id, "error": {"code": -32602, "message": "unknown tool"}}]
        return [*notifications, {"jsonrpc": "2.0", "id": req_id, "result": result}]
    return [{"jsonrpc": "2.0", "id": req_id, "error": {"code": -32601, "message": "method not found"}}]


def main() -> None:
    page_size = int(os.environ.get("MOCK_MCP_PAGE_SIZE", "2"))
    write_lock = threading.Lock()

    def send(messages: list[dict[str, Any]]) -> None:
        with write_lock:
            for out in messages:
                sys.stdout.write(json.dumps(out) + "\n")
            sys.stdout.flush()

    def serve_one(msg: dict[str, Any]) -> None:
        send(handle_message(msg, page_size))

    print("mock-mcp ready", file=sys.stderr, flush=True)
    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        msg = json.loads(line)
        if msg.get("method") == "tools/call" and (msg.get("params") or {}).get("name") == "crash":
            os._exit(3)
        if msg.get("method") == "tools/call":
            threading.Thread(target=serve_one, args=(msg,), daemon=True).start()
        else:
            serve_one(msg)


if __name__ == "__main__":
    main()
