"""FastAPI application factory and CLI entry point for agentkoppler."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from dataclasses import asdict
from pathlib import Path
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from .chat_handlers import handle_chat_completion
from .config import GatewayConfig, ensure_device_id, load_config, resolve_config_path
from .config_reload import ConfigReloadWatcher
from .logging_utils import setup_logging
from .tool_manager import ToolServerManager
from .wire_codec import build_models_payload

if TYPE_CHECKING:
    from .context import AppContext

LOG = logging.getLogger(__name__)


def create_app(context: "AppContext") -> FastAPI:
    """Create the HTTP surface; handlers read the context's current agents and runner."""
    app = FastAPI(title="agentkoppler", version="0.1.0")

    @app.get("/healthz")
    async def healthz() -> JSONResponse:
        """Return gateway state, agents, and tool provider health."""
        return JSONResponse(context.health())

    @app.get("/v1/models")
    async def v1_models() -> JSONResponse:
        """List runnable agents as models."""
        return JSONResponse(build_models_payload(list(context.agents)))

    @app.post("/v1/chat/completions", response_model=None)
    async def v1_chat_completions(request: Request) -> JSONResponse | StreamingResponse:
        """OpenAI-compatible chat completions endpoint."""
        return await handle_chat_completion(
            request,
            agents=context.agents,
            runner=context.runner,
            keepalive_seconds=float(context.cfg.stream_keepalive_seconds or 0.0),
        )

    return app


async def serve(cfg: GatewayConfig, config_path: Path) -> None:
    """Run the gateway until SIGINT/SIGTERM, applying settings file changes on save."""
    from .context import AppContext

    context = AppContext(cfg, config_path)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)

    listening = await context.start()
    if not listening and cfg.is_control_device():
        LOG.warning("Gateway not listening (%s); waiting for a settings change", context.server.last_error)

    watcher = ConfigReloadWatcher(config_file=config_path, on_reload=context.reload_from_file)
    watcher_task = asyncio.create_task(watcher.run_forever())
    try:
        await stop_event.wait()
        LOG.info("Shutdown requested")
    finally:
        watcher_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher_task
        await context.stop()


async def check_tool_providers(cfg: GatewayConfig) -> int:
    """Connect each enabled tool provider once and print its status as a JSON line.

    Returns the process exit code: 0 when every provider connected, 1 otherwise.
    """
    manager = ToolServerManager()
    failures = 0
    for provider in cfg.tool_providers:
        if not provider.enabled:
            continue
        status = await manager.test_connection(provider)
        print(json.dumps(asdict(status), ensure_ascii=False))
        if status.state != "reachable":
            failures += 1
    return 1 if failures else 0


def main() -> None:
    """CLI entry point: load settings, then serve until interrupted."""

    def fail(message: str, exit_code: int = 2) -> None:
        """Print startup error and terminate process."""
        print(f"ERROR: {message}", file=sys.stderr)
        raise SystemExit(exit_code)

    parser = argparse.ArgumentParser(description="agentkoppler gateway")
    parser.add_argument("--config", default=None, help="Path to settings YAML")
    parser.add_argument(
        "--check-tool-providers",
        action="store_true",
        help="Connect every enabled tool provider once, print its status, and exit",
    )
    args = parser.parse_args()

    config_path = resolve_config_path(args.config)
    try:
        cfg = load_config(str(config_path))
    except ValidationError as exc:
        missing = sorted(
            {".".join(str(x) for x in err.get("loc", [])) for err in exc.errors() if err.get("type") == "missing"}
        )
        if missing:
            fail("Configuration incomplete. Missing required fields: " + ", ".join(missing))
        fail(f"Invalid configuration: {exc}")
    except Exception as exc:
        fail(f"Failed to load configuration: {exc}")

    setup_logging(cfg.logging)
    if args.check_tool_providers:
        raise SystemExit(asyncio.run(check_tool_providers(cfg)))

    try:
        cfg = ensure_device_id(cfg, config_path)
    except OSError as exc:
        LOG.warning("Could not persist device id to %s: %s", config_path, exc)
        cfg = ensure_device_id(cfg, None)
    LOG.info("Starting agentkoppler config=%s device_id=%s", config_path, cfg.device_id)

    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(serve(cfg, config_path))


if __name__ == "__main__":
    main()
