"""Listening socket lifecycle: an embedded uvicorn server that can be rebound."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
from enum import Enum
from typing import Any, Iterator

import uvicorn

LOG = logging.getLogger(__name__)


class GatewayState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    LISTENING = "listening"
    STOPPING = "stopping"


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to the host."""

    def install_signal_handlers(self) -> None:
        return None

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


def bind_socket(host: str, port: int) -> socket.socket:
    """Bind a listening TCP socket; raises `OSError` when the address is taken."""
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(128)
        sock.set_inheritable(True)
    except OSError:
        sock.close()
        raise
    return sock


class GatewayServer:
    """State machine around one ASGI app's listening socket.

    `STOPPED -> STARTING -> LISTENING` on `start()`; a bind failure returns to
    `STOPPED` with `last_error` set. `LISTENING -> STOPPING -> STOPPED` on `stop()`.
    """

    def __init__(
        self,
        app: Any,
        *,
        shutdown_timeout_seconds: float = 5.0,
        restart_delay_seconds: float = 0.5,
    ) -> None:
        self.app = app
        self.shutdown_timeout_seconds = shutdown_timeout_seconds
        self.restart_delay_seconds = restart_delay_seconds
        self.state = GatewayState.STOPPED
        self.last_error: str | None = None
        self.host: str | None = None
        self.port: int | None = None
        self._server: _EmbeddedServer | None = None
        self._task: asyncio.Task[None] | None = None
        self._socket: socket.socket | None = None

    @property
    def listening(self) -> bool:
        return self.state == GatewayState.LISTENING

    async def start(self, host: str, port: int) -> bool:
        """Bind and serve; returns whether the gateway is listening afterwards."""
        if self.state != GatewayState.STOPPED:
            LOG.warning("Gateway start ignored state=%s", self.state.value)
            return self.listening

        self.host, self.port = host, port
        self.state = GatewayState.STARTING
        try:
            sock = bind_socket(host, port)
        except OSError as exc:
            self.last_error = f"Cannot listen on {host}:{port}: {exc.strerror or exc}"
            LOG.error("Gateway start failed host=%s port=%s error=%s", host, port, exc)
            self.state = GatewayState.STOPPED
            return False

        config = uvicorn.Config(
            self.app,
            log_config=None,
            access_log=False,
            lifespan="off",
            timeout_graceful_shutdown=self.shutdown_timeout_seconds,
        )
        server = _EmbeddedServer(config)
        task = asyncio.create_task(server.serve(sockets=[sock]))
        while not server.started:
            if task.done():
                error = task.exception() if not task.cancelled() else None
                sock.close()
                self.last_error = f"Server exited during startup: {error}"
                LOG.error("Gateway start failed host=%s port=%s error=%s", host, port, error)
                self.state = GatewayState.STOPPED
                return False
            await asyncio.sleep(0.01)

        self._server, self._task, self._socket = server, task, sock
        self.port = sock.getsockname()[1]
        self.last_error = None
        self.state = GatewayState.LISTENING
        LOG.info("Gateway listening on http://%s:%s", host, self.port)
        return True

    async def stop(self) -> None:
        """Stop serving; waits for in-flight requests up to the shutdown timeout, then forces."""
        server, task = self._server, self._task
        if server is None or task is None:
            self.state = GatewayState.STOPPED
            return

        self.state = GatewayState.STOPPING
        server.should_exit = True
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self.shutdown_timeout_seconds + 1.0)
        except asyncio.TimeoutError:
            LOG.warning("Gateway graceful shutdown timed out, forcing")
            server.force_exit = True
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=2.0)
            except asyncio.TimeoutError:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        except Exception as exc:
            LOG.warning("Gateway server exited with error: %s", exc)
        finally:
            if self._socket is not None:
                self._socket.close()
            self._server = self._task = self._socket = None
            self.state = GatewayState.STOPPED
            LOG.info("Gateway stopped")

    async def restart(self, host: str | None = None, port: int | None = None) -> bool:
        """Stop, wait `restart_delay_seconds`, and start again (optionally on a new address)."""
        new_host = host if host is not None else self.host
        new_port = port if port is not None else self.port
        await self.stop()
        await asyncio.sleep(self.restart_delay_seconds)
        if new_host is None or new_port is None:
            return False
        return await self.start(new_host, new_port)
