"""Application context: owns every runtime component and reconfigures them."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .agent_runtime import Agent, Runner
from .agents import build_runnable_agents
from .app import create_app
from .config import GatewayConfig, load_config
from .logging_utils import setup_logging
from .model_providers import ModelProviderRegistry
from .server import GatewayServer
from .tool_manager import ToolServerManager
from .vault import LocalVaultFileSystem

LOG = logging.getLogger(__name__)


def _build_runner(cfg: GatewayConfig) -> Runner:
    return Runner(
        max_turns=int(cfg.max_turns or 8),
        max_tool_concurrency=int(cfg.max_tool_concurrency or 4),
        stream_buffer_size=int(cfg.stream_buffer_size or 64),
        estimate_usage=cfg.estimate_usage,
    )


def _build_vault(cfg: GatewayConfig) -> LocalVaultFileSystem | None:
    return LocalVaultFileSystem(cfg.vault_path) if cfg.vault_path else None


def _dump(models: list[Any]) -> list[dict[str, Any]]:
    return [model.model_dump(mode="json") for model in models]


def _used_model_providers(cfg: GatewayConfig) -> set[str]:
    return {agent.model_provider for agent in cfg.agents if agent.enabled and agent.model_provider}


class AppContext:
    """Everything one running gateway consists of.

    Reconfiguration (`apply_config`) is serialized; concurrent calls queue.
    """

    def __init__(self, cfg: GatewayConfig, config_path: Path | None = None) -> None:
        self.cfg = cfg
        self.config_path = config_path
        self.tool_manager = ToolServerManager()
        self.model_providers = ModelProviderRegistry(cfg.model_providers, cfg.agents)
        self.runner = _build_runner(cfg)
        self.vault = _build_vault(cfg)
        self.agents: dict[str, Agent] = {}
        self.app = create_app(self)
        self.server = GatewayServer(
            self.app,
            shutdown_timeout_seconds=float(cfg.shutdown_timeout_seconds or 5.0),
            restart_delay_seconds=float(cfg.restart_delay_seconds or 0.5),
        )
        self._reconfigure_lock = asyncio.Lock()
        self._models_task: asyncio.Task[Any] | None = None

    async def start(self) -> bool:
        """Connect tool providers, build agents, and open the listening socket."""
        async with self._reconfigure_lock:
            await self.tool_manager.reinitialize_all(self.cfg.tool_providers)
            self._refresh_models_in_background()
            await self.rebuild_agents()
            return await self._open_socket()

    async def stop(self) -> None:
        """Close the socket and release every transport and HTTP client."""
        async with self._reconfigure_lock:
            await self.server.stop()
            if self._models_task is not None and not self._models_task.done():
                self._models_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._models_task
            await self.tool_manager.close_all()
            await self.model_providers.close()
            self.agents = {}

    async def restart(self) -> bool:
        """Close and reopen the listening socket."""
        async with self._reconfigure_lock:
            return await self._restart()

    async def _restart(self) -> bool:
        await self.server.stop()
        await asyncio.sleep(self.server.restart_delay_seconds)
        return await self._open_socket()

    async def _open_socket(self) -> bool:
        if not self.cfg.is_control_device():
            LOG.info(
                "Not the control device, gateway stays closed device_id=%s control_device_id=%s",
                self.cfg.device_id,
                self.cfg.control_device_id,
            )
            return False
        return await self.server.start(self.cfg.host, self.cfg.port)

    def _refresh_models_in_background(self) -> None:
        self._models_task = asyncio.create_task(self.model_providers.refresh_models())

    async def rebuild_agents(self) -> None:
        self.agents = await build_runnable_agents(
            self.cfg.agents,
            self.model_providers,
            self.tool_manager,
            vault=self.vault,
        )
        LOG.info("Agents available: %s", ", ".join(sorted(self.agents)) or "(none)")

    async def apply_config(self, new_cfg: GatewayConfig) -> None:
        """Switch to `new_cfg`, tearing down and recreating only what changed."""
        async with self._reconfigure_lock:
            old_cfg = self.cfg
            self.cfg = new_cfg

            if old_cfg.logging != new_cfg.logging and new_cfg.logging is not None:
                setup_logging(new_cfg.logging)

            tool_providers_changed = _dump(old_cfg.tool_providers) != _dump(new_cfg.tool_providers)
            agent_ids_changed = {a.id for a in old_cfg.agents} != {a.id for a in new_cfg.agents}
            address_changed = (
                (old_cfg.host, old_cfg.port) != (new_cfg.host, new_cfg.port)
                or old_cfg.is_control_device() != new_cfg.is_control_device()
            )
            model_providers_changed = _dump(old_cfg.model_providers) != _dump(new_cfg.model_providers) or (
                _used_model_providers(old_cfg) != _used_model_providers(new_cfg)
            )

            self.runner = _build_runner(new_cfg)
            self.server.shutdown_timeout_seconds = float(new_cfg.shutdown_timeout_seconds or 5.0)
            self.server.restart_delay_seconds = float(new_cfg.restart_delay_seconds or 0.5)
            if old_cfg.vault_path != new_cfg.vault_path:
                self.vault = _build_vault(new_cfg)

            LOG.info(
                "Applying settings tool_providers_changed=%s agent_ids_changed=%s address_changed=%s "
                "model_providers_changed=%s",
                tool_providers_changed,
                agent_ids_changed,
                address_changed,
                model_providers_changed,
            )

            if tool_providers_changed:
                await self.tool_manager.reinitialize_all(new_cfg.tool_providers)

            old_registry: ModelProviderRegistry | None = None
            if model_providers_changed:
                old_registry = self.model_providers
                self.model_providers = ModelProviderRegistry(new_cfg.model_providers, new_cfg.agents)
                self._refresh_models_in_background()

            await self.rebuild_agents()

            if old_registry is not None:
                await old_registry.close()

            if tool_providers_changed or agent_ids_changed or address_changed:
                await self._restart()

    async def reload_from_file(self, path: Path) -> None:
        """Load the settings file and apply it; the device id is kept."""
        new_cfg = load_config(str(path))
        if not new_cfg.device_id and self.cfg.device_id:
            new_cfg = new_cfg.model_copy(update={"device_id": self.cfg.device_id})
        await self.apply_config(new_cfg)

    def health(self) -> dict[str, Any]:
        tool_health = self.tool_manager.get_health()
        return {
            "service": "agentkoppler",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "state": self.server.state.value,
            "last_error": self.server.last_error,
            "device_id": self.cfg.device_id,
            "control_device_id": self.cfg.control_device_id or None,
            "agents": sorted(self.agents),
            "models": self.model_providers.models_by_provider(),
            **tool_health,
        }
