"""Tool server manager.

Owns one transport per enabled, connected tool provider, tracks provider
status, and turns provider capabilities into runnable tools for agents.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Literal

from .config import AgentConfig, ToolProviderConfig
from .tool_transports import Capability, ToolProviderError, ToolTransport, build_transport
from .tools import RunnableTool, ToolOutcome, sanitize_tool_name, tool_result_text
from .utils import to_bounded_json

LOG = logging.getLogger(__name__)

ProviderState = Literal["connected", "disconnected", "disabled", "error", "reachable"]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ProviderStatus:
    """Status snapshot of one tool provider."""

    provider_id: str
    name: str
    transport: str
    state: ProviderState
    error: str | None = None
    tool_count: int | None = None
    updated_at: str | None = None


class ToolServerManager:
    """Pool of independently-lived tool provider transports."""

    def __init__(self, transport_factory: Callable[[ToolProviderConfig], ToolTransport] = build_transport) -> None:
        self._transport_factory = transport_factory
        self._transports: dict[str, ToolTransport] = {}
        self._status: dict[str, ProviderStatus] = {}
        self._inflight: dict[str, asyncio.Task[list[Capability]]] = {}
        self._lock = asyncio.Lock()

    async def reinitialize_all(self, configs: list[ToolProviderConfig]) -> None:
        """Close every tracked transport, then create and connect the new set."""
        async with self._lock:
            await self._close_all_locked()
            self._status = {}

            unique: list[ToolProviderConfig] = []
            for cfg in configs:
                if cfg.id in self._status:
                    LOG.warning("Duplicate tool provider id skipped provider_id=%s", cfg.id)
                    continue
                if not cfg.enabled:
                    self._set_status(cfg, "disabled")
                    continue
                self._set_status(cfg, "disconnected")
                unique.append(cfg)

            await asyncio.gather(*(self._connect_one(cfg) for cfg in unique))

            LOG.info(
                "Tool providers initialized connected=%s tracked=%s",
                ", ".join(sorted(self._transports)) or "(none)",
                len(self._status),
            )

    async def _connect_one(self, cfg: ToolProviderConfig) -> None:
        try:
            transport = self._transport_factory(cfg)
            await transport.connect()
        except ToolProviderError as exc:
            LOG.warning("Tool provider connect failed provider_id=%s error=%s", cfg.id, exc)
            self._set_status(cfg, "error", error=str(exc))
            return
        self._transports[cfg.id] = transport
        self._set_status(cfg, "connected")

    def _set_status(
        self,
        cfg: ToolProviderConfig,
        state: ProviderState,
        error: str | None = None,
        tool_count: int | None = None,
    ) -> ProviderStatus:
        status = ProviderStatus(
            provider_id=cfg.id,
            name=cfg.name,
            transport=cfg.transport,
            state=state,
            error=error,
            tool_count=tool_count,
            updated_at=_now(),
        )
        self._status[cfg.id] = status
        return status

    def get_transport(self, provider_id: str) -> ToolTransport | None:
        """Return the live transport of a provider, or `None` when absent or disconnected."""
        transport = self._transports.get(provider_id)
        if transport is None or not transport.connected:
            return None
        return transport

    async def _capabilities(self, provider_id: str, force_refresh: bool = False) -> list[Capability]:
        """Fetch capabilities, sharing one in-flight request among concurrent callers."""
        transport = self.get_transport(provider_id)
        if transport is None:
            return []

        task = self._inflight.get(provider_id)
        if task is None:
            task = asyncio.create_task(transport.list_capabilities(force_refresh=force_refresh))
            self._inflight[provider_id] = task
            task.add_done_callback(lambda done, pid=provider_id: self._forget_inflight(pid, done))
        capabilities = await asyncio.shield(task)

        status = self._status.get(provider_id)
        if status is not None and status.state == "connected":
            status.tool_count = len(capabilities)
        return capabilities

    def _forget_inflight(self, provider_id: str, task: asyncio.Task[list[Capability]]) -> None:
        if self._inflight.get(provider_id) is task:
            del self._inflight[provider_id]

    async def list_capability_names_for(self, provider_id: str) -> list[str]:
        return [capability.name for capability in await self._capabilities(provider_id)]

    async def resolve_tools_for_agent(self, agent_cfg: AgentConfig) -> list[RunnableTool]:
        """Wrap the capabilities bound to an agent as runnable tools.

        Absent or disconnected providers are skipped with a warning. A selection
        with `capabilities=None` exposes everything the provider lists.
        """
        tools: list[RunnableTool] = []
        for selection in agent_cfg.tool_providers:
            transport = self.get_transport(selection.provider_id)
            if transport is None:
                LOG.warning(
                    "Tool provider unavailable, skipped agent=%s provider_id=%s",
                    agent_cfg.name,
                    selection.provider_id,
                )
                continue

            allowed = set(selection.capabilities) if selection.capabilities is not None else None
            for capability in await self._capabilities(selection.provider_id):
                if allowed is not None and capability.name not in allowed:
                    continue
                tools.append(self._wrap_capability(transport, capability))
        return tools

    @staticmethod
    def _wrap_capability(transport: ToolTransport, capability: Capability) -> RunnableTool:
        provider_id = transport.cfg.id

        async def handler(arguments: dict[str, Any]) -> ToolOutcome:
            LOG.info("dispatching tool call provider_id=%s tool=%s", provider_id, capability.name)
            try:
                result = await transport.invoke(capability.name, arguments)
            except ToolProviderError as exc:
                LOG.warning("Tool call failed provider_id=%s tool=%s error=%s", provider_id, capability.name, exc)
                return ToolOutcome(f"Tool provider error: {exc}", is_error=True)
            if LOG.isEnabledFor(logging.DEBUG):
                LOG.debug(
                    "Tool call result provider_id=%s tool=%s result=%s",
                    provider_id,
                    capability.name,
                    to_bounded_json(result),
                )
            return ToolOutcome(tool_result_text(result), is_error=bool(result.get("isError")))

        return RunnableTool(
            name=sanitize_tool_name(capability.name),
            description=capability.description,
            parameters=capability.input_schema,
            handler=handler,
            source="external",
        )

    async def close_all(self) -> None:
        async with self._lock:
            await self._close_all_locked()

    async def _close_all_locked(self) -> None:
        self._inflight.clear()

        transports = self._transports
        self._transports = {}
        for provider_id, transport in transports.items():
            try:
                await transport.close()
            except Exception:
                LOG.warning("Tool provider close failed provider_id=%s", provider_id, exc_info=True)
            status = self._status.get(provider_id)
            if status is not None and status.state == "connected":
                status.state = "disconnected"
                status.updated_at = _now()

    async def test_connection(self, cfg: ToolProviderConfig) -> ProviderStatus:
        """Connect a throw-away transport, list its capabilities, and close it again.

        The result is recorded unless the provider is currently live. A successful
        test yields state `reachable`, which describes the test and not a live
        transport, so `get_status` leaves it alone.
        """
        try:
            transport = self._transport_factory(cfg)
            await transport.connect()
        except ToolProviderError as exc:
            status = ProviderStatus(cfg.id, cfg.name, cfg.transport, "error", error=str(exc), updated_at=_now())
        else:
            try:
                capabilities = await transport.list_capabilities(force_refresh=True)
                status = ProviderStatus(
                    cfg.id, cfg.name, cfg.transport, "reachable", tool_count=len(capabilities), updated_at=_now()
                )
            finally:
                await transport.close()

        if self.get_transport(cfg.id) is None:
            self._status[cfg.id] = status
        LOG.info("Tool provider test provider_id=%s state=%s error=%s", cfg.id, status.state, status.error)
        return status

    def get_status(self, provider_id: str) -> ProviderStatus | None:
        status = self._status.get(provider_id)
        if status is not None and status.state == "connected" and self.get_transport(provider_id) is None:
            status.state = "disconnected"
            status.updated_at = _now()
        return status

    def get_health(self) -> dict[str, Any]:
        """Return aggregated provider health."""
        statuses = [self.get_status(provider_id) for provider_id in list(self._status)]
        providers = [asdict(status) for status in statuses if status is not None]
        degraded = any(item["state"] in {"error", "disconnected"} for item in providers)
        return {"ok": not degraded, "degraded": degraded, "tool_providers": providers}
