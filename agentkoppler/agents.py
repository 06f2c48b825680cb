"""Agent assembler: turns agent configurations into runnable agents."""

from __future__ import annotations

import logging

from .agent_runtime import Agent
from .config import AgentConfig
from .local_actions import create_custom_tools
from .model_providers import ModelProviderRegistry
from .tool_manager import ToolServerManager
from .tools import RunnableTool, describe_tools
from .vault import LocalVaultFileSystem
from .vault_tools import create_vault_tools

LOG = logging.getLogger(__name__)


def _dedupe_tools(agent_name: str, tools: list[RunnableTool]) -> list[RunnableTool]:
    """Keep the first tool per name; later duplicates are dropped."""
    kept: list[RunnableTool] = []
    seen: dict[str, RunnableTool] = {}
    for tool in tools:
        first = seen.get(tool.name)
        if first is not None:
            LOG.warning(
                "Duplicate tool name dropped agent=%s tool=%s kept_source=%s dropped_source=%s",
                agent_name,
                tool.name,
                first.source,
                tool.source,
            )
            continue
        seen[tool.name] = tool
        kept.append(tool)
    return kept


async def build_runnable_agents(
    agent_configs: list[AgentConfig],
    model_providers: ModelProviderRegistry,
    tool_manager: ToolServerManager,
    *,
    vault: LocalVaultFileSystem | None = None,
) -> dict[str, Agent]:
    """Build runnable agents keyed by name.

    Disabled agents are skipped. Agents without a live model provider, without
    a model id, or whose name repeats an earlier agent are skipped with a warning.
    Tools come in order: built-in vault tools, custom tools, external tools.
    """
    agents: dict[str, Agent] = {}
    for cfg in agent_configs:
        if not cfg.enabled:
            continue
        if cfg.name in agents:
            LOG.warning("Duplicate agent name skipped agent=%s id=%s", cfg.name, cfg.id)
            continue
        provider = model_providers.get(cfg.model_provider)
        if provider is None:
            LOG.warning("Agent skipped, model provider unavailable agent=%s provider=%s", cfg.name, cfg.model_provider)
            continue
        if not cfg.model:
            LOG.warning("Agent skipped, no model configured agent=%s", cfg.name)
            continue

        tools = [
            *create_vault_tools(vault, cfg.vault_tools),
            *create_custom_tools(cfg.custom_tools, vault.root if vault is not None else None),
            *await tool_manager.resolve_tools_for_agent(cfg),
        ]
        tools = _dedupe_tools(cfg.name, tools)

        agents[cfg.name] = Agent(
            name=cfg.name,
            instructions=cfg.instructions,
            model=provider.model(cfg.model),
            tools=tools,
            agent_id=cfg.id,
        )
        LOG.info("Agent ready agent=%s model=%s tools=%s", cfg.name, cfg.model, describe_tools(tools))
    return agents
