"""Configuration models and loaders for agentkoppler.

This module defines the settings schema (device identity, listening address,
model providers, tool providers, agents) and how values are loaded from YAML
plus environment variable overrides. The YAML file doubles as the persistent
settings store: `save_config` writes it back.
"""

from __future__ import annotations

import os
import uuid
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

DEFAULT_CONFIG_PATH = "agentkoppler/config.yaml"

ModelProviderKind = Literal["lmstudio", "ollama", "openai"]

DEFAULT_MODEL_PROVIDER_BASE_URLS: dict[str, str] = {
    "lmstudio": "http://localhost:1234/v1",
    "ollama": "http://localhost:11434/v1",
    "openai": "https://api.openai.com/v1",
}


class LoggingConfig(BaseModel):
    """Logging-related configuration."""

    model_config = ConfigDict(populate_by_name=True)

    level: str = "INFO"
    json_logs: bool = Field(default=False, alias="json")
    loggers: dict[str, str] = Field(default_factory=dict)


class ModelProviderConfig(BaseModel):
    """Configuration for one OpenAI-compatible model backend."""

    id: str
    kind: ModelProviderKind
    label: str | None = None
    base_url: str | None = None
    api_key: str | None = None
    request_timeout_seconds: float = 300.0

    @model_validator(mode="after")
    def _apply_kind_defaults(self) -> "ModelProviderConfig":
        """Fill in the well-known base URL for the provider kind."""
        if not self.base_url:
            self.base_url = DEFAULT_MODEL_PROVIDER_BASE_URLS[self.kind]
        if not self.label:
            self.label = self.kind
        return self


class ToolProviderConfig(BaseModel):
    """Configuration for one external tool provider (MCP server)."""

    id: str
    name: str = ""
    enabled: bool = True
    transport: Literal["stdio", "sse"] = "stdio"
    command: str | None = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    url: str | None = None
    cache_tools_list: bool = True
    connect_timeout_seconds: float = 10.0
    read_timeout_seconds: float = 60.0
    tool_call_timeout_seconds: float = 60.0

    @field_validator("args", mode="before")
    @classmethod
    def _split_comma_separated_args(cls, value: Any) -> Any:
        """Accept `-y,@scope/server,--flag` style argument strings."""
        if value is None:
            return []
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("env", mode="before")
    @classmethod
    def _env_pairs_to_mapping(cls, value: Any) -> Any:
        """Accept `[{name, value}, ...]` lists as well as plain mappings."""
        if value is None:
            return {}
        if isinstance(value, list):
            mapped: dict[str, str] = {}
            for entry in value:
                if isinstance(entry, dict) and entry.get("name"):
                    mapped[str(entry["name"])] = str(entry.get("value") or "")
            return mapped
        return value

    @model_validator(mode="after")
    def _default_name(self) -> "ToolProviderConfig":
        """Fall back to the provider id as display name."""
        if not self.name:
            self.name = self.id
        return self


class ToolProviderSelection(BaseModel):
    """One external tool provider bound to an agent.

    `capabilities=None` exposes every capability the provider lists; a list
    acts as an allow-list of capability names.
    """

    provider_id: str
    capabilities: list[str] | None = None


class CustomToolParameterConfig(BaseModel):
    """Parameter specification for one custom tool input."""

    name: str
    type: Literal[
        "vault_file_path",
        "required_env_var",
        "optional_env_var",
        "insecure_string",
    ]
    description: str | None = None
    default: str | None = None


class CustomToolConfig(BaseModel):
    """Custom tool declaration executed as a local command."""

    name: str
    description: str
    enabled: bool = True
    command: str
    arguments: list[str] | None = None
    parameters: list[CustomToolParameterConfig] = Field(default_factory=list)
    run_path: str | None = None
    timeout: int = 60


class AgentConfig(BaseModel):
    """Stored configuration of one agent."""

    id: str = ""
    name: str
    enabled: bool = True
    instructions: str = ""
    model_provider: str | None = None
    model: str | None = None
    vault_tools: dict[str, bool] = Field(default_factory=dict)
    tool_providers: list[ToolProviderSelection] = Field(default_factory=list)
    custom_tools: list[CustomToolConfig] = Field(default_factory=list)

    @field_validator("vault_tools", "tool_providers", "custom_tools", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any, info: ValidationInfo) -> Any:
        """Treat explicit YAML `null` for collection fields as empty."""
        if value is None:
            return {} if info.field_name == "vault_tools" else []
        return value

    @model_validator(mode="after")
    def _default_id(self) -> "AgentConfig":
        """Derive a stable id from the name when the settings file stores none."""
        if not self.id:
            self.id = uuid.uuid5(uuid.NAMESPACE_URL, f"agentkoppler:agent:{self.name}").hex
        return self


class GatewayConfig(BaseModel):
    """Top-level gateway configuration."""

    model_config = ConfigDict(extra="forbid")

    device_id: str = ""
    control_device_id: str = ""

    host: str = "127.0.0.1"
    port: int = 8800
    vault_path: str | None = None

    stream_keepalive_seconds: float | None = None
    stream_buffer_size: int | None = None
    max_turns: int | None = None
    max_tool_concurrency: int | None = None
    estimate_usage: bool = False
    shutdown_timeout_seconds: float | None = None
    restart_delay_seconds: float | None = None

    model_providers: list[ModelProviderConfig] = Field(default_factory=list)
    tool_providers: list[ToolProviderConfig] = Field(default_factory=list)
    agents: list[AgentConfig] = Field(default_factory=list)
    logging: LoggingConfig | None = None

    @model_validator(mode="after")
    def _apply_defaults(self) -> "GatewayConfig":
        """Validate the listening port and fill in runtime defaults."""
        if not 0 < self.port < 65536:
            raise ValueError("port must be between 1 and 65535")
        if self.stream_keepalive_seconds is None:
            self.stream_keepalive_seconds = 1.0
        if self.stream_buffer_size is None:
            self.stream_buffer_size = 64
        if self.max_turns is None:
            self.max_turns = 8
        if self.max_tool_concurrency is None:
            self.max_tool_concurrency = 4
        if self.shutdown_timeout_seconds is None:
            self.shutdown_timeout_seconds = 5.0
        if self.restart_delay_seconds is None:
            self.restart_delay_seconds = 0.5
        if self.logging is None:
            self.logging = LoggingConfig()
        return self

    @field_validator("model_providers", "tool_providers", "agents", mode="before")
    @classmethod
    def _none_to_empty_list(cls, value: Any) -> Any:
        """Treat explicit YAML `null` for list fields as an empty list."""
        if value is None:
            return []
        return value

    def is_control_device(self) -> bool:
        """Return true when this device is allowed to open the listening socket."""
        if not self.control_device_id:
            return True
        return self.control_device_id == self.device_id


def _load_yaml(path: str | None) -> dict[str, Any]:
    """Load a YAML file into a dictionary.

    Missing files are treated as empty config for environment-only deployments.
    """
    if not path:
        return {}
    cfg_path = Path(path)
    if not cfg_path.exists():
        return {}
    with cfg_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config root must be object: {path}")
    return data


def _override_from_env(data: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides on top of file configuration."""
    env_map = {
        "host": "AGENTKOPPLER_HOST",
        "port": "AGENTKOPPLER_PORT",
        "vault_path": "AGENTKOPPLER_VAULT_PATH",
        "logging.level": "AGENTKOPPLER_LOG_LEVEL",
        "logging.json_logs": "AGENTKOPPLER_LOG_JSON",
    }

    out = dict(data)
    out["logging"] = dict(out.get("logging") or {})

    for key, env_name in env_map.items():
        value = os.getenv(env_name)
        if value is None:
            continue

        if key == "port":
            out[key] = int(value)
        elif key == "logging.json_logs":
            out["logging"]["json"] = value.lower() in {"1", "true", "yes", "on"}
        elif key == "logging.level":
            out["logging"]["level"] = value
        else:
            out[key] = value

    return out


def resolve_config_path(path: str | None = None) -> Path:
    """Return the config file path selected by argument, environment, or default."""
    return Path(path or os.getenv("AGENTKOPPLER_CONFIG") or DEFAULT_CONFIG_PATH)


def load_config(path: str | None = None) -> GatewayConfig:
    """Load, merge, and validate gateway configuration."""
    raw = _load_yaml(str(resolve_config_path(path)))
    raw = _override_from_env(raw)
    return GatewayConfig.model_validate(raw)


def _write_yaml(data: dict[str, Any], path: str | Path) -> None:
    cfg_path = Path(path)
    cfg_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = cfg_path.with_name(f".{cfg_path.name}.tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, sort_keys=False, allow_unicode=True)
    tmp_path.replace(cfg_path)


def save_config(cfg: GatewayConfig, path: str | Path) -> None:
    """Persist configuration back to its YAML file."""
    _write_yaml(cfg.model_dump(mode="json", by_alias=True, exclude_none=True), path)


def ensure_device_id(cfg: GatewayConfig, path: str | Path | None) -> GatewayConfig:
    """Generate and persist a device id on first start.

    Only `device_id` is added to the stored file; environment overrides applied
    to `cfg` are not written back.
    """
    if cfg.device_id:
        return cfg
    updated = cfg.model_copy(update={"device_id": uuid.uuid4().hex})
    if path is not None:
        stored = _load_yaml(str(path))
        stored["device_id"] = updated.device_id
        _write_yaml(stored, path)
    return updated
