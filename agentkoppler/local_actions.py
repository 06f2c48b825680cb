"""Custom tools: agent-declared local commands exposed as runnable tools.

Parameters are delivered to the command as environment variables and as
`$NAME` placeholders in its arguments. File path parameters are confined to
the vault root.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shlex
import subprocess
from pathlib import Path
from typing import Any

from .config import CustomToolConfig
from .tools import RunnableTool, sanitize_tool_name
from .utils import to_bounded_json

LOG = logging.getLogger(__name__)

_ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
_UNRESOLVED_ENV_REF = re.compile(r"\$[A-Za-z_][A-Za-z0-9_]*|\$\{[^}]*\}")


class LocalActionError(Exception):
    """Raised when a custom tool cannot be validated or executed."""


def _clean_terminal_output(text: str) -> str:
    """Strip ANSI codes and keep only the last carriage-return redraw per line."""
    lines = _ANSI_ESCAPE.sub("", text).split("\n")
    return "\n".join(line.split("\r")[-1] for line in lines).strip()


def _resolve_in_root(path: str, root: Path) -> Path:
    candidate = Path(path)
    if candidate.is_absolute():
        return candidate.resolve()
    return (root / candidate).resolve()


def is_inside_root(path: str, root: Path) -> bool:
    """Return true when `path` (absolute or root-relative) stays inside `root`."""
    expanded = os.path.expandvars(os.path.expanduser(path))
    if _UNRESOLVED_ENV_REF.search(expanded):
        return False
    return _resolve_in_root(expanded, root.resolve()).is_relative_to(root.resolve())


class LocalActionExecutor:
    """Validate parameters and run custom tool commands below one root directory."""

    def __init__(self, root: Path | None = None) -> None:
        self.root = (root or Path.cwd()).resolve()

    @staticmethod
    def input_schema(tool: CustomToolConfig) -> dict[str, Any]:
        """JSON schema of the model-supplied parameters; env-var parameters are hidden."""
        params = [p for p in tool.parameters if p.type not in {"required_env_var", "optional_env_var"}]
        return {
            "type": "object",
            "properties": {
                p.name: {"type": "string", "description": p.description or f"Parameter {p.name}"} for p in params
            },
            "required": [p.name for p in params if p.default is None],
        }

    def _prepare_parameters(self, tool: CustomToolConfig, provided: dict[str, Any]) -> dict[str, str]:
        values: dict[str, str] = {}
        for param in tool.parameters:
            if param.type in {"required_env_var", "optional_env_var"}:
                env_value = os.environ.get(param.name)
                if env_value is not None:
                    values[param.name] = env_value
                elif param.type == "required_env_var":
                    raise LocalActionError(f"Required environment variable '{param.name}' not set for tool '{tool.name}'")
                continue

            value = provided.get(param.name, param.default)
            if value is None:
                raise LocalActionError(f"Required parameter '{param.name}' not provided for tool '{tool.name}'")

            if param.type == "vault_file_path":
                path_value = str(value)
                if not is_inside_root(path_value, self.root):
                    raise LocalActionError(f"Path '{path_value}' for parameter '{param.name}' is outside the vault")
                if not _resolve_in_root(path_value, self.root).exists():
                    raise LocalActionError(f"Path '{path_value}' for parameter '{param.name}' does not exist")
            values[param.name] = str(value)
        return values

    @staticmethod
    def _build_argv(tool: CustomToolConfig, values: dict[str, str]) -> list[str]:
        if tool.arguments is not None:
            argv = [tool.command, *tool.arguments]
        else:
            try:
                argv = shlex.split(tool.command)
            except ValueError as exc:
                raise LocalActionError(f"Invalid command syntax for tool '{tool.name}': {exc}") from exc

        # longest names first so `$PATH_X` is not clobbered by `$PATH`
        names = sorted(values, key=len, reverse=True)
        out: list[str] = []
        for arg in argv:
            for name in names:
                arg = arg.replace(f"${name}", values[name])
            out.append(arg)
        return out

    def execute(self, tool: CustomToolConfig, arguments: dict[str, Any]) -> Any:
        """Run the command; JSON stdout is parsed, anything else becomes a list of lines."""
        values = self._prepare_parameters(tool, arguments)
        argv = self._build_argv(tool, values)

        cwd = self.root
        if tool.run_path:
            if not is_inside_root(tool.run_path, self.root):
                raise LocalActionError(f"Invalid run_path '{tool.run_path}' for tool '{tool.name}'")
            cwd = _resolve_in_root(tool.run_path, self.root)

        try:
            completed = subprocess.run(
                argv,
                cwd=cwd,
                env={**os.environ, **values},
                capture_output=True,
                text=True,
                timeout=tool.timeout,
                shell=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise LocalActionError(f"Tool '{tool.name}' timed out after {tool.timeout} seconds") from exc
        except OSError as exc:
            raise LocalActionError(f"Failed to execute tool '{tool.name}': {exc}") from exc

        stdout = _clean_terminal_output(completed.stdout)
        if completed.returncode != 0:
            detail = _clean_terminal_output(completed.stderr) or stdout
            message = f"Tool '{tool.name}' exited with status {completed.returncode}"
            raise LocalActionError(f"{message}: {detail}" if detail else message)
        if stdout:
            try:
                return json.loads(stdout)
            except json.JSONDecodeError:
                pass
        return [line for line in stdout.splitlines() if line.strip()]


def create_custom_tools(tools: list[CustomToolConfig], root: Path | None = None) -> list[RunnableTool]:
    """Wrap enabled custom tool declarations as runnable tools."""
    executor = LocalActionExecutor(root)
    runnable: list[RunnableTool] = []
    for tool_cfg in tools:
        if not tool_cfg.enabled:
            continue
        runnable.append(_make_tool(executor, tool_cfg))
    return runnable


def _make_tool(executor: LocalActionExecutor, tool_cfg: CustomToolConfig) -> RunnableTool:
    async def handler(arguments: dict[str, Any]) -> str:
        LOG.info("dispatching custom tool call tool=%s", tool_cfg.name)
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("custom tool call args tool=%s args=%s", tool_cfg.name, to_bounded_json(arguments))
        result = await asyncio.to_thread(executor.execute, tool_cfg, arguments)
        return json.dumps(result, ensure_ascii=False, default=str)

    return RunnableTool(
        name=sanitize_tool_name(tool_cfg.name),
        description=tool_cfg.description,
        parameters=executor.input_schema(tool_cfg),
        handler=handler,
        source="custom",
    )
