"""Built-in tools operating on the vault."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable

from .tools import RunnableTool
from .vault import LocalVaultFileSystem

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class VaultToolSpec:
    label: str
    description: str
    parameters: dict[str, Any]


def _object_schema(properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {"type": "object", "properties": properties, "required": required}


_PATH = {"type": "string", "description": "Vault-relative file path, e.g. `notes/todo.md`"}

VAULT_TOOLS: dict[str, VaultToolSpec] = {
    "list_files": VaultToolSpec(
        label="List Files",
        description="List the paths of all files inside the vault, optionally below a folder.",
        parameters=_object_schema(
            {"folder": {"type": "string", "description": "Vault-relative folder; empty for the whole vault"}},
            [],
        ),
    ),
    "get_file_by_path": VaultToolSpec(
        label="Get File By Path",
        description="Get a file inside the vault at the given path. Returns null if the file does not exist.",
        parameters=_object_schema({"path": _PATH}, ["path"]),
    ),
    "write_file": VaultToolSpec(
        label="Write File",
        description="Create or overwrite a file inside the vault. Optionally set its modification time.",
        parameters=_object_schema(
            {
                "path": _PATH,
                "content": {"type": "string"},
                "mtime": {"type": ["number", "null"], "description": "Modification time, seconds since epoch"},
            },
            ["path", "content"],
        ),
    ),
    "delete_file": VaultToolSpec(
        label="Delete File",
        description="Delete a file inside the vault. Returns whether a file was deleted.",
        parameters=_object_schema({"path": _PATH}, ["path"]),
    ),
}


def _list_files(vault: LocalVaultFileSystem, args: dict[str, Any]) -> Any:
    return vault.list_files(str(args.get("folder") or ""))


def _get_file_by_path(vault: LocalVaultFileSystem, args: dict[str, Any]) -> Any:
    found = vault.read_file(str(args.get("path") or ""))
    return asdict(found) if found is not None else None


def _write_file(vault: LocalVaultFileSystem, args: dict[str, Any]) -> Any:
    mtime = args.get("mtime")
    written = vault.write_file(
        str(args.get("path") or ""),
        str(args.get("content") or ""),
        mtime=float(mtime) if mtime is not None else None,
    )
    return {"path": written.path, "size": written.size, "ctime": written.ctime, "mtime": written.mtime}


def _delete_file(vault: LocalVaultFileSystem, args: dict[str, Any]) -> Any:
    return {"deleted": vault.delete_file(str(args.get("path") or ""))}


_OPERATIONS: dict[str, Callable[[LocalVaultFileSystem, dict[str, Any]], Any]] = {
    "list_files": _list_files,
    "get_file_by_path": _get_file_by_path,
    "write_file": _write_file,
    "delete_file": _delete_file,
}


def _make_tool(vault: LocalVaultFileSystem, tool_id: str) -> RunnableTool:
    definition = VAULT_TOOLS[tool_id]
    operation = _OPERATIONS[tool_id]

    async def handler(arguments: dict[str, Any]) -> str:
        result = await asyncio.to_thread(operation, vault, arguments)
        return json.dumps(result, ensure_ascii=False)

    return RunnableTool(
        name=tool_id,
        description=definition.description,
        parameters=definition.parameters,
        handler=handler,
        source="builtin",
        label=definition.label,
    )


def create_vault_tools(vault: LocalVaultFileSystem | None, toggles: dict[str, bool]) -> list[RunnableTool]:
    """Build the enabled built-in tools, in catalogue order."""
    for tool_id in toggles:
        if tool_id not in VAULT_TOOLS:
            LOG.warning("Unknown vault tool ignored tool_id=%s", tool_id)

    enabled = [tool_id for tool_id in VAULT_TOOLS if toggles.get(tool_id)]
    if not enabled:
        return []
    if vault is None:
        LOG.warning("Vault tools requested but no vault_path configured tools=%s", ", ".join(enabled))
        return []
    return [_make_tool(vault, tool_id) for tool_id in enabled]
