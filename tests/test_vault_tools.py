import asyncio
import json
from pathlib import Path

import pytest

from agentkoppler.vault import LocalVaultFileSystem, VaultError
from agentkoppler.vault_tools import VAULT_TOOLS, create_vault_tools


def _vault(tmp_path: Path) -> LocalVaultFileSystem:
    (tmp_path / "notes").mkdir()
    (tmp_path / "notes" / "todo.md").write_text("- buy milk\n", encoding="utf-8")
    (tmp_path / "readme.md").write_text("hello", encoding="utf-8")
    (tmp_path / ".obsidian").mkdir()
    (tmp_path / ".obsidian" / "app.json").write_text("{}", encoding="utf-8")
    return LocalVaultFileSystem(tmp_path)


def _tools(vault, **toggles) -> dict:
    return {tool.name: tool for tool in create_vault_tools(vault, toggles)}


def test_list_files_skips_hidden_entries(tmp_path: Path) -> None:
    vault = _vault(tmp_path)

    assert vault.list_files() == ["notes/todo.md", "readme.md"]
    assert vault.list_files("notes") == ["notes/todo.md"]


def test_paths_outside_vault_are_rejected(tmp_path: Path) -> None:
    vault = _vault(tmp_path)

    with pytest.raises(VaultError):
        vault.read_file("../escape.md")
    with pytest.raises(VaultError):
        vault.write_file("", "x")


def test_enabled_tools_follow_catalogue_order(tmp_path: Path) -> None:
    tools = create_vault_tools(_vault(tmp_path), {"delete_file": True, "list_files": True, "write_file": False, "bogus": True})

    assert [tool.name for tool in tools] == ["list_files", "delete_file"]
    assert tools[0].label == "List Files"
    assert all(tool.source == "builtin" for tool in tools)
    assert set(VAULT_TOOLS) == {"list_files", "get_file_by_path", "write_file", "delete_file"}


def test_no_vault_means_no_tools() -> None:
    assert create_vault_tools(None, {"list_files": True}) == []


def test_get_file_by_path_returns_content_or_null(tmp_path: Path) -> None:
    tools = _tools(_vault(tmp_path), get_file_by_path=True)

    found = asyncio.run(tools["get_file_by_path"].invoke('{"path": "notes/todo.md"}'))
    missing = asyncio.run(tools["get_file_by_path"].invoke('{"path": "nope.md"}'))

    payload = json.loads(found.output)
    assert payload["path"] == "notes/todo.md"
    assert payload["content"] == "- buy milk\n"
    assert payload["size"] == len("- buy milk\n")
    assert missing.output == "null" and not missing.is_error


def test_write_then_delete_file(tmp_path: Path) -> None:
    vault = _vault(tmp_path)
    tools = _tools(vault, write_file=True, delete_file=True)

    written = asyncio.run(
        tools["write_file"].invoke(json.dumps({"path": "new/idea.md", "content": "spark", "mtime": 1700000000}))
    )
    deleted = asyncio.run(tools["delete_file"].invoke('{"path": "new/idea.md"}'))
    again = asyncio.run(tools["delete_file"].invoke('{"path": "new/idea.md"}'))

    assert json.loads(written.output)["mtime"] == 1700000000
    assert json.loads(deleted.output) == {"deleted": True}
    assert json.loads(again.output) == {"deleted": False}
    assert not (tmp_path / "new" / "idea.md").exists()


def test_escaping_path_becomes_error_outcome(tmp_path: Path) -> None:
    tools = _tools(_vault(tmp_path), write_file=True)

    outcome = asyncio.run(tools["write_file"].invoke('{"path": "../../etc/evil", "content": "x"}'))

    assert outcome.is_error
    assert "outside the vault" in outcome.output


def test_write_file_raises_vault_error_when_file_is_gone_afterwards(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    vault = LocalVaultFileSystem(tmp_path)
    monkeypatch.setattr(vault, "read_file", lambda path: None)

    with pytest.raises(VaultError, match="missing after writing"):
        vault.write_file("notes/a.md", "hello")
