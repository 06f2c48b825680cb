"""Local-directory vault: the file tree built-in tools operate on."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


class VaultError(Exception):
    """Raised for invalid vault paths and failed vault file operations."""


@dataclass
class VaultFile:
    path: str
    content: str
    size: int
    ctime: float
    mtime: float


class LocalVaultFileSystem:
    """Vault rooted at one local directory.

    All paths are vault-relative with `/` separators; nothing outside the root
    is reachable.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).expanduser().resolve()

    def _resolve(self, path: str) -> Path:
        relative = str(path or "").strip().lstrip("/")
        if not relative:
            raise VaultError("Path must not be empty")
        candidate = (self.root / relative).resolve()
        if not candidate.is_relative_to(self.root):
            raise VaultError(f"Path '{path}' is outside the vault")
        return candidate

    def _relative(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    def list_files(self, folder: str = "") -> list[str]:
        """Return vault-relative paths of all files below `folder`, sorted."""
        base = self._resolve(folder) if folder.strip().strip("/") else self.root
        if not base.is_dir():
            raise VaultError(f"Folder '{folder}' does not exist")
        files = [
            self._relative(candidate)
            for candidate in base.rglob("*")
            if candidate.is_file() and not any(part.startswith(".") for part in candidate.relative_to(self.root).parts)
        ]
        return sorted(files)

    def read_file(self, path: str) -> VaultFile | None:
        """Return the file at `path`, or `None` if it does not exist."""
        target = self._resolve(path)
        if not target.is_file():
            return None
        try:
            content = target.read_text(encoding="utf-8")
            stat = target.stat()
        except (OSError, UnicodeDecodeError) as exc:
            raise VaultError(f"Cannot read '{path}': {exc}") from exc
        return VaultFile(
            path=self._relative(target),
            content=content,
            size=stat.st_size,
            ctime=stat.st_ctime,
            mtime=stat.st_mtime,
        )

    def write_file(self, path: str, content: str, mtime: float | None = None) -> VaultFile:
        """Create or overwrite a file; parent folders are created as needed."""
        target = self._resolve(path)
        if target.is_dir():
            raise VaultError(f"'{path}' is a folder")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
            if mtime is not None:
                os.utime(target, (mtime, mtime))
        except OSError as exc:
            raise VaultError(f"Cannot write '{path}': {exc}") from exc
        written = self.read_file(path)
        if written is None:
            raise VaultError(f"'{path}' is missing after writing")
        return written

    def delete_file(self, path: str) -> bool:
        """Delete a file; returns `False` when it did not exist."""
        target = self._resolve(path)
        if not target.exists():
            return False
        if not target.is_file():
            raise VaultError(f"'{path}' is not a file")
        try:
            target.unlink()
        except OSError as exc:
            raise VaultError(f"Cannot delete '{path}': {exc}") from exc
        return True
