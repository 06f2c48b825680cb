"""Watchdog-based settings file watcher."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

LOG = logging.getLogger(__name__)


def event_touches_file(path: str | bytes | Path | None, file_name: str) -> bool:
    """Return true when a filesystem event path names the watched file."""
    if not path:
        return False
    if isinstance(path, bytes):
        path = path.decode("utf-8", errors="replace")
    return Path(path).name == file_name


class _ChangeHandler(FileSystemEventHandler):
    """Wake the async loop when the watched file is written, replaced, or removed."""

    def __init__(self, loop: asyncio.AbstractEventLoop, changed: asyncio.Event, file_name: str) -> None:
        self._loop = loop
        self._changed = changed
        self._file_name = file_name

    def _touch(self, path: str | bytes | None) -> None:
        if event_touches_file(path, self._file_name):
            self._loop.call_soon_threadsafe(self._changed.set)

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in {"modified", "created", "moved", "deleted"}:
            return
        self._touch(event.src_path)
        self._touch(getattr(event, "dest_path", None))


class ConfigReloadWatcher:
    """Watch the settings file and apply it on every save."""

    def __init__(
        self,
        *,
        config_file: Path,
        on_reload: Callable[[Path], Awaitable[None]],
        debounce_seconds: float = 0.2,
    ) -> None:
        self._config_file = config_file
        self._on_reload = on_reload
        self._debounce_seconds = debounce_seconds
        self._mtime: float | None = self._current_mtime()

    def _current_mtime(self) -> float | None:
        return self._config_file.stat().st_mtime if self._config_file.exists() else None

    async def reload_if_changed(self, *, force: bool = False) -> bool:
        """Apply the file when its mtime changed (or force=True)."""
        mtime = self._current_mtime()
        if mtime is None:
            return False
        if not force and mtime == self._mtime:
            return False

        LOG.info("Settings change detected at %s, reloading", self._config_file)
        await self._on_reload(self._config_file)
        self._mtime = mtime
        LOG.info("Settings applied")
        return True

    async def _watch_once(self) -> None:
        loop = asyncio.get_running_loop()
        changed = asyncio.Event()
        observer = Observer()
        observer.schedule(
            _ChangeHandler(loop, changed, self._config_file.name),
            str(self._config_file.parent.resolve()),
            recursive=False,
        )
        observer.start()
        try:
            while True:
                await changed.wait()
                # editors often write in several steps
                await asyncio.sleep(self._debounce_seconds)
                changed.clear()
                try:
                    await self.reload_if_changed()
                except Exception as exc:
                    LOG.warning("Settings reload failed, keeping current settings: %s", exc)
        finally:
            observer.stop()
            await asyncio.to_thread(observer.join, 2.0)

    async def run_forever(self) -> None:
        """Run the watcher continuously, restarting it after failures."""
        self._config_file.parent.mkdir(parents=True, exist_ok=True)
        while True:
            try:
                await self._watch_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOG.warning("Settings watcher failed (%s), retrying in 1s", exc)
                await asyncio.sleep(1.0)
