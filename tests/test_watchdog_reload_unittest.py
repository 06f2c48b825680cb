import asyncio
import os
import tempfile
import unittest
from pathlib import Path

from agentkoppler.config_reload import ConfigReloadWatcher, event_touches_file


class EventPathMatchTests(unittest.TestCase):
    def test_matches_same_filename_for_absolute_path(self) -> None:
        self.assertTrue(event_touches_file("/tmp/work/config.yaml", "config.yaml"))

    def test_matches_same_filename_for_relative_path(self) -> None:
        self.assertTrue(event_touches_file("config.yaml", "config.yaml"))

    def test_matches_bytes_path(self) -> None:
        self.assertTrue(event_touches_file(b"/tmp/work/config.yaml", "config.yaml"))

    def test_does_not_match_different_filename(self) -> None:
        self.assertFalse(event_touches_file("/tmp/work/other.yaml", "config.yaml"))

    def test_does_not_match_none(self) -> None:
        self.assertFalse(event_touches_file(None, "config.yaml"))


class ReloadIfChangedTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "config.yaml"
        self.reloaded: list[Path] = []

    def tearDown(self) -> None:
        self._tmp.cleanup()

    async def _on_reload(self, path: Path) -> None:
        self.reloaded.append(path)

    def _watcher(self) -> ConfigReloadWatcher:
        return ConfigReloadWatcher(config_file=self.path, on_reload=self._on_reload)

    def test_unchanged_file_is_not_reapplied(self) -> None:
        self.path.write_text("port: 8800\n", encoding="utf-8")
        watcher = self._watcher()

        self.assertFalse(asyncio.run(watcher.reload_if_changed()))
        self.assertEqual(self.reloaded, [])

    def test_changed_mtime_triggers_reload_once(self) -> None:
        self.path.write_text("port: 8800\n", encoding="utf-8")
        watcher = self._watcher()
        stat = self.path.stat()
        os.utime(self.path, (stat.st_atime, stat.st_mtime + 5))

        self.assertTrue(asyncio.run(watcher.reload_if_changed()))
        self.assertFalse(asyncio.run(watcher.reload_if_changed()))
        self.assertEqual(self.reloaded, [self.path])

    def test_missing_file_is_ignored_even_when_forced(self) -> None:
        watcher = self._watcher()

        self.assertFalse(asyncio.run(watcher.reload_if_changed(force=True)))
        self.assertEqual(self.reloaded, [])


if __name__ == "__main__":
    unittest.main()
