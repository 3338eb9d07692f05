"""Tests for the plugin directory watcher."""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from conftest import PING_PLUGIN, write_plugin
from watchdog.events import DirCreatedEvent, FileCreatedEvent, FileDeletedEvent, FileMovedEvent

from wabot.plugins.registry import PluginRegistry, ReloadOutcome
from wabot.plugins.watcher import PluginWatcher, _PluginEventHandler


@pytest.fixture
def plugin_dir(tmp_path: Path) -> Path:
    d = tmp_path / "plugins"
    d.mkdir()
    return d


class TestEventHandler:
    def _handler(self, directory: Path):
        loop = MagicMock()
        notify = MagicMock()
        return _PluginEventHandler(directory, loop, notify), loop, notify

    def test_forwards_plugin_files(self, plugin_dir: Path):
        handler, loop, notify = self._handler(plugin_dir)
        handler.on_created(FileCreatedEvent(str(plugin_dir / "ping.py")))
        loop.call_soon_threadsafe.assert_called_once_with(notify, "ping.py")

    def test_ignores_non_plugin_and_nested_paths(self, plugin_dir: Path):
        handler, loop, _ = self._handler(plugin_dir)
        handler.on_created(FileCreatedEvent(str(plugin_dir / "_util.py")))
        handler.on_created(FileCreatedEvent(str(plugin_dir / "notes.txt")))
        handler.on_created(FileCreatedEvent(str(plugin_dir / "sub" / "nested.py")))
        handler.on_created(DirCreatedEvent(str(plugin_dir / "folder.py")))
        loop.call_soon_threadsafe.assert_not_called()

    def test_move_forwards_both_ends(self, plugin_dir: Path):
        handler, loop, notify = self._handler(plugin_dir)
        handler.on_moved(
            FileMovedEvent(str(plugin_dir / "old.py"), str(plugin_dir / "new.py"))
        )
        forwarded = [c.args[1] for c in loop.call_soon_threadsafe.call_args_list]
        assert forwarded == ["old.py", "new.py"]

    def test_delete_is_forwarded(self, plugin_dir: Path):
        handler, loop, notify = self._handler(plugin_dir)
        handler.on_deleted(FileDeletedEvent(str(plugin_dir / "gone.py")))
        loop.call_soon_threadsafe.assert_called_once_with(notify, "gone.py")


class TestWatcherQueue:
    @pytest.mark.asyncio
    async def test_notify_coalesces_bursts(self, plugin_dir: Path):
        watcher = PluginWatcher(PluginRegistry(plugin_dir))
        for _ in range(5):
            watcher.notify("a.py")
        watcher.notify("b.py")
        assert watcher.queue.qsize() == 2

    @pytest.mark.asyncio
    async def test_process_once_reloads_and_requeues(self, plugin_dir: Path):
        registry = PluginRegistry(plugin_dir)
        registry.load_all()
        watcher = PluginWatcher(registry)

        write_plugin(plugin_dir, "ping.py", PING_PLUGIN)
        watcher.notify("ping.py")
        assert await watcher.process_once() == ReloadOutcome.ADDED
        assert "ping.py" in registry

        # Once consumed, the same identifier can be queued again
        watcher.notify("ping.py")
        assert watcher.queue.qsize() == 1
        assert await watcher.process_once() == ReloadOutcome.REPLACED


class TestWatcherObserver:
    @pytest.mark.asyncio
    async def test_new_file_is_picked_up(self, plugin_dir: Path):
        registry = PluginRegistry(plugin_dir)
        registry.load_all()
        watcher = PluginWatcher(registry)
        await watcher.start()
        try:
            write_plugin(plugin_dir, "ping.py", PING_PLUGIN)
            for _ in range(100):
                if "ping.py" in registry:
                    break
                await asyncio.sleep(0.05)
            assert "ping.py" in registry
        finally:
            await watcher.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start(self, plugin_dir: Path):
        watcher = PluginWatcher(PluginRegistry(plugin_dir))
        await watcher.stop()
