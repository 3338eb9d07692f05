"""Hot-reloadable command plugins.

Usage:
    from wabot.plugins import PluginRegistry, PluginWatcher

    registry = PluginRegistry(settings.plugins_dir)
    registry.load_all()
    watcher = PluginWatcher(registry)
    await watcher.start()
"""

from __future__ import annotations

from wabot.plugins.registry import (
    Plugin,
    PluginContext,
    PluginLoadError,
    PluginRecord,
    PluginRegistry,
)
from wabot.plugins.watcher import PluginWatcher

__all__ = [
    "Plugin",
    "PluginContext",
    "PluginLoadError",
    "PluginRecord",
    "PluginRegistry",
    "PluginWatcher",
]
