"""Filesystem adapter feeding :meth:`PluginRegistry.reload_one`.

watchdog delivers events on its observer thread; they are handed to the
event loop with ``call_soon_threadsafe`` and consumed by a single task.
Bursts for one file coalesce into one pending reload.
"""

from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path
from typing import Any

from watchdog.events import (
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from wabot.logger import logger
from wabot.plugins.registry import PluginRegistry, ReloadOutcome, is_plugin_filename
from wabot.utils import create_background_task


class _PluginEventHandler(FileSystemEventHandler):
    """Watchdog handler that forwards plugin filenames to the loop."""

    def __init__(
        self,
        directory: Path,
        loop: asyncio.AbstractEventLoop,
        notify: Any,
    ) -> None:
        super().__init__()
        self._directory = directory
        self._loop = loop
        self._notify = notify

    def _forward(self, path_str: str | bytes) -> None:
        if isinstance(path_str, bytes):
            path_str = path_str.decode(errors="replace")
        path = Path(path_str)
        if path.parent != self._directory or not is_plugin_filename(path.name):
            return
        self._loop.call_soon_threadsafe(self._notify, path.name)

    def on_created(self, event: Any) -> None:
        if isinstance(event, FileCreatedEvent):
            self._forward(event.src_path)

    def on_modified(self, event: Any) -> None:
        if isinstance(event, FileModifiedEvent):
            self._forward(event.src_path)

    def on_deleted(self, event: Any) -> None:
        if isinstance(event, FileDeletedEvent):
            self._forward(event.src_path)

    def on_moved(self, event: Any) -> None:
        # Editors save via tmp → rename, so both ends matter
        if isinstance(event, FileMovedEvent):
            self._forward(event.src_path)
            self._forward(event.dest_path)


class PluginWatcher:
    def __init__(self, registry: PluginRegistry) -> None:
        self.registry = registry
        self.queue: asyncio.Queue[str] = asyncio.Queue()
        self._queued: set[str] = set()
        self._observer: Any = None
        self._task: asyncio.Task[None] | None = None

    def notify(self, identifier: str) -> None:
        """Queue a reload for *identifier* unless one is already waiting. Loop thread only."""
        if identifier in self._queued:
            return
        self._queued.add(identifier)
        self.queue.put_nowait(identifier)

    async def process_once(self) -> ReloadOutcome:
        identifier = await self.queue.get()
        try:
            self._queued.discard(identifier)
            return await self.registry.reload_one(identifier)
        finally:
            self.queue.task_done()

    async def _process_queue(self) -> None:
        while True:
            try:
                await self.process_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Error processing plugin change", err=str(exc))

    async def start(self) -> None:
        if self._observer is not None:
            logger.debug("Plugin watcher already running, skipping duplicate start")
            return
        directory = self.registry.directory.resolve()
        directory.mkdir(parents=True, exist_ok=True)

        loop = asyncio.get_running_loop()
        handler = _PluginEventHandler(directory, loop, self.notify)
        observer = Observer()
        observer.schedule(handler, str(directory), recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer
        self._task = create_background_task(self._process_queue(), name="plugin-watcher")
        logger.info("Plugin watcher started", path=str(directory))

    async def stop(self) -> None:
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            await asyncio.to_thread(observer.join, 2.0)
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("Plugin watcher stopped")
