"""Periodic maintenance: pre-key cleanup, tmp cleanup, chat store flush.

Each job is a plain ``while True: sleep; work`` loop run as a background
task. A failing iteration is logged and the loop keeps going.
"""

from __future__ import annotations

import asyncio
import contextlib
import shutil
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from wabot.chat_store import ChatStore
from wabot.logger import logger
from wabot.session_store import SessionStore
from wabot.supervisor import ConnectionSupervisor
from wabot.types import ConnectionState
from wabot.utils import create_background_task

PROBED_TOOLS = ("ffmpeg", "ffprobe", "convert", "magick", "gm", "find")


def probe_capabilities(tools: tuple[str, ...] = PROBED_TOOLS) -> dict[str, bool]:
    """Which external media tools are on PATH."""
    found = {tool: shutil.which(tool) is not None for tool in tools}
    missing = [tool for tool, ok in found.items() if not ok]
    if missing:
        logger.warning("Some media tools are missing, related features degrade", missing=missing)
    return found


def clean_tmp_dir(tmp_dir: Path, max_age: float, *, now: float | None = None) -> int:
    """Delete regular files in *tmp_dir* older than *max_age* seconds."""
    if not tmp_dir.is_dir():
        return 0
    cutoff = (now if now is not None else time.time()) - max_age
    removed = 0
    for entry in tmp_dir.iterdir():
        try:
            if entry.is_file() and entry.stat().st_mtime < cutoff:
                entry.unlink()
                removed += 1
        except OSError as exc:
            logger.debug("Tmp cleanup skipped file", file=entry.name, err=str(exc))
    return removed


class Housekeeper:
    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        session_store: SessionStore,
        chat_store: ChatStore | None,
        *,
        tmp_dir: Path,
        prekey_interval: float,
        tmp_interval: float,
        tmp_max_age: float,
        flush_interval: float,
    ) -> None:
        self.supervisor = supervisor
        self.session_store = session_store
        self.chat_store = chat_store
        self.tmp_dir = tmp_dir
        self.prekey_interval = prekey_interval
        self.tmp_interval = tmp_interval
        self.tmp_max_age = tmp_max_age
        self.flush_interval = flush_interval
        self._tasks: list[asyncio.Task[Any]] = []

    def clean_pre_keys(self) -> int:
        if self.supervisor.state != ConnectionState.OPEN:
            return 0
        removed = self.session_store.clean_pre_keys()
        if removed:
            logger.info("Pre-key files removed", count=removed)
        return removed

    def clean_tmp(self) -> int:
        removed = clean_tmp_dir(self.tmp_dir, self.tmp_max_age)
        if removed:
            logger.info("Tmp files removed", count=removed)
        return removed

    def flush_chats(self) -> None:
        conn = self.supervisor.connection
        if self.chat_store is None or conn is None:
            return
        self.chat_store.flush(conn.chats)

    async def _loop(self, name: str, interval: float, job: Callable[[], Any]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                job()
            except Exception as exc:
                logger.error("Housekeeping job failed", job=name, err=str(exc))

    def start(self) -> None:
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        jobs: list[tuple[str, float, Callable[[], Any]]] = [
            ("pre-keys", self.prekey_interval, self.clean_pre_keys),
            ("tmp", self.tmp_interval, self.clean_tmp),
        ]
        if self.chat_store is not None:
            jobs.append(("chat-store", self.flush_interval, self.flush_chats))
        for name, interval, job in jobs:
            if interval <= 0:
                continue
            self._tasks.append(
                create_background_task(self._loop(name, interval, job), name=f"housekeeping-{name}")
            )
        logger.info("Housekeeping started", jobs=[name for name, _, _ in jobs])

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
