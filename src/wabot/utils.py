"""Shared utility functions.

Small helpers that operate on plain values: JID normalisation, duration
formatting, random choice, atomic JSON writes, and background tasks that
log their failures.
"""

from __future__ import annotations

import asyncio
import json
import math
import random
import re
from collections.abc import Coroutine, Sequence
from pathlib import Path
from typing import Any, TypeVar

from wabot.logger import logger

USER_SERVER = "s.whatsapp.net"
GROUP_SERVER = "g.us"

_NON_DIGITS = re.compile(r"[^0-9]")


def decode_jid(jid: str | None) -> str | None:
    """Strip the device suffix from a JID (``123:7@s.whatsapp.net`` → ``123@s.whatsapp.net``)."""
    if not jid or not isinstance(jid, str):
        return None
    if "@" not in jid:
        return jid
    user, server = jid.split("@", 1)
    if ":" in user:
        user = user.split(":", 1)[0]
    return f"{user}@{server}"


def jid_user(jid: str) -> str:
    """The user part of a JID, without device suffix."""
    decoded = decode_jid(jid) or ""
    return decoded.split("@", 1)[0]


def number_to_jid(number: str) -> str:
    digits = _NON_DIGITS.sub("", number)
    return f"{digits}@{USER_SERVER}"


def digits_only(value: str) -> str:
    return _NON_DIGITS.sub("", value)


def is_group_jid(jid: str) -> bool:
    return jid.endswith(f"@{GROUP_SERVER}")


def format_duration(ms: float | None) -> str:
    """Format milliseconds as ``HH:MM:SS``; unknown values render as ``--:--:--``."""
    if ms is None or math.isnan(ms) or ms < 0:
        return "--:--:--"
    total = int(ms // 1000)
    h, rem = divmod(total, 3600)
    m, s = divmod(rem, 60)
    return f"{h:02d}:{m:02d}:{s:02d}"


T = TypeVar("T")


def pick_random(items: Sequence[T]) -> T:
    if not items:
        raise IndexError("cannot pick from an empty sequence")
    return random.choice(items)


def write_json_atomic(path: Path, data: Any, *, indent: int | None = None) -> None:
    """Write JSON data to a file using atomic rename (tmp → final).

    Readers either see the old content or the complete new content.
    Creates parent directories if they don't exist.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=indent))
    tmp.replace(path)


def create_background_task(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str | None = None,
) -> asyncio.Task[Any]:
    """Create an asyncio task that logs exceptions instead of swallowing them."""
    task = asyncio.create_task(coro, name=name)
    task.add_done_callback(_log_task_exception)
    return task


def _log_task_exception(task: asyncio.Task[Any]) -> None:
    """Callback attached to background tasks: logs unhandled exceptions."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        # logger.exception() won't work here because we're in a
        # done-callback, not an except handler.
        logger.error(
            "Background task failed",
            task_name=task.get_name(),
            exc_info=exc,
        )
