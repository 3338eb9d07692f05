"""Chat cache persistence.

The cache itself is a plain ``dict[jid, dict]`` living on the connection
(``conn.chats``) and handed over to the next connection on reconnect. This
module only loads it at startup and writes it back periodically.
"""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any

from wabot.logger import logger
from wabot.utils import decode_jid, write_json_atomic


def remember_chat(chats: dict[str, dict[str, Any]], jid: str, **fields: Any) -> dict[str, Any]:
    """Create or update the cache entry for *jid*; returns the entry."""
    key = decode_jid(jid) or jid
    entry = chats.setdefault(key, {"id": key})
    for name, value in fields.items():
        if value is not None:
            entry[name] = value
    entry["updated_at"] = time.time()
    return entry


class ChatStore:
    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> dict[str, dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning(
                "Chat store unreadable, starting empty", path=str(self.path), err=str(exc)
            )
            return {}
        chats = data.get("chats") if isinstance(data, dict) else None
        if not isinstance(chats, dict):
            return {}
        return {jid: entry for jid, entry in chats.items() if isinstance(entry, dict)}

    def flush(self, chats: dict[str, dict[str, Any]]) -> None:
        try:
            write_json_atomic(self.path, {"chats": chats})
        except OSError as exc:
            logger.error("Chat store flush failed", path=str(self.path), err=str(exc))
            return
        logger.debug("Chat store flushed", chats=len(chats))
