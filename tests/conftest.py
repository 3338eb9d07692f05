from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from wabot.config import Settings
from wabot.emitter import EventEmitter
from wabot.types import BotUser, ConnectionConfig, ConnectionState, ConnectionUpdate

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures: importable by test files)
# ---------------------------------------------------------------------------

_CACHED_PROPERTIES = ("project_root", "session_dir", "plugins_dir", "tmp_dir", "store_path")


def make_settings(**overrides: Any) -> Settings:
    """Build a Settings instance without reading config.toml or .env.

    Sub-model overrides are passed as model instances. Computed paths
    (``session_dir``, ``plugins_dir``, ...) can be overridden too; they are
    written straight into the cached_property slots.
    """
    cached = {key: overrides.pop(key) for key in _CACHED_PROPERTIES if key in overrides}
    s = Settings.model_construct(**overrides)
    for key, value in cached.items():
        s.__dict__[key] = value
    return s


class FakeConnection:
    """In-memory Connection: records sends, emits whatever a test asks it to."""

    def __init__(
        self,
        config: ConnectionConfig | None = None,
        *,
        chats: dict[str, dict[str, Any]] | None = None,
        registered: bool = True,
        user: BotUser | None = None,
    ) -> None:
        self.config = config
        self.ev = EventEmitter()
        self.chats: dict[str, dict[str, Any]] = chats if chats is not None else {}
        self.user = user if user is not None else BotUser(jid="15550001111@s.whatsapp.net")
        self.sent: list[tuple[str, dict[str, Any], dict[str, Any] | None]] = []
        self.started = 0
        self.closed = 0
        self.start_error: Exception | None = None
        self.send_error: Exception | None = None
        self.pairing_requests: list[str] = []
        self._registered = registered

    @property
    def is_registered(self) -> bool:
        return self._registered

    async def start(self) -> None:
        self.started += 1
        if self.start_error is not None:
            raise self.start_error

    async def close(self) -> None:
        self.closed += 1

    async def send_message(
        self,
        jid: str,
        content: dict[str, Any],
        options: dict[str, Any] | None = None,
    ) -> Any:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((jid, content, options))
        return {"id": f"sent-{len(self.sent)}"}

    async def request_pairing_code(self, phone_number: str) -> str:
        self.pairing_requests.append(phone_number)
        return "ABCD1234"

    # -- test helpers ------------------------------------------------------

    def open(self) -> None:
        self.ev.emit("connection.update", ConnectionUpdate(connection=ConnectionState.OPEN))

    def close_with(self, code: int | None, reason: str = "") -> None:
        self.ev.emit(
            "connection.update",
            ConnectionUpdate(connection=ConnectionState.CLOSED, reason_code=code, reason=reason),
        )


class FakeTransport:
    name = "fake"

    def __init__(self) -> None:
        self.created: list[FakeConnection] = []

    def create_connection(
        self,
        config: ConnectionConfig,
        *,
        chats: dict[str, dict[str, Any]] | None = None,
    ) -> FakeConnection:
        conn = FakeConnection(config, chats=chats)
        self.created.append(conn)
        return conn


def write_plugin(directory: Path, name: str, body: str) -> Path:
    path = directory / name
    path.write_text(body)
    return path


PING_PLUGIN = """
command = ["ping", "p"]
help = ["ping"]
tags = ["main"]

async def handle(ctx):
    await ctx.reply("pong")
"""


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch, tmp_path: Path):
    """Each test starts from default Settings with paths under tmp_path."""
    safe = make_settings(
        project_root=tmp_path,
        session_dir=tmp_path / "session",
        plugins_dir=tmp_path / "plugins",
        tmp_dir=tmp_path / "tmp",
        store_path=tmp_path / "store.json",
    )
    monkeypatch.setattr("wabot.config._settings", safe)
    monkeypatch.delenv("PREFIX", raising=False)
