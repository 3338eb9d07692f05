"""Tests for startup phases, pairing helpers and shutdown."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest
from conftest import PING_PLUGIN, FakeConnection, FakeTransport, make_settings, write_plugin

from wabot._lifecycle import (
    StartupError,
    _connect,
    _load_plugins,
    _request_pairing_code,
    _restore_session,
    format_pairing_code,
    normalize_phone,
    shutdown_app,
)
from wabot.app import BotApp, RunOptions
from wabot.config import BotConfig, StoreConfig, TransportConfig

CREDS = {"me": {"id": "15550001111@s.whatsapp.net", "name": "Bot"}}


def _app(tmp_path: Path, options: RunOptions | None = None, **overrides) -> BotApp:
    settings = make_settings(
        project_root=tmp_path,
        session_dir=tmp_path / "session",
        plugins_dir=tmp_path / "plugins",
        tmp_dir=tmp_path / "tmp",
        store_path=tmp_path / "store.json",
        **overrides,
    )
    return BotApp(options, settings, transport=FakeTransport())


def _seed_session(tmp_path: Path) -> None:
    (tmp_path / "session").mkdir(parents=True, exist_ok=True)
    (tmp_path / "session" / "creds.json").write_text(json.dumps(CREDS))


class TestPairingHelpers:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("+254 700 111 222", "254700111222"), ("1-555-000", "1555000")],
    )
    def test_normalize_phone(self, raw, expected):
        assert normalize_phone(raw) == expected

    @pytest.mark.parametrize("raw", ["", "abc", "0700111222"])
    def test_normalize_phone_rejects(self, raw):
        with pytest.raises(StartupError, match="country code"):
            normalize_phone(raw)

    def test_format_pairing_code(self):
        assert format_pairing_code("ABCD1234") == "ABCD-1234"
        assert format_pairing_code("ABCD-1234") == "ABCD-1234"

    @pytest.mark.asyncio
    async def test_request_pairing_code_prints(self, tmp_path, capsys):
        app = _app(tmp_path, transport=TransportConfig(pairing_delay=0))
        conn = app.transport.create_connection(None)
        conn._registered = False

        await _request_pairing_code(app, conn, "254700111222")

        assert conn.pairing_requests == ["254700111222"]
        assert "Pairing Code: ABCD-1234" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_registered_connection_skips_pairing(self, tmp_path):
        app = _app(tmp_path, transport=TransportConfig(pairing_delay=0))
        conn = app.transport.create_connection(None)

        await _request_pairing_code(app, conn, "254700111222")

        assert conn.pairing_requests == []


class TestRestoreSession:
    def test_missing_session_is_fatal(self, tmp_path):
        with pytest.raises(StartupError, match="No usable session"):
            _restore_session(_app(tmp_path))

    def test_fresh_login_allowed(self, tmp_path):
        app = _app(tmp_path, RunOptions(qr=True))
        _restore_session(app)
        assert app.session_store is not None

    def test_stored_session(self, tmp_path):
        _seed_session(tmp_path)
        app = _app(tmp_path)
        _restore_session(app)
        assert app.session_store.creds_path.exists()


class TestConnectPhase:
    @pytest.mark.asyncio
    async def test_wires_supervisor_router_and_greets_each_open(self, tmp_path):
        _seed_session(tmp_path)
        (tmp_path / "plugins").mkdir()
        write_plugin(tmp_path / "plugins", "ping.py", PING_PLUGIN)
        app = _app(tmp_path)

        _restore_session(app)
        _load_plugins(app)
        await _connect(app)

        transport: FakeTransport = app.transport
        conn = transport.created[0]
        assert conn.started == 1
        assert app.router.bound_connection is conn
        assert app.supervisor._restart is not None
        assert app.plugin_summaries()[0]["identifier"] == "ping.py"

        conn.open()
        await conn.ev.drain()
        assert len(conn.sent) == 1
        assert "wabot is live" in conn.sent[0][1]["text"]

        new = await app.supervisor.restart_connection()
        new.open()
        await new.ev.drain()
        assert len(new.sent) == 1
        assert "wabot is live" in new.sent[0][1]["text"]
        assert app.connection_status()["generation"] == 2

        await app.supervisor.shutdown()

    @pytest.mark.asyncio
    async def test_chat_store_is_loaded_into_first_connection(self, tmp_path):
        _seed_session(tmp_path)
        (tmp_path / "store.json").write_text(
            json.dumps({"chats": {"1@g.us": {"id": "1@g.us", "subject": "Old"}}})
        )
        app = _app(tmp_path, store=StoreConfig(enabled=True))

        _restore_session(app)
        _load_plugins(app)
        await _connect(app)

        assert app.connection.chats["1@g.us"]["subject"] == "Old"
        await app.supervisor.shutdown()


class TestShutdown:
    @pytest.mark.asyncio
    async def test_shutdown_sets_stop_event(self, tmp_path):
        _seed_session(tmp_path)
        app = _app(tmp_path)
        _restore_session(app)
        _load_plugins(app)
        await _connect(app)

        await shutdown_app(app, "SIGTERM")

        assert app._stop_event.is_set()
        assert app.connection.closed == 1
        await asyncio.wait_for(app._stop_event.wait(), timeout=1)


class TestGreeting:
    @pytest.mark.asyncio
    async def test_on_open_greets_every_time(self, tmp_path):
        app = _app(tmp_path)
        conn = FakeConnection()

        await app.on_open(conn)
        await app.on_open(conn)

        assert len(conn.sent) == 2
        jid, content, _ = conn.sent[1]
        assert jid == conn.user.jid
        assert content["mentions"] == [conn.user.jid]

    @pytest.mark.asyncio
    async def test_greeting_can_be_disabled(self, tmp_path):
        app = _app(tmp_path, bot=BotConfig(send_greeting=False))
        conn = FakeConnection()

        await app.on_open(conn)

        assert conn.sent == []
