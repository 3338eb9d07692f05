"""Tests for disconnect classification and the connection supervisor."""

from __future__ import annotations

import asyncio

import pytest
from conftest import FakeConnection, FakeTransport

from wabot.config import ReconnectConfig
from wabot.supervisor import (
    ActionKind,
    ConnectionSupervisor,
    ReconnectPolicy,
    classify_disconnect,
)
from wabot.types import ConnectionConfig, ConnectionState, DisconnectReason

POLICY = ReconnectPolicy(base_delay=3.0, max_attempts=5, restart_delay=3.0, timeout_delay=2.0)
FAST = ReconnectPolicy(base_delay=0.01, max_attempts=5, restart_delay=0.01, timeout_delay=0.01)


def _make_supervisor(policy: ReconnectPolicy = FAST, **kwargs):
    transport = FakeTransport()
    sup = ConnectionSupervisor(transport, ConnectionConfig(session_dir="/tmp/s"), policy, **kwargs)

    def rebind(conn: FakeConnection) -> None:
        conn.ev.on("connection.update", sup.on_connection_update)

    sup.set_rebind(rebind)
    conn = sup.create_connection()
    rebind(conn)
    return sup, transport, conn


# -- classify_disconnect ------------------------------------------------------


class TestClassifyDisconnect:
    @pytest.mark.parametrize(
        ("code", "label"),
        [
            (401, "logged-out"),
            (500, "bad-session"),
            (440, "connection-replaced"),
            (403, "auth-failure"),
            (None, "auth-failure"),
        ],
    )
    def test_terminal_codes(self, code, label):
        action = classify_disconnect(code, 1, POLICY)
        assert action.kind == ActionKind.TERMINAL
        assert action.label == label
        assert not action.counts_attempt

    def test_restart_required_uses_restart_delay(self):
        action = classify_disconnect(515, 1, POLICY)
        assert action.kind == ActionKind.RECONNECT
        assert action.delay == 3.0
        assert not action.counts_attempt

    def test_timed_out_uses_timeout_delay(self):
        action = classify_disconnect(DisconnectReason.TIMED_OUT, 1, POLICY)
        assert action.kind == ActionKind.RECONNECT
        assert action.delay == 2.0

    @pytest.mark.parametrize("code", [428, 408])
    def test_backoff_grows_linearly(self, code):
        assert classify_disconnect(code, 1, POLICY).delay == 3.0
        assert classify_disconnect(code, 2, POLICY).delay == 6.0
        assert classify_disconnect(code, 5, POLICY).delay == 15.0
        assert classify_disconnect(code, 1, POLICY).counts_attempt

    def test_backoff_past_cap_is_terminal(self):
        action = classify_disconnect(428, 6, POLICY)
        assert action.kind == ActionKind.TERMINAL
        assert action.label == "max-reconnects"

    def test_unknown_code_takes_no_action(self):
        action = classify_disconnect(418, 1, POLICY)
        assert action.kind == ActionKind.NONE

    def test_policy_from_config_converts_ms(self):
        policy = ReconnectPolicy.from_config(
            ReconnectConfig(base_delay_ms=1500, max_attempts=3, timeout_delay_ms=250)
        )
        assert policy.base_delay == 1.5
        assert policy.max_attempts == 3
        assert policy.timeout_delay == 0.25


# -- ConnectionSupervisor -----------------------------------------------------


class TestSupervisorLifecycle:
    @pytest.mark.asyncio
    async def test_first_close_schedules_reconnect_after_base_delay(self):
        sup, transport, conn = _make_supervisor(POLICY)
        loop = asyncio.get_running_loop()

        conn.close_with(428)
        await conn.ev.drain()

        assert sup.attempts == 1
        assert sup.reconnect_pending
        remaining = sup._reconnect_handle.when() - loop.time()
        assert 2.5 < remaining <= 3.0
        await sup.shutdown()

    @pytest.mark.asyncio
    async def test_second_close_doubles_delay(self):
        sup, transport, conn = _make_supervisor(POLICY)
        loop = asyncio.get_running_loop()

        conn.close_with(408)
        conn.close_with(408)
        await conn.ev.drain()

        assert sup.attempts == 2
        remaining = sup._reconnect_handle.when() - loop.time()
        assert 5.5 < remaining <= 6.0
        await sup.shutdown()

    @pytest.mark.asyncio
    async def test_exceeding_max_attempts_stops(self):
        sup, transport, conn = _make_supervisor(POLICY)
        sup.attempts = 5

        conn.close_with(428)
        await conn.ev.drain()

        assert sup.stopped
        assert not sup.reconnect_pending
        assert sup.attempts == 6
        assert len(transport.created) == 1

    @pytest.mark.asyncio
    async def test_open_resets_attempts(self):
        sup, transport, conn = _make_supervisor(POLICY)
        sup.attempts = 3
        sup.last_reason = 428

        conn.open()
        await conn.ev.drain()

        assert sup.state == ConnectionState.OPEN
        assert sup.attempts == 0
        assert sup.last_reason is None

    @pytest.mark.asyncio
    async def test_logged_out_is_terminal_and_cancels_timer(self):
        sup, transport, conn = _make_supervisor(POLICY)
        conn.close_with(428)
        await conn.ev.drain()
        assert sup.reconnect_pending

        conn.close_with(401)
        await conn.ev.drain()

        assert sup.stopped
        assert not sup.reconnect_pending
        assert sup.last_reason == 401

    @pytest.mark.asyncio
    async def test_unknown_code_is_logged_only(self):
        sup, transport, conn = _make_supervisor(POLICY)
        conn.close_with(418)
        await conn.ev.drain()

        assert not sup.stopped
        assert not sup.reconnect_pending
        assert sup.attempts == 0
        assert sup.state == ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_rapid_double_disconnect_creates_one_connection(self):
        sup, transport, conn = _make_supervisor(FAST)

        conn.close_with(428)
        conn.close_with(428)
        await conn.ev.drain()
        await asyncio.sleep(0.1)

        assert len(transport.created) == 2
        assert sup.connection is transport.created[1]
        assert transport.created[1].started == 1

    @pytest.mark.asyncio
    async def test_restart_carries_chats_and_detaches_old(self):
        sup, transport, conn = _make_supervisor(FAST)
        conn.chats["120363@g.us"] = {"id": "120363@g.us", "subject": "Team"}

        new = await sup.restart_connection()

        assert new is not conn
        assert new.chats == {"120363@g.us": {"id": "120363@g.us", "subject": "Team"}}
        assert conn.closed == 1
        assert conn.ev.event_names() == []
        assert new.ev.listener_count("connection.update") == 1
        assert sup.generation == 2

    @pytest.mark.asyncio
    async def test_start_failure_reports_connection_lost(self):
        sup, transport, conn = _make_supervisor(POLICY)

        create = transport.create_connection

        def failing(config, *, chats=None):
            created = create(config, chats=chats)
            created.start_error = RuntimeError("socket refused")
            return created

        transport.create_connection = failing
        await sup.restart_connection()
        await sup.connection.ev.drain()

        assert sup.last_reason == 408
        assert sup.attempts == 1
        assert sup.reconnect_pending
        await sup.shutdown()

    @pytest.mark.asyncio
    async def test_on_open_failure_is_swallowed(self):
        async def greet(conn):
            raise RuntimeError("send failed")

        sup, transport, conn = _make_supervisor(POLICY, on_open=greet)
        conn.open()
        await conn.ev.drain()

        assert sup.state == ConnectionState.OPEN
        assert not sup.stopped

    @pytest.mark.asyncio
    async def test_on_open_runs_each_open(self):
        opened: list[FakeConnection] = []

        async def greet(conn):
            opened.append(conn)

        sup, transport, conn = _make_supervisor(POLICY, on_open=greet)
        conn.open()
        conn.open()
        await conn.ev.drain()

        assert opened == [conn, conn]

    @pytest.mark.asyncio
    async def test_shutdown_cancels_pending_reconnect(self):
        sup, transport, conn = _make_supervisor(FAST)
        conn.close_with(428)
        await conn.ev.drain()

        await sup.shutdown()
        await asyncio.sleep(0.05)

        assert not sup.reconnect_pending
        assert len(transport.created) == 1
        assert conn.closed == 1

    @pytest.mark.asyncio
    async def test_status_snapshot(self):
        sup, transport, conn = _make_supervisor(POLICY)
        conn.open()
        await conn.ev.drain()

        status = sup.status()
        assert status["state"] == "open"
        assert status["attempts"] == 0
        assert status["max_attempts"] == 5
        assert status["reconnect_pending"] is False
        assert status["generation"] == 1
        assert status["user"] == "15550001111@s.whatsapp.net"

    @pytest.mark.asyncio
    async def test_timer_runs_restart_hook(self):
        sup, transport, conn = _make_supervisor(FAST)
        calls: list[int] = []

        async def restart():
            calls.append(sup.generation)
            return await sup.restart_connection()

        sup.set_restart(restart)
        conn.close_with(515)
        await conn.ev.drain()
        await asyncio.sleep(0.1)

        assert calls == [1]
        assert len(transport.created) == 2
