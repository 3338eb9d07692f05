"""Application lifecycle: startup phases, signal handling, shutdown.

Each function receives the ``BotApp`` instance so it can access runtime
state without being a method.

Startup runs in four explicit phases (see :func:`run_app`).
"""

from __future__ import annotations

import asyncio
import os
import signal
import threading
from typing import TYPE_CHECKING

from wabot.logger import logger, loop_exception_handler, set_level
from wabot.utils import create_background_task, digits_only

if TYPE_CHECKING:
    from wabot.app import BotApp
    from wabot.types import Connection


class StartupError(Exception):
    """A condition that makes starting the bot pointless (exit status 1)."""


# ---------------------------------------------------------------------------
# Pairing helpers
# ---------------------------------------------------------------------------


def normalize_phone(raw: str) -> str:
    """Digits only, with country code. Numbers starting with 0 are rejected."""
    digits = digits_only(raw)
    if not digits or digits.startswith("0"):
        raise StartupError("Start with country code, example: 254xxx")
    return digits


def format_pairing_code(code: str) -> str:
    """``ABCD1234`` → ``ABCD-1234``."""
    if "-" in code:
        return code
    return "-".join(code[i : i + 4] for i in range(0, len(code), 4))


async def _resolve_phone(app: BotApp) -> str:
    raw = app.options.phone or app.settings.pairing_number
    if not raw:
        raw = await asyncio.to_thread(input, "WhatsApp number: ")
    return normalize_phone(raw)


async def _request_pairing_code(app: BotApp, conn: Connection, phone: str) -> None:
    await asyncio.sleep(app.settings.transport.pairing_delay)
    if conn.is_registered or app._shutting_down:
        return
    try:
        code = await conn.request_pairing_code(phone)
    except Exception as exc:
        logger.error("Pairing code request failed", err=str(exc))
        return
    formatted = format_pairing_code(code)
    print(f"Pairing Code: {formatted}", flush=True)
    logger.info("Pairing code issued", phone=phone)


# ---------------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------------


async def shutdown_app(app: BotApp, sig_name: str) -> None:
    """Graceful shutdown handler.  Second signal force-exits."""
    if app._shutting_down:
        logger.info("Force shutdown")
        os._exit(1)
    app._shutting_down = True
    logger.info("Shutdown signal received", signal=sig_name)

    # Hard-exit watchdog: if graceful shutdown hangs, force-exit after 12s.
    watchdog = threading.Timer(12, lambda: os._exit(1))
    watchdog.daemon = True
    watchdog.start()

    try:
        if app._pairing_task is not None:
            app._pairing_task.cancel()
        if app.watcher is not None:
            await app.watcher.stop()
        if app.housekeeper is not None:
            await app.housekeeper.stop()
            app.housekeeper.flush_chats()
        if app._http_runner is not None:
            await app._http_runner.cleanup()
            app._http_runner = None
        if app.supervisor is not None:
            await app.supervisor.shutdown()
        logger.info("Cleanup done")
    finally:
        watchdog.cancel()
        app._stop_event.set()


# ---------------------------------------------------------------------------
# Phase 1: Session
# ---------------------------------------------------------------------------


def _restore_session(app: BotApp) -> None:
    from wabot.session_store import SessionStore

    s = app.settings
    app.session_store = SessionStore(
        s.session_dir,
        bootstrap_tag=s.session.bootstrap_tag,
        bootstrap_blob=s.bootstrap_blob(),
    )
    result = app.session_store.load()
    if result.loaded:
        logger.info("Session ready", source=result.source)
        return

    fresh_login = app.options.pairing_code or app.options.qr or bool(s.pairing_number)
    if not fresh_login:
        raise StartupError(
            "No usable session. Set SESSION_ID or log in with --qr / --pairing-code."
        )
    logger.info("No stored session, waiting for a new login")


# ---------------------------------------------------------------------------
# Phase 2: Plugins
# ---------------------------------------------------------------------------


def _load_plugins(app: BotApp) -> None:
    from wabot.plugins import PluginRegistry, PluginWatcher

    app.registry = PluginRegistry(app.settings.plugins_dir)
    app.registry.load_all()
    if app.settings.plugins.watch:
        app.watcher = PluginWatcher(app.registry)


# ---------------------------------------------------------------------------
# Phase 3: Connection
# ---------------------------------------------------------------------------


async def _connect(app: BotApp) -> None:
    import wabot.handler as handler_module
    from wabot.chat_store import ChatStore
    from wabot.event_router import BotContext, EventRouter
    from wabot.facade import MessageFacade
    from wabot.supervisor import ConnectionSupervisor, ReconnectPolicy
    from wabot.transport import get_transport
    from wabot.types import ConnectionConfig

    s = app.settings
    assert app.session_store is not None and app.registry is not None

    pairing = app.options.pairing_code or bool(s.pairing_number)
    phone = await _resolve_phone(app) if pairing else None

    transport = app.transport or get_transport(s.transport.provider)
    config = ConnectionConfig(session_dir=str(s.session_dir), print_qr=not pairing)

    chats: dict = {}
    if s.store.enabled:
        app.chat_store = ChatStore(s.store_path)
        chats = app.chat_store.load()

    supervisor = ConnectionSupervisor(
        transport,
        config,
        ReconnectPolicy.from_config(s.reconnect),
        on_open=app.on_open,
    )
    app.supervisor = supervisor
    app.facade = MessageFacade(lambda: supervisor.connection, tmp_dir=s.tmp_dir)
    app.router = EventRouter(
        handler_module,
        supervisor,
        app.session_store,
        BotContext(registry=app.registry, facade=app.facade, settings=s),
    )
    supervisor.set_rebind(app.router.rebind_fresh)
    router = app.router
    supervisor.set_restart(lambda: router.reload_handler(restart_connection=True))

    conn = supervisor.create_connection(chats)
    app.router.rebind(conn, is_init=True)
    await supervisor.start()

    if phone and not conn.is_registered:
        app._pairing_task = create_background_task(
            _request_pairing_code(app, conn, phone), name="pairing-code"
        )
    logger.info("Waiting for login", transport=transport.name)


# ---------------------------------------------------------------------------
# Phase 4: Subsystems
# ---------------------------------------------------------------------------


async def _start_subsystems(app: BotApp) -> None:
    from wabot.housekeeping import Housekeeper, probe_capabilities
    from wabot.http_server import start_http_server

    s = app.settings
    assert app.supervisor is not None and app.session_store is not None

    app.capabilities = await asyncio.to_thread(probe_capabilities)

    app.housekeeper = Housekeeper(
        app.supervisor,
        app.session_store,
        app.chat_store,
        tmp_dir=s.tmp_dir,
        prekey_interval=s.housekeeping.prekey_interval,
        tmp_interval=s.housekeeping.tmp_interval,
        tmp_max_age=s.housekeeping.tmp_max_age,
        flush_interval=s.store.flush_interval,
    )
    app.housekeeper.clean_tmp()
    app.housekeeper.start()

    if app.watcher is not None:
        await app.watcher.start()

    serve = s.server.enabled if app.options.server is None else app.options.server
    if serve:
        port = app.options.port or s.server.port
        app._http_runner = await start_http_server(app, s.server.host, port)


# ---------------------------------------------------------------------------
# Run: top-level orchestrator
# ---------------------------------------------------------------------------


async def run_app(app: BotApp) -> None:
    """Main entry point: startup sequence.

    Phases:
    1. Session restore (creds.json or bootstrap blob)
    2. Plugin load
    3. Connection (transport, supervisor, router, optional pairing code)
    4. Subsystems (housekeeping, plugin watcher, HTTP)

    Returns once a shutdown signal has been handled.
    """
    set_level(app.settings.logging.level)

    loop = asyncio.get_running_loop()
    loop.set_exception_handler(loop_exception_handler)
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda s=sig: asyncio.ensure_future(shutdown_app(app, s.name)),
        )

    _restore_session(app)
    _load_plugins(app)
    await _connect(app)
    await _start_subsystems(app)

    await app._stop_event.wait()
