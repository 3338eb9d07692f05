"""Connection supervisor: owns the active connection and its recovery policy.

State machine::

    Connecting ──► Open ──► Closed(reason) ──► Connecting (fresh connection)
                                   │
                                   └──► stopped (terminal reasons)

Every ``connection.update`` event lands in :meth:`on_connection_update`.
On ``close`` the reason code is classified by :func:`classify_disconnect`
and at most one reconnect timer is kept pending.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, TypeAlias

from wabot.config import ReconnectConfig
from wabot.logger import logger
from wabot.types import (
    Connection,
    ConnectionConfig,
    ConnectionState,
    ConnectionUpdate,
    DisconnectReason,
    MessagingTransport,
)
from wabot.utils import create_background_task

RebindHook: TypeAlias = Callable[[Connection], None]
OpenHook: TypeAlias = Callable[[Connection], Awaitable[None]]
RestartHook: TypeAlias = Callable[[], Awaitable[Any]]


class ActionKind(StrEnum):
    RECONNECT = "reconnect"
    TERMINAL = "terminal"
    NONE = "none"


@dataclass(frozen=True)
class DisconnectAction:
    kind: ActionKind
    delay: float = 0.0  # seconds
    label: str = ""
    counts_attempt: bool = False


@dataclass(frozen=True)
class ReconnectPolicy:
    base_delay: float = 3.0
    max_attempts: int = 5
    restart_delay: float = 3.0
    timeout_delay: float = 2.0

    @classmethod
    def from_config(cls, cfg: ReconnectConfig) -> ReconnectPolicy:
        return cls(
            base_delay=cfg.base_delay_ms / 1000,
            max_attempts=cfg.max_attempts,
            restart_delay=cfg.restart_delay_ms / 1000,
            timeout_delay=cfg.timeout_delay_ms / 1000,
        )


_TERMINAL_LABELS: dict[int, str] = {
    DisconnectReason.LOGGED_OUT: "logged-out",
    DisconnectReason.BAD_SESSION: "bad-session",
    DisconnectReason.CONNECTION_REPLACED: "connection-replaced",
}

_BACKOFF_CODES = frozenset({DisconnectReason.CONNECTION_CLOSED, DisconnectReason.CONNECTION_LOST})


def classify_disconnect(
    code: int | None,
    attempt: int,
    policy: ReconnectPolicy,
) -> DisconnectAction:
    """Decide what to do about a close with *code*.

    *attempt* is the attempt number this close would consume if it is a
    backoff-class close (the current counter plus one). Order matters: 401
    is a logout before it is an auth failure.
    """
    if code in _TERMINAL_LABELS:
        return DisconnectAction(ActionKind.TERMINAL, label=_TERMINAL_LABELS[code])

    if code == DisconnectReason.RESTART_REQUIRED:
        return DisconnectAction(
            ActionKind.RECONNECT, delay=policy.restart_delay, label="restart-required"
        )

    if code in _BACKOFF_CODES:
        if attempt > policy.max_attempts:
            return DisconnectAction(
                ActionKind.TERMINAL, label="max-reconnects", counts_attempt=True
            )
        return DisconnectAction(
            ActionKind.RECONNECT,
            delay=policy.base_delay * attempt,
            label="connection-lost",
            counts_attempt=True,
        )

    if code == DisconnectReason.TIMED_OUT:
        return DisconnectAction(ActionKind.RECONNECT, delay=policy.timeout_delay, label="timed-out")

    if code is None or code == DisconnectReason.FORBIDDEN:
        return DisconnectAction(ActionKind.TERMINAL, label="auth-failure")

    return DisconnectAction(ActionKind.NONE, label="unknown")


class ConnectionSupervisor:
    """Creates connections, reacts to their lifecycle, and replaces them on reconnect.

    ``rebind`` is invoked with every new connection so the event router can
    attach the handler set; ``on_open`` runs once per transition into
    ``open`` (greeting, etc.) and its failures are logged only.
    """

    def __init__(
        self,
        transport: MessagingTransport,
        config: ConnectionConfig,
        policy: ReconnectPolicy,
        *,
        on_open: OpenHook | None = None,
    ) -> None:
        self._transport = transport
        self._config = config
        self.policy = policy
        self._on_open = on_open
        self._rebind: RebindHook | None = None
        self._restart: RestartHook | None = None

        self.connection: Connection | None = None
        self.state: ConnectionState = ConnectionState.CLOSED
        self.last_reason: int | None = None
        self.attempts: int = 0
        self.stopped: bool = False
        self.is_new_login: bool = False
        self.generation: int = 0

        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._shutting_down = False

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def set_rebind(self, rebind: RebindHook) -> None:
        self._rebind = rebind

    def set_restart(self, restart: RestartHook) -> None:
        """Run *restart* instead of :meth:`restart_connection` when a reconnect timer fires."""
        self._restart = restart

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    def create_connection(self, chats: dict[str, dict[str, Any]] | None = None) -> Connection:
        """Build the first connection (later ones come from :meth:`restart_connection`)."""
        if chats is None:
            chats = {}
        self.connection = self._transport.create_connection(self._config, chats=chats)
        self.generation += 1
        self.state = ConnectionState.CONNECTING
        return self.connection

    async def start(self) -> None:
        if self.connection is None:
            self.create_connection()
        assert self.connection is not None
        await self.connection.start()

    # ------------------------------------------------------------------
    # Lifecycle events
    # ------------------------------------------------------------------

    async def on_connection_update(self, update: ConnectionUpdate) -> None:
        if update.is_new_login:
            self.is_new_login = True
            logger.info("New login paired")

        if update.qr:
            logger.info("QR code ready")

        if update.connection == ConnectionState.CONNECTING:
            self.state = ConnectionState.CONNECTING
            return

        if update.connection == ConnectionState.OPEN:
            await self._handle_open()
            return

        if update.connection == ConnectionState.CLOSED:
            self._handle_close(update)

    async def _handle_open(self) -> None:
        self.state = ConnectionState.OPEN
        self.attempts = 0
        self.last_reason = None
        self.stopped = False
        logger.info("Connection open", generation=self.generation)
        if self._on_open is None or self.connection is None:
            return
        try:
            await self._on_open(self.connection)
        except Exception as exc:
            logger.error("On-open side effect failed", err=str(exc))

    def _handle_close(self, update: ConnectionUpdate) -> None:
        self.state = ConnectionState.CLOSED
        self.last_reason = update.reason_code
        code = update.reason_code
        logger.warning("Connection closed", code=code, reason=update.reason or "Unknown")

        if self._shutting_down:
            return

        action = classify_disconnect(code, self.attempts + 1, self.policy)
        if action.counts_attempt:
            self.attempts += 1

        match action.kind:
            case ActionKind.TERMINAL:
                self.stopped = True
                self._cancel_reconnect()
                if action.label == "max-reconnects":
                    logger.error(
                        "Max reconnects reached", attempts=self.attempts - 1, code=code
                    )
                else:
                    logger.error(
                        "Connection stopped, new session credentials required",
                        reason=action.label,
                        code=code,
                    )
            case ActionKind.RECONNECT:
                logger.info(
                    "Reconnect scheduled",
                    reason=action.label,
                    delay=action.delay,
                    attempt=self.attempts if action.counts_attempt else None,
                    max_attempts=self.policy.max_attempts if action.counts_attempt else None,
                )
                self.schedule_reconnect(action.delay)
            case ActionKind.NONE:
                logger.warning("Unexpected disconnect, no action taken", code=code)

    # ------------------------------------------------------------------
    # Reconnect
    # ------------------------------------------------------------------

    def schedule_reconnect(self, delay: float) -> None:
        """Replace any pending reconnect timer with one firing after *delay* seconds."""
        self._cancel_reconnect()
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(delay, self._fire_reconnect)

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _fire_reconnect(self) -> None:
        self._reconnect_handle = None
        restart = self._restart or self.restart_connection
        self._reconnect_task = create_background_task(restart(), name="reconnect")

    async def restart_connection(self) -> Connection:
        """Discard the current connection and bring up a fresh one.

        The chat cache of the old connection is carried over. The router
        rebinds against the new connection before it starts, so no event
        from the new connection can arrive unbound.
        """
        old = self.connection
        chats: dict[str, dict[str, Any]] = dict(old.chats) if old is not None else {}
        if old is not None:
            with contextlib.suppress(Exception):
                await old.close()
            old.ev.remove_all_listeners()

        self.connection = self._transport.create_connection(self._config, chats=chats)
        self.generation += 1
        self.state = ConnectionState.CONNECTING
        logger.info("Connection replaced", generation=self.generation, chats=len(chats))

        if self._rebind is not None:
            self._rebind(self.connection)
        try:
            await self.connection.start()
        except Exception as exc:
            logger.error("Connection start failed", err=str(exc))
            self.connection.ev.emit(
                "connection.update",
                ConnectionUpdate(
                    connection=ConnectionState.CLOSED,
                    reason_code=DisconnectReason.CONNECTION_LOST,
                    reason=str(exc),
                ),
            )
        return self.connection

    async def shutdown(self) -> None:
        self._shutting_down = True
        self._cancel_reconnect()
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await self._reconnect_task
        if self.connection is not None:
            with contextlib.suppress(Exception):
                await self.connection.close()
            self.connection.ev.remove_all_listeners()
        self.state = ConnectionState.CLOSED

    def status(self) -> dict[str, Any]:
        user = self.connection.user if self.connection is not None else None
        return {
            "state": str(self.state),
            "last_reason": self.last_reason,
            "attempts": self.attempts,
            "max_attempts": self.policy.max_attempts,
            "stopped": self.stopped,
            "reconnect_pending": self.reconnect_pending,
            "generation": self.generation,
            "user": user.jid if user else None,
        }
