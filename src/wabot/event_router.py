"""Binds the fixed event set of a connection to the active handler module.

The binding table is explicit: ``event name → callback``, plus the
connection it is attached to. :meth:`EventRouter.rebind` unsubscribes
every entry from that connection and subscribes the new set in one
synchronous pass, so there is no loop turn in which an event could be
delivered twice or to nobody.
"""

from __future__ import annotations

import importlib.util
import sys
from dataclasses import dataclass
from types import ModuleType
from typing import TYPE_CHECKING, Any

from wabot.emitter import Listener
from wabot.logger import logger
from wabot.types import Connection

if TYPE_CHECKING:
    from wabot.config import Settings
    from wabot.facade import MessageFacade
    from wabot.plugins.registry import PluginRegistry
    from wabot.session_store import SessionStore
    from wabot.supervisor import ConnectionSupervisor

# event name → handler-module export
EVENT_EXPORTS: dict[str, str] = {
    "messages.upsert": "handler",
    "messages.update": "poll_update",
    "group-participants.update": "participants_update",
    "groups.update": "groups_update",
    "message.delete": "delete_update",
    "presence.update": "presence_update",
}

CONNECTION_EVENT = "connection.update"
CREDS_EVENT = "creds.update"

ALL_EVENTS: tuple[str, ...] = (*EVENT_EXPORTS, CONNECTION_EVENT, CREDS_EVENT)


class HandlerModuleError(Exception):
    """The handler module could not be loaded or lacks a required export."""


@dataclass
class BotContext:
    """Long-lived collaborators handed to the handler module's ``setup()``."""

    registry: PluginRegistry
    facade: MessageFacade
    settings: Settings


def missing_exports(module: ModuleType) -> list[str]:
    return [name for name in EVENT_EXPORTS.values() if not callable(getattr(module, name, None))]


def load_handler_module(name: str, path: str) -> ModuleType:
    """Execute *path* into a new module object; nothing global changes on failure."""
    spec = importlib.util.spec_from_file_location(name, path)
    if spec is None or spec.loader is None:
        raise HandlerModuleError(f"cannot build import spec for {path}")
    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as exc:
        raise HandlerModuleError(f"{type(exc).__name__}: {exc}") from exc
    missing = missing_exports(module)
    if missing:
        raise HandlerModuleError(f"handler module missing exports: {', '.join(missing)}")
    return module


class EventRouter:
    def __init__(
        self,
        handler_module: ModuleType,
        supervisor: ConnectionSupervisor,
        session_store: SessionStore,
        context: BotContext | None = None,
    ) -> None:
        missing = missing_exports(handler_module)
        if missing:
            raise HandlerModuleError(f"handler module missing exports: {', '.join(missing)}")
        self.handler_module = handler_module
        self.supervisor = supervisor
        self.session_store = session_store
        self.context = context
        self._bindings: dict[str, Listener] = {}
        self._bound_to: Connection | None = None
        self._setup_module(handler_module)

    @property
    def bound_connection(self) -> Connection | None:
        return self._bound_to

    @property
    def bindings(self) -> dict[str, Listener]:
        return dict(self._bindings)

    def _setup_module(self, module: ModuleType) -> None:
        setup = getattr(module, "setup", None)
        if self.context is not None and callable(setup):
            setup(self.context)

    # ------------------------------------------------------------------
    # Binding
    # ------------------------------------------------------------------

    def _build_bindings(self, connection: Connection, module: ModuleType) -> dict[str, Listener]:
        bindings: dict[str, Listener] = {}
        for event, export in EVENT_EXPORTS.items():
            bindings[event] = _bound_export(getattr(module, export), connection)
        bindings[CONNECTION_EVENT] = self.supervisor.on_connection_update
        bindings[CREDS_EVENT] = self._persist_creds
        return bindings

    def _persist_creds(self, creds: dict[str, Any]) -> None:
        # Synchronous: the blob is on disk before emit() returns.
        try:
            self.session_store.save(creds)
        except OSError as exc:
            logger.error("Failed to persist rotated credentials", err=str(exc))

    def bind(self, connection: Connection, handler_module: ModuleType | None = None) -> None:
        module = handler_module or self.handler_module
        bindings = self._build_bindings(connection, module)
        for event, callback in bindings.items():
            connection.ev.on(event, callback)
        self._bindings = bindings
        self._bound_to = connection
        self.handler_module = module

    def unbind(self) -> int:
        """Detach every current binding from the connection it was attached to."""
        removed = 0
        if self._bound_to is not None:
            for event, callback in self._bindings.items():
                if self._bound_to.ev.off(event, callback):
                    removed += 1
        self._bindings = {}
        self._bound_to = None
        return removed

    def rebind(
        self,
        connection: Connection,
        handler_module: ModuleType | None = None,
        *,
        is_init: bool = False,
    ) -> None:
        """Swap the whole binding set. No ``await`` happens between unbind and bind."""
        if is_init:
            self._bindings = {}
            self._bound_to = None
        else:
            self.unbind()
        self.bind(connection, handler_module)
        logger.debug("Handlers bound", events=len(self._bindings), is_init=is_init)

    def rebind_fresh(self, connection: Connection) -> None:
        """Rebind hook for the supervisor: *connection* was just created."""
        self.rebind(connection, is_init=True)

    # ------------------------------------------------------------------
    # Hot reload
    # ------------------------------------------------------------------

    async def reload_handler(self, *, restart_connection: bool = False) -> bool:
        """Reload the handler module from disk and rebind.

        Returns False (and keeps the previous module bound) if the new code
        fails to load, lacks an export, or its ``setup()`` raises. A requested
        connection restart happens either way.
        """
        current = self.handler_module
        path = getattr(current, "__file__", None)
        try:
            if not path:
                raise HandlerModuleError(f"{current.__name__} has no source file")
            module = load_handler_module(current.__name__, path)
            self._setup_module(module)
        except Exception as exc:
            logger.error("Handler reload failed, keeping previous module", err=str(exc))
            if restart_connection:
                await self.supervisor.restart_connection()
            return False

        sys.modules[current.__name__] = module
        self.handler_module = module
        logger.info("Handler module reloaded", module=module.__name__)

        if restart_connection:
            # The supervisor rebinds via rebind_fresh() before starting the new connection
            await self.supervisor.restart_connection()
            return True

        connection = self.supervisor.connection
        if connection is not None:
            self.rebind(connection, module)
        return True


def _bound_export(fn: Any, connection: Connection) -> Listener:
    def _callback(payload: Any) -> Any:
        return fn(connection, payload)

    _callback.__name__ = getattr(fn, "__name__", "callback")
    return _callback
