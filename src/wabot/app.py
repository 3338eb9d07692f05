"""BotApp: owns the long-lived components and wires them together.

Construction is cheap and side-effect free; everything that touches the
network or the filesystem happens in :func:`wabot._lifecycle.run_app`.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from wabot.config import Settings, get_settings
from wabot.logger import logger
from wabot.types import Connection
from wabot.utils import jid_user

if TYPE_CHECKING:
    from aiohttp import web

    from wabot.chat_store import ChatStore
    from wabot.event_router import EventRouter
    from wabot.facade import MessageFacade
    from wabot.housekeeping import Housekeeper
    from wabot.plugins import PluginRegistry, PluginWatcher
    from wabot.session_store import SessionStore
    from wabot.supervisor import ConnectionSupervisor
    from wabot.types import MessagingTransport


@dataclass
class RunOptions:
    """Process-level choices made on the command line."""

    pairing_code: bool = False
    phone: str | None = None
    qr: bool = False
    server: bool | None = None  # None → use settings.server.enabled
    port: int | None = None


class BotApp:
    """Main application class: owns all runtime state and wires subsystems."""

    def __init__(
        self,
        options: RunOptions | None = None,
        settings: Settings | None = None,
        *,
        transport: MessagingTransport | None = None,
    ) -> None:
        self.options = options or RunOptions()
        self.settings = settings or get_settings()
        self.transport = transport

        self.session_store: SessionStore | None = None
        self.chat_store: ChatStore | None = None
        self.registry: PluginRegistry | None = None
        self.watcher: PluginWatcher | None = None
        self.facade: MessageFacade | None = None
        self.supervisor: ConnectionSupervisor | None = None
        self.router: EventRouter | None = None
        self.housekeeper: Housekeeper | None = None
        self.capabilities: dict[str, bool] = {}

        self._shutting_down = False
        self._http_runner: web.AppRunner | None = None
        self._stop_event = asyncio.Event()
        self._pairing_task: asyncio.Task[Any] | None = None

    async def run(self) -> None:
        from wabot._lifecycle import run_app

        await run_app(self)

    # ------------------------------------------------------------------
    # Connection side effects
    # ------------------------------------------------------------------

    @property
    def connection(self) -> Connection | None:
        return self.supervisor.connection if self.supervisor else None

    async def on_open(self, conn: Connection) -> None:
        """Greet the bot's own chat each time the connection opens."""
        if not self.settings.bot.send_greeting or conn.user is None:
            return
        bot = self.settings.bot
        user = conn.user.name or jid_user(conn.user.jid)
        text = bot.greeting.format(name=bot.name, user=user)
        await conn.send_message(conn.user.jid, {"text": text, "mentions": [conn.user.jid]})
        logger.info("Greeting sent", jid=conn.user.jid)

    # ------------------------------------------------------------------
    # HTTP deps
    # ------------------------------------------------------------------

    def connection_status(self) -> dict[str, Any]:
        if self.supervisor is None:
            return {"state": "closed"}
        return self.supervisor.status()

    def plugin_summaries(self) -> list[dict[str, Any]]:
        if self.registry is None:
            return []
        return [record.describe() for _, record in self.registry.items()]

    def bot_name(self) -> str:
        return self.settings.bot.name

    def get_capabilities(self) -> dict[str, bool]:
        return dict(self.capabilities)
