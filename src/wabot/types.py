"""Data models and transport protocols for wabot."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum, StrEnum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from wabot.emitter import EventEmitter


class ConnectionState(StrEnum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class DisconnectReason(IntEnum):
    """Numeric close codes reported by a transport in ``connection.update``.

    Upstream WhatsApp clients report ``timedOut`` with the same 408 as
    ``connectionLost``; transports here report keep-alive timeouts as 504
    so the two can be told apart.
    """

    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    CONNECTION_REPLACED = 440
    TIMED_OUT = 504
    LOGGED_OUT = 401
    BAD_SESSION = 500
    RESTART_REQUIRED = 515
    FORBIDDEN = 403
    MULTIDEVICE_MISMATCH = 411
    UNAVAILABLE_SERVICE = 503


@dataclass
class ConnectionUpdate:
    """Payload of the ``connection.update`` event."""

    connection: ConnectionState | None = None
    reason_code: int | None = None
    reason: str | None = None
    is_new_login: bool = False
    qr: str | None = None


@dataclass
class BotUser:
    """The bot's own identity on the network."""

    jid: str
    name: str = ""


@dataclass
class IncomingMessage:
    """A message as delivered in ``messages.upsert``."""

    id: str
    chat: str
    sender: str
    text: str = ""
    push_name: str = ""
    from_me: bool = False
    timestamp: float = 0.0
    raw: Any = None

    @property
    def is_group(self) -> bool:
        return self.chat.endswith("@g.us")


@dataclass
class MessagesUpsert:
    messages: list[IncomingMessage] = field(default_factory=list)
    type: str = "notify"


@dataclass
class ParticipantsUpdate:
    id: str  # group JID
    participants: list[str] = field(default_factory=list)
    action: str = "add"  # add | remove | promote | demote


@dataclass
class MessageUpdate:
    """Receipt, edit or poll update for a previously sent message."""

    chat: str
    id: str
    status: str | None = None
    update: dict[str, Any] = field(default_factory=dict)


@dataclass
class ConnectionConfig:
    """Everything a transport needs to build a connection."""

    session_dir: str
    print_qr: bool = True
    browser: tuple[str, str, str] = ("chrome (linux)", "", "")
    mark_online_on_connect: bool = True
    sync_full_history: bool = False


@runtime_checkable
class Connection(Protocol):
    """One live session with the messaging network.

    ``ev`` is the subscription table all named events are emitted on.
    """

    ev: EventEmitter
    user: BotUser | None
    chats: dict[str, dict[str, Any]]

    async def start(self) -> None: ...

    async def close(self) -> None: ...

    async def send_message(
        self,
        jid: str,
        content: dict[str, Any],
        options: dict[str, Any] | None = None,
    ) -> Any: ...

    async def request_pairing_code(self, phone_number: str) -> str: ...

    @property
    def is_registered(self) -> bool: ...


class MessagingTransport(Protocol):
    """Factory for connections (one per connect attempt)."""

    name: str

    def create_connection(
        self,
        config: ConnectionConfig,
        *,
        chats: dict[str, dict[str, Any]] | None = None,
    ) -> Connection: ...
