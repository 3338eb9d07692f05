"""Built-in transport over neonize (whatsmeow Python bindings).

neonize keeps its own device store (``neonize.db``) in the session
directory. On top of that this adapter emits a small identity manifest as
``creds.update`` whenever pairing completes or the connection opens, so
``creds.json`` always names the account the device store belongs to.

Interactive (button/list) payloads have no stable whatsmeow encoding and
are rendered as numbered text.
"""

from __future__ import annotations

import asyncio
import contextlib
import io
import json
from pathlib import Path
from typing import Any

import qrcode
from neonize import events as neonize_event_types
from neonize.aioze import client as neonize_client
from neonize.aioze import events as neonize_events
from neonize.aioze.client import NewAClient
from neonize.events import (
    ConnectedEv,
    ConnectFailureEv,
    DisconnectedEv,
    LoggedOutEv,
    MessageEv,
    PairStatusEv,
)
from neonize.utils.jid import Jid2String, build_jid

from wabot.emitter import EventEmitter
from wabot.logger import logger
from wabot.session_store import CREDS_FILE, has_identity
from wabot.transport.hookspecs import hookimpl
from wabot.types import (
    BotUser,
    ConnectionConfig,
    ConnectionState,
    ConnectionUpdate,
    DisconnectReason,
    IncomingMessage,
    MessagesUpsert,
    MessageUpdate,
    ParticipantsUpdate,
)

DEVICE_DB = "neonize.db"
MEDIA_KINDS = ("image", "video", "audio", "document", "sticker")


def render_qr(data: str) -> str:
    qr = qrcode.QRCode(border=1)
    qr.add_data(data)
    qr.make()
    buf = io.StringIO()
    qr.print_ascii(out=buf, invert=True)
    return buf.getvalue()


def render_interactive(interactive: dict[str, Any]) -> str:
    """Numbered-text rendering of a button or list payload."""
    lines: list[str] = []
    header = interactive.get("header", {}).get("title")
    if header:
        lines.append(f"*{header}*")
    body = interactive.get("body", {}).get("text")
    if body:
        lines.append(body)
    options: list[str] = []
    for button in interactive.get("nativeFlowMessage", {}).get("buttons", []):
        params = json.loads(button.get("buttonParamsJson") or "{}")
        name = button.get("name")
        if name == "quick_reply":
            options.append(params.get("display_text", ""))
        elif name == "cta_url":
            options.append(f"{params.get('display_text', '')}: {params.get('url', '')}")
        elif name == "cta_copy":
            options.append(f"{params.get('display_text', 'Copy')}: {params.get('copy_code', '')}")
        elif name == "single_select":
            for section in params.get("sections", []):
                if section.get("title"):
                    options.append(f"_{section['title']}_")
                for row in section.get("rows", []):
                    title = row.get("title", "")
                    desc = row.get("description")
                    options.append(f"{title}: {desc}" if desc else title)
    number = 0
    for option in options:
        if option.startswith("_") and option.endswith("_"):
            lines.append(option)
            continue
        number += 1
        lines.append(f"{number}. {option}")
    footer = interactive.get("footer", {}).get("text")
    if footer:
        lines.append(f"\n{footer}")
    return "\n".join(lines)


def parse_jid(jid_str: str) -> Any:
    if "@" not in jid_str:
        return build_jid(jid_str)
    user, server = jid_str.split("@", 1)
    return build_jid(user, server)


def _message_text(msg: Any) -> str:
    return (
        msg.conversation
        or msg.extendedTextMessage.text
        or msg.imageMessage.caption
        or msg.videoMessage.caption
        or ""
    )


def _set_field(msg: Any, name: str) -> Any:
    """*msg.name* if the event carries it, else None (protobuf reports unset fields)."""
    value = getattr(msg, name, None)
    if value is None:
        return None
    has_field = getattr(msg, "HasField", None)
    if has_field is not None and not has_field(name):
        return None
    return value


class NeonizeConnection:
    """One neonize client wrapped as a :class:`wabot.types.Connection`."""

    def __init__(
        self,
        config: ConnectionConfig,
        *,
        chats: dict[str, dict[str, Any]] | None = None,
    ) -> None:
        self.config = config
        self.ev = EventEmitter()
        self.chats: dict[str, dict[str, Any]] = chats if chats is not None else {}
        self.user: BotUser | None = None
        self._registered = self._read_registered()
        self._idle_task: asyncio.Task[Any] | None = None
        self._closed = False

        # neonize keeps module-level loop references; bind them to this loop
        loop = asyncio.get_running_loop()
        neonize_events.event_global_loop = loop
        neonize_client.event_global_loop = loop

        session_dir = Path(config.session_dir)
        session_dir.mkdir(parents=True, exist_ok=True)
        self._client = NewAClient(str(session_dir / DEVICE_DB))
        self._register_events()

    def _read_registered(self) -> bool:
        path = Path(self.config.session_dir) / CREDS_FILE
        try:
            creds = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError):
            return False
        if has_identity(creds):
            self.user = BotUser(jid=creds["me"]["id"], name=creds["me"].get("name", ""))
            return True
        return False

    @property
    def is_registered(self) -> bool:
        return self._registered

    # ------------------------------------------------------------------
    # neonize events → named events
    # ------------------------------------------------------------------

    def _update(self, **fields: Any) -> None:
        self.ev.emit("connection.update", ConnectionUpdate(**fields))

    def _closed_with(self, code: int, reason: str) -> None:
        # Only the first close of a session is reported (LoggedOut is followed by Disconnected)
        if self._closed:
            return
        self._closed = True
        self._update(connection=ConnectionState.CLOSED, reason_code=code, reason=reason)

    def _emit_identity(self, jid: str, name: str = "") -> None:
        self.user = BotUser(jid=jid, name=name)
        self._registered = True
        self.ev.emit(
            "creds.update",
            {
                "me": {"id": jid, "name": name},
                "registered": True,
                "platform": "neonize",
                "device_store": DEVICE_DB,
            },
        )

    def _register_events(self) -> None:
        client = self._client

        @client.event.qr
        async def on_qr(_client: NewAClient, qr_data: bytes) -> None:
            qr = qr_data.decode() if isinstance(qr_data, bytes) else str(qr_data)
            if self.config.print_qr:
                print(render_qr(qr), flush=True)
            self._update(qr=qr)

        @client.event(PairStatusEv)
        async def on_pair_status(_client: NewAClient, ev: PairStatusEv) -> None:
            jid = Jid2String(ev.ID)
            logger.info("WhatsApp paired", user=ev.ID.User)
            self._update(is_new_login=True)
            self._emit_identity(jid, getattr(ev, "BusinessName", "") or "")

        @client.event(ConnectedEv)
        async def on_connected(_client: NewAClient, _ev: ConnectedEv) -> None:
            self._closed = False
            device = getattr(self._client, "me", None)
            jid = getattr(device, "JID", None)
            if jid is not None and getattr(jid, "User", ""):
                self._emit_identity(
                    f"{jid.User}@s.whatsapp.net", getattr(device, "PushName", "") or ""
                )
            self._update(connection=ConnectionState.OPEN)

        @client.event(DisconnectedEv)
        async def on_disconnected(_client: NewAClient, _ev: DisconnectedEv) -> None:
            self._closed_with(DisconnectReason.CONNECTION_CLOSED, "Connection Closed")

        @client.event(LoggedOutEv)
        async def on_logged_out(_client: NewAClient, ev: LoggedOutEv) -> None:
            self._closed_with(DisconnectReason.LOGGED_OUT, f"Logged out ({ev.Reason})")

        @client.event(ConnectFailureEv)
        async def on_connect_failure(_client: NewAClient, ev: ConnectFailureEv) -> None:
            try:
                code = int(ev.Reason)
            except (TypeError, ValueError):
                code = DisconnectReason.FORBIDDEN
            self._closed_with(code, f"Connect failure ({getattr(ev, 'Message', '')})")

        @client.event(MessageEv)
        async def on_message(_client: NewAClient, message: MessageEv) -> None:
            try:
                self._handle_message(message)
            except Exception:
                logger.exception(
                    "Unhandled error in message handler",
                    message_id=getattr(getattr(message, "Info", None), "ID", "unknown"),
                )

        self._register_optional_events()

    def _register_optional_events(self) -> None:
        """Events that only some neonize releases expose."""
        client = self._client
        table: dict[str, Any] = {
            "StreamReplacedEv": lambda ev: self._closed_with(
                DisconnectReason.CONNECTION_REPLACED, "Connection Replaced"
            ),
            "KeepAliveTimeoutEv": lambda ev: self._closed_with(
                DisconnectReason.TIMED_OUT, "Keep-alive timed out"
            ),
            "StreamErrorEv": self._on_stream_error,
            "ReceiptEv": self._on_receipt,
            "GroupInfoEv": self._on_group_info,
            "PictureEv": self._on_picture,
            "PresenceEv": self._on_presence,
        }
        for name, handler in table.items():
            ev_type = getattr(neonize_event_types, name, None)
            if ev_type is None:
                continue

            async def _dispatch(_client: NewAClient, ev: Any, handler: Any = handler) -> None:
                handler(ev)

            client.event(ev_type)(_dispatch)

    def _on_stream_error(self, ev: Any) -> None:
        code = str(getattr(ev, "Code", ""))
        if code == str(int(DisconnectReason.RESTART_REQUIRED)):
            self._closed_with(DisconnectReason.RESTART_REQUIRED, "Restart Required")
        else:
            self._closed_with(DisconnectReason.CONNECTION_LOST, f"Stream error {code}")

    def _on_receipt(self, ev: Any) -> None:
        source = ev.MessageSource
        chat = Jid2String(source.Chat)
        updates = [
            MessageUpdate(chat=chat, id=message_id, status=str(ev.Type))
            for message_id in ev.MessageIDs
        ]
        if updates:
            self.ev.emit("messages.update", updates)

    def _on_group_info(self, ev: Any) -> None:
        group = Jid2String(ev.JID)
        for action, field_name in (
            ("add", "Join"),
            ("remove", "Leave"),
            ("promote", "Promote"),
            ("demote", "Demote"),
        ):
            members = [Jid2String(j) for j in getattr(ev, field_name, None) or []]
            if members:
                self.ev.emit(
                    "group-participants.update",
                    ParticipantsUpdate(id=group, participants=members, action=action),
                )
        update: dict[str, Any] = {"id": group}
        if name := getattr(_set_field(ev, "Name"), "Name", ""):
            update["subject"] = name
        if topic := getattr(_set_field(ev, "Topic"), "Topic", ""):
            update["desc"] = topic
        if (announce := _set_field(ev, "Announce")) is not None:
            update["announce"] = bool(announce.IsAnnounce)
        if (locked := _set_field(ev, "Locked")) is not None:
            update["restrict"] = bool(locked.IsLocked)
        if link := _set_field(ev, "NewInviteLink"):
            update["revoke"] = link
        if len(update) > 1:
            self.ev.emit("groups.update", [update])

    def _on_picture(self, ev: Any) -> None:
        jid = Jid2String(ev.JID)
        if jid.endswith("@g.us"):
            self.ev.emit("groups.update", [{"id": jid, "icon": not bool(ev.Remove)}])

    def _on_presence(self, ev: Any) -> None:
        jid = Jid2String(ev.From)
        self.ev.emit(
            "presence.update",
            {"id": jid, "presences": {jid: {"unavailable": bool(ev.Unavailable)}}},
        )

    def _handle_message(self, message: Any) -> None:
        info = message.Info
        source = info.MessageSource
        chat = Jid2String(source.Chat)
        if not chat or chat == "status@broadcast":
            return
        msg = message.Message

        revoked = msg.protocolMessage.key.ID if msg.HasField("protocolMessage") else ""
        if revoked:
            self.ev.emit(
                "message.delete",
                {"chat": chat, "id": revoked, "sender": Jid2String(source.Sender)},
            )
            return

        ts = info.Timestamp
        if ts > 1e10:
            ts = ts / 1000
        sender = Jid2String(source.Sender)
        incoming = IncomingMessage(
            id=info.ID,
            chat=chat,
            sender=sender,
            text=_message_text(msg),
            push_name=info.Pushname or "",
            from_me=bool(source.IsFromMe),
            timestamp=float(ts),
            raw=message,
        )
        self.ev.emit("messages.upsert", MessagesUpsert(messages=[incoming], type="notify"))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._update(connection=ConnectionState.CONNECTING)
        await self._client.connect()
        self._idle_task = asyncio.ensure_future(self._client.idle())

    async def close(self) -> None:
        self._closed = True
        if self._idle_task is not None:
            self._idle_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await self._idle_task
            self._idle_task = None
        with contextlib.suppress(Exception):
            await self._client.disconnect()

    async def request_pairing_code(self, phone_number: str) -> str:
        code = await self._client.PairPhone(phone_number, True)
        return str(code)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send_message(
        self,
        jid: str,
        content: dict[str, Any],
        options: dict[str, Any] | None = None,
    ) -> Any:
        target = parse_jid(jid)
        quoted = (options or {}).get("quoted")
        quoted_raw = getattr(quoted, "raw", None)

        if "text" in content:
            text = content["text"]
            if quoted_raw is not None:
                reply = await self._client.build_reply_message(text, quoted_raw)
                return await self._client.send_message(target, reply)
            return await self._client.send_message(target, text)

        for kind in MEDIA_KINDS:
            if kind in content:
                message = await self._build_media(kind, content, quoted_raw)
                return await self._client.send_message(target, message)

        if "interactive" in content:
            text = render_interactive(content["interactive"])
            return await self.send_message(jid, {"text": text}, options)

        if "contacts" in content:
            return await self._send_contacts(target, content["contacts"])

        if "poll" in content:
            from neonize.utils.enum import VoteType

            poll = content["poll"]
            vote = VoteType.SINGLE if poll.get("selectableCount", 1) <= 1 else VoteType.MULTIPLE
            message = await self._client.build_poll_vote_creation(
                poll["name"], list(poll["options"]), vote
            )
            return await self._client.send_message(target, message)

        raise ValueError(f"Unsupported message content: {sorted(content)}")

    async def _build_media(self, kind: str, content: dict[str, Any], quoted: Any) -> Any:
        source = content[kind]
        file = source["url"] if isinstance(source, dict) else source
        caption = content.get("caption") or None
        match kind:
            case "image":
                return await self._client.build_image_message(file, caption=caption, quoted=quoted)
            case "video":
                return await self._client.build_video_message(file, caption=caption, quoted=quoted)
            case "audio":
                return await self._client.build_audio_message(
                    file, ptt=bool(content.get("ptt")), quoted=quoted
                )
            case "sticker":
                return await self._client.build_sticker_message(file, quoted=quoted)
            case _:
                return await self._client.build_document_message(
                    file,
                    caption=caption,
                    filename=content.get("fileName"),
                    mimetype=content.get("mimetype"),
                    quoted=quoted,
                )

    async def _send_contacts(self, target: Any, contacts: dict[str, Any]) -> Any:
        from neonize.proto.waE2E.WAWebProtobufsE2E_pb2 import (
            ContactMessage,
            ContactsArrayMessage,
            Message,
        )

        cards = [
            ContactMessage(displayName=c["displayName"], vcard=c["vcard"])
            for c in contacts["contacts"]
        ]
        if len(cards) == 1:
            message = Message(contactMessage=cards[0])
        else:
            message = Message(
                contactsArrayMessage=ContactsArrayMessage(
                    displayName=contacts["displayName"], contacts=cards
                )
            )
        return await self._client.send_message(target, message)


class NeonizeTransport:
    name = "neonize"

    def create_connection(
        self,
        config: ConnectionConfig,
        *,
        chats: dict[str, dict[str, Any]] | None = None,
    ) -> NeonizeConnection:
        logger.debug("Creating neonize connection", session_dir=config.session_dir)
        return NeonizeConnection(config, chats=chats)


class NeonizeTransportPlugin:
    """Registers :class:`NeonizeTransport` with the transport plugin manager."""

    @hookimpl
    def wabot_transport(self) -> NeonizeTransport:
        return NeonizeTransport()
