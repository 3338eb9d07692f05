"""Message helpers layered over the supervisor's current connection.

Content is shaped as plain dicts keyed by message kind (``text``, ``image``,
``video``, ``audio``, ``sticker``, ``document``, ``interactive``,
``contacts``, ``poll``); the transport translates them to wire messages.
The facade never holds a connection of its own. Each call borrows whatever
connection the supervisor currently owns.
"""

from __future__ import annotations

import base64
import json
import mimetypes
import re
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import aiohttp

from wabot.logger import logger
from wabot.types import Connection
from wabot.utils import USER_SERVER, digits_only

MAX_FILE_MB = 1800
_DATA_URL = re.compile(r"^data:[^/;,]*/[^;,]*;base64,", re.IGNORECASE)
_HTTP_URL = re.compile(r"^https?://", re.IGNORECASE)

# (offset, signature, mime, ext)
_MAGIC: list[tuple[int, bytes, str, str]] = [
    (0, b"\x89PNG\r\n\x1a\n", "image/png", "png"),
    (0, b"\xff\xd8\xff", "image/jpeg", "jpg"),
    (0, b"GIF87a", "image/gif", "gif"),
    (0, b"GIF89a", "image/gif", "gif"),
    (0, b"%PDF-", "application/pdf", "pdf"),
    (0, b"OggS", "audio/ogg", "ogg"),
    (0, b"ID3", "audio/mpeg", "mp3"),
    (0, b"\xff\xfb", "audio/mpeg", "mp3"),
    (0, b"fLaC", "audio/flac", "flac"),
    (0, b"\x1aE\xdf\xa3", "video/webm", "webm"),
    (0, b"PK\x03\x04", "application/zip", "zip"),
]


class FileTooLargeError(Exception):
    """Raised when a file exceeds the transport's upload ceiling."""


@dataclass
class FileInfo:
    data: bytes
    mime: str
    ext: str
    filename: str | None = None  # set when the bytes live on disk
    status: int | None = None  # HTTP status when fetched from a URL


def sniff_type(data: bytes) -> tuple[str, str] | None:
    """Identify (mime, ext) from leading magic bytes."""
    if len(data) >= 12 and data[:4] == b"RIFF":
        kind = data[8:12]
        if kind == b"WEBP":
            return "image/webp", "webp"
        if kind == b"WAVE":
            return "audio/wav", "wav"
    if len(data) >= 12 and data[4:8] == b"ftyp":
        brand = data[8:12]
        if brand.startswith(b"M4A"):
            return "audio/mp4", "m4a"
        return "video/mp4", "mp4"
    for offset, sig, mime, ext in _MAGIC:
        if data[offset : offset + len(sig)] == sig:
            return mime, ext
    return None


def _escape_vcard(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n")


def build_vcard(number: str, name: str, business: dict[str, Any] | None = None) -> str:
    """vCard 3.0 for one WhatsApp contact."""
    lines = [
        "BEGIN:VCARD",
        "VERSION:3.0",
        f"N:;{_escape_vcard(name)};;;",
        f"FN:{_escape_vcard(name)}",
        f"TEL;type=CELL;type=VOICE;waid={number}:+{number}",
    ]
    if business and business.get("description"):
        biz_name = business.get("name") or name
        lines.append(f"X-WA-BIZ-NAME:{_escape_vcard(biz_name)}")
        lines.append(f"X-WA-BIZ-DESCRIPTION:{_escape_vcard(business['description'])}")
    lines.append("END:VCARD")
    return "\n".join(lines)


def _media_kind(mime: str, *, as_sticker: bool, as_document: bool) -> str:
    if as_document:
        return "document"
    if "webp" in mime or (mime.startswith("image/") and as_sticker):
        return "sticker"
    if mime.startswith("image/"):
        return "image"
    if mime.startswith("video/"):
        return "video"
    if mime.startswith("audio/"):
        return "audio"
    return "document"


class MessageFacade:
    """Convenience senders. Borrow the connection, never replace it."""

    def __init__(
        self,
        get_connection: Callable[[], Connection | None],
        *,
        tmp_dir: Path | None = None,
    ) -> None:
        self._get_connection = get_connection
        self.tmp_dir = tmp_dir

    @property
    def conn(self) -> Connection:
        conn = self._get_connection()
        if conn is None:
            raise RuntimeError("No active connection")
        return conn

    async def _send(
        self,
        jid: str,
        content: dict[str, Any],
        quoted: Any = None,
        options: dict[str, Any] | None = None,
    ) -> Any:
        opts = dict(options or {})
        if quoted is not None:
            opts["quoted"] = quoted
        return await self.conn.send_message(jid, content, opts or None)

    # ------------------------------------------------------------------
    # Text
    # ------------------------------------------------------------------

    async def reply(
        self,
        jid: str,
        content: str | bytes = "",
        quoted: Any = None,
        **options: Any,
    ) -> Any:
        if isinstance(content, bytes | bytearray):
            return await self.send_file(jid, bytes(content), "file", quoted=quoted, **options)
        return await self._send(jid, {"text": content}, quoted, options)

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def get_file(self, source: str | bytes | Path, *, save_to_file: bool = False) -> FileInfo:
        """Resolve bytes / data URL / http(s) URL / path into a :class:`FileInfo`."""
        filename: str | None = None
        status: int | None = None
        if isinstance(source, bytes | bytearray):
            data = bytes(source)
        elif isinstance(source, Path):
            filename = str(source)
            data = source.read_bytes()
        elif _DATA_URL.match(source):
            data = base64.b64decode(source.split(",", 1)[1])
        elif _HTTP_URL.match(source):
            async with aiohttp.ClientSession() as session:
                async with session.get(source) as resp:
                    status = resp.status
                    data = await resp.read()
        elif Path(source).is_file():
            filename = source
            data = Path(source).read_bytes()
        else:
            data = source.encode()

        sniffed = sniff_type(data)
        if sniffed is None and filename:
            guessed, _ = mimetypes.guess_type(filename)
            if guessed:
                ext = (mimetypes.guess_extension(guessed) or ".bin").lstrip(".")
                sniffed = (guessed, ext)
        mime, ext = sniffed or ("application/octet-stream", "bin")

        if save_to_file and filename is None and data and self.tmp_dir is not None:
            self.tmp_dir.mkdir(parents=True, exist_ok=True)
            target = self.tmp_dir / f"{time.time_ns()}.{ext}"
            target.write_bytes(data)
            filename = str(target)

        return FileInfo(data=data, mime=mime, ext=ext, filename=filename, status=status)

    async def send_file(
        self,
        jid: str,
        source: str | bytes | Path,
        filename: str = "",
        caption: str = "",
        quoted: Any = None,
        ptt: bool = False,
        *,
        as_document: bool = False,
        as_sticker: bool = False,
        mimetype: str | None = None,
        **options: Any,
    ) -> Any:
        """Send media, choosing sticker/image/video/audio/document from the content type.

        Sends by path first; if that fails the raw bytes are sent instead.
        """
        info = await self.get_file(source, save_to_file=True)
        if info.status is not None and info.status != 200:
            _raise_json_error(info)

        size_mb = len(info.data) / 1024 / 1024
        if size_mb >= MAX_FILE_MB:
            raise FileTooLargeError(f"File size is too large ({size_mb:.0f} MB)")

        kind = _media_kind(info.mime, as_sticker=as_sticker, as_document=as_document)
        mime = mimetype or info.mime
        if kind == "audio" and ptt and not mimetype:
            mime = "audio/ogg; codecs=opus"

        name = filename or (Path(info.filename).name if info.filename else f"file.{info.ext}")
        message: dict[str, Any] = {
            "caption": caption,
            "ptt": ptt,
            "mimetype": mime,
            "fileName": name,
        }

        if info.filename:
            try:
                return await self._send(
                    jid, {**message, kind: {"url": info.filename}}, quoted, options
                )
            except Exception as exc:
                logger.warning("File send by path failed, retrying with bytes", err=str(exc))
        return await self._send(jid, {**message, kind: info.data}, quoted, options)

    # ------------------------------------------------------------------
    # Interactive
    # ------------------------------------------------------------------

    async def send_button(
        self,
        jid: str,
        text: str = "",
        footer: str = "",
        buttons: Sequence[tuple[str, str]] = (),
        copy: str | int | None = None,
        urls: Sequence[tuple[str, str]] | None = None,
        quoted: Any = None,
        **options: Any,
    ) -> Any:
        native: list[dict[str, Any]] = [
            {
                "name": "quick_reply",
                "buttonParamsJson": json.dumps({"display_text": label, "id": button_id}),
            }
            for label, button_id in buttons
        ]
        if copy is not None and copy != "":
            native.append(
                {
                    "name": "cta_copy",
                    "buttonParamsJson": json.dumps({"display_text": "Copy", "copy_code": copy}),
                }
            )
        for label, url in urls or ():
            native.append(
                {
                    "name": "cta_url",
                    "buttonParamsJson": json.dumps(
                        {"display_text": label, "url": url, "merchant_url": url}
                    ),
                }
            )
        interactive = {
            "body": {"text": text},
            "footer": {"text": footer},
            "header": {"hasMediaAttachment": False},
            "nativeFlowMessage": {"buttons": native, "messageParamsJson": ""},
        }
        return await self._send(jid, {"interactive": interactive}, quoted, options)

    async def send_list(
        self,
        jid: str,
        title: str,
        text: str,
        button_text: str,
        sections: Sequence[dict[str, Any]],
        quoted: Any = None,
        **options: Any,
    ) -> Any:
        interactive = {
            "header": {"title": title, "hasMediaAttachment": False},
            "body": {"text": text},
            "nativeFlowMessage": {
                "buttons": [
                    {
                        "name": "single_select",
                        "buttonParamsJson": json.dumps(
                            {"title": button_text, "sections": list(sections)}
                        ),
                    }
                ],
                "messageParamsJson": "",
            },
        }
        return await self._send(jid, {"interactive": interactive}, quoted, options)

    # ------------------------------------------------------------------
    # Contacts & polls
    # ------------------------------------------------------------------

    async def send_contact(
        self,
        jid: str,
        contacts: Sequence[tuple[str, str]] | tuple[str, str],
        quoted: Any = None,
        **options: Any,
    ) -> Any:
        """Send one or more ``(number, name)`` pairs as vCards."""
        if contacts and isinstance(contacts[0], str):
            contacts = [contacts]  # type: ignore[list-item]
        cards: list[dict[str, str]] = []
        for number, name in contacts:  # type: ignore[misc]
            digits = digits_only(number)
            business = await self._business_profile(f"{digits}@{USER_SERVER}")
            cards.append({"vcard": build_vcard(digits, name, business), "displayName": name})
        if not cards:
            raise ValueError("send_contact needs at least one contact")
        display = f"{len(cards)} contacts" if len(cards) >= 2 else cards[0]["displayName"]
        content = {"contacts": {"displayName": display, "contacts": cards}}
        return await self._send(jid, content, quoted, options)

    async def _business_profile(self, jid: str) -> dict[str, Any] | None:
        getter = getattr(self.conn, "get_business_profile", None)
        if getter is None:
            return None
        try:
            return await getter(jid)
        except Exception as exc:
            logger.debug("Business profile lookup failed", jid=jid, err=str(exc))
            return None

    async def send_poll(
        self,
        jid: str,
        name: str,
        options: Sequence[str],
        *,
        selectable_count: int = 1,
    ) -> Any:
        poll = {
            "name": name,
            "options": [o for o in options if o],
            "selectableCount": selectable_count,
        }
        return await self._send(jid, {"poll": poll})


def _raise_json_error(info: FileInfo) -> None:
    """A failed URL fetch that returned a JSON body surfaces that body."""
    try:
        body = json.loads(info.data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise RuntimeError(f"File download failed with HTTP {info.status}") from None
    raise RuntimeError(f"File download failed with HTTP {info.status}: {body}")
