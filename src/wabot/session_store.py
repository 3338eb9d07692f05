"""Credential persistence and bootstrap-blob restore.

The credential blob is opaque JSON owned by the transport, with one rule
enforced here: it must carry the bot's own identity at ``me.id``. A blob
without it is deleted, never partially trusted.

Bootstrap blobs have the form ``<tag>~<base64>`` where the base64 payload is
gzip-compressed credential JSON. Some deploy dashboards truncate long
variables with ``...``; those runs are stripped before decoding.
"""

from __future__ import annotations

import base64
import binascii
import gzip
import json
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from wabot.logger import logger
from wabot.utils import write_json_atomic

CREDS_FILE = "creds.json"
PRE_KEY_PREFIX = "pre-key-"


class SessionError(Exception):
    """Raised when a bootstrap blob cannot be decoded into valid credentials."""


@dataclass
class SessionLoadResult:
    loaded: bool
    creds: dict[str, Any] | None = None
    source: str | None = None  # "file" | "bootstrap"


def has_identity(creds: Any) -> bool:
    if not isinstance(creds, dict):
        return False
    me = creds.get("me")
    if not isinstance(me, dict):
        return False
    me_id = me.get("id")
    return isinstance(me_id, str) and bool(me_id.strip())


def decode_bootstrap(blob: str, tag: str) -> tuple[dict[str, Any], bytes]:
    """Decode ``<tag>~<base64>`` into (credentials, raw JSON bytes)."""
    header, sep, b64data = blob.strip().partition("~")
    if header != tag or not sep or not b64data:
        raise SessionError(f"Invalid session format, expected {tag}~<base64>")

    clean = b64data.replace("...", "")
    try:
        compressed = base64.b64decode(clean, validate=False)
        raw = gzip.decompress(compressed)
        creds = json.loads(raw.decode("utf-8"))
    except (
        binascii.Error,
        OSError,
        EOFError,
        zlib.error,
        UnicodeDecodeError,
        json.JSONDecodeError,
    ) as exc:
        raise SessionError(f"Session blob could not be decoded: {exc}") from exc

    if not has_identity(creds):
        raise SessionError("Session blob has no me.id")
    return creds, raw


def encode_bootstrap(creds: dict[str, Any], tag: str) -> str:
    """Inverse of :func:`decode_bootstrap`: used by ``wabot encode-session``."""
    if not has_identity(creds):
        raise SessionError("Credentials have no me.id")
    raw = json.dumps(creds).encode("utf-8")
    return f"{tag}~{base64.b64encode(gzip.compress(raw)).decode('ascii')}"


class SessionStore:
    """Reads and writes ``creds.json`` in the session directory."""

    def __init__(
        self,
        session_dir: Path,
        *,
        bootstrap_tag: str,
        bootstrap_blob: str | None = None,
    ) -> None:
        self.session_dir = session_dir
        self.bootstrap_tag = bootstrap_tag
        self._bootstrap_blob = bootstrap_blob

    @property
    def creds_path(self) -> Path:
        return self.session_dir / CREDS_FILE

    def load(self) -> SessionLoadResult:
        """Restore credentials from disk, falling back to the bootstrap blob.

        Never raises; every failure is logged and reported as not loaded.
        """
        try:
            self.session_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.error(
                "Cannot create session directory", path=str(self.session_dir), err=str(exc)
            )
            return SessionLoadResult(loaded=False)

        existing = self._read_existing()
        if existing is not None:
            logger.info("Valid session found", path=str(self.creds_path))
            return SessionLoadResult(loaded=True, creds=existing, source="file")

        if not self._bootstrap_blob:
            logger.warning("SESSION_ID missing and no stored session")
            return SessionLoadResult(loaded=False)

        try:
            creds, raw = decode_bootstrap(self._bootstrap_blob, self.bootstrap_tag)
        except SessionError as exc:
            logger.error("Bootstrap session rejected", err=str(exc))
            return SessionLoadResult(loaded=False)

        try:
            self.creds_path.write_bytes(raw)
        except OSError as exc:
            logger.error("Could not write session file", err=str(exc))
            return SessionLoadResult(loaded=False)

        logger.info("Session loaded from bootstrap blob")
        return SessionLoadResult(loaded=True, creds=creds, source="bootstrap")

    def _read_existing(self) -> dict[str, Any] | None:
        path = self.creds_path
        if not path.exists():
            return None
        try:
            creds = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError):
            self.delete()
            logger.info("Corrupted session removed", path=str(path))
            return None
        if not has_identity(creds):
            self.delete()
            logger.info("Invalid session removed", path=str(path))
            return None
        return creds

    def save(self, creds: dict[str, Any]) -> None:
        """Persist a rotated credential blob. Blobs without identity are ignored."""
        if not has_identity(creds):
            logger.warning("Refusing to persist credentials without me.id")
            return
        write_json_atomic(self.creds_path, creds)
        logger.debug("Credentials persisted", path=str(self.creds_path))

    def delete(self) -> None:
        try:
            self.creds_path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not delete session file", err=str(exc))

    def clean_pre_keys(self) -> int:
        """Remove ``pre-key-*`` files; returns how many were deleted."""
        removed = 0
        try:
            entries = list(self.session_dir.iterdir())
        except OSError as exc:
            logger.warning("Cannot list session directory", err=str(exc))
            return 0
        for entry in entries:
            if entry.is_file() and entry.name.startswith(PRE_KEY_PREFIX):
                try:
                    entry.unlink()
                    removed += 1
                except OSError as exc:
                    logger.debug("Pre-key removal failed", file=entry.name, err=str(exc))
        return removed
