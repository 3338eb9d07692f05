"""Entry point for `python -m wabot` / `wabot`.

Subcommands:
    wabot                          Run the bot (default)
    wabot --pairing-code --phone N Log in with a pairing code
    wabot --qr                     Log in by scanning a QR code
    wabot --server [--port P]      Also serve /health and /api/* over HTTP
    wabot encode-session FILE      Print a SESSION_ID blob for a creds.json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path


def _run(args: argparse.Namespace) -> None:
    from wabot._lifecycle import StartupError
    from wabot.app import BotApp, RunOptions
    from wabot.logger import logger
    from wabot.transport import TransportUnavailableError

    options = RunOptions(
        pairing_code=args.pairing_code,
        phone=args.phone,
        qr=args.qr,
        server=True if args.server else None,
        port=args.port,
    )
    app = BotApp(options)
    try:
        asyncio.run(app.run())
    except (StartupError, TransportUnavailableError) as exc:
        logger.error("Startup failed", err=str(exc))
        sys.exit(1)


def _encode_session(path: str) -> None:
    from wabot.config import get_settings
    from wabot.session_store import SessionError, encode_bootstrap

    try:
        creds = json.loads(Path(path).read_text(encoding="utf-8"))
        blob = encode_bootstrap(creds, get_settings().session.bootstrap_tag)
    except (OSError, json.JSONDecodeError, SessionError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    print(blob)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wabot",
        description="WhatsApp bot with hot-reloadable command plugins",
    )
    parser.add_argument(
        "--pairing-code", action="store_true", help="Log in with a pairing code instead of QR"
    )
    parser.add_argument("--phone", help="Phone number (with country code) for --pairing-code")
    parser.add_argument("--qr", action="store_true", help="Log in by scanning a QR code")
    parser.add_argument("--server", action="store_true", help="Start the embedded HTTP server")
    parser.add_argument("--port", type=int, help="HTTP server port (default: server.port)")
    sub = parser.add_subparsers(dest="command")
    enc = sub.add_parser("encode-session", help="Print a SESSION_ID blob for a creds.json file")
    enc.add_argument("file", help="Path to creds.json")
    return parser


def main() -> None:
    args = build_parser().parse_args()

    match args.command:
        case "encode-session":
            _encode_session(args.file)
        case _:
            try:
                _run(args)
            except KeyboardInterrupt:
                sys.exit(130)


if __name__ == "__main__":
    main()
