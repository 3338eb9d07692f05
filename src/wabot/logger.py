"""Process-wide structlog logger for wabot.

Configured at import time from ``LOG_LEVEL`` and ``LOG_FORMAT`` (``console``
or ``json``) rather than from Settings, so a broken config.toml is still
reported through the same logger. :func:`set_level` applies
``logging.level`` once Settings have loaded.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import Any

import structlog


def _env_level() -> int:
    level = getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), None)
    return level if isinstance(level, int) else logging.INFO


def _renderer() -> structlog.types.Processor:
    if os.environ.get("LOG_FORMAT", "console").lower() == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def _configure() -> structlog.stdlib.BoundLogger:
    # stdlib root carries the level; filter_by_level reads it from there
    logging.basicConfig(level=_env_level(), format="%(message)s", stream=sys.stderr)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            _renderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger("wabot")


logger = _configure()


def set_level(level_name: str) -> None:
    level = getattr(logging, level_name.upper(), None)
    if isinstance(level, int):
        logging.getLogger().setLevel(level)


def _log_uncaught(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: object,
) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
        return
    logger.critical("Process crashed", exc_info=(exc_type, exc_value, exc_tb))
    sys.exit(1)


def loop_exception_handler(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
    """Report errors from tasks and callbacks; the loop keeps running."""
    exc = context.get("exception")
    logger.error(
        "Unhandled error in event loop",
        message=context.get("message", ""),
        exc_info=exc if isinstance(exc, BaseException) else None,
    )


sys.excepthook = _log_uncaught
