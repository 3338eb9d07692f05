"""Plugin registry: identifier → loaded plugin, kept in sync with the plugin directory.

A plugin is a ``*.py`` file directly inside the plugin directory whose name
does not start with ``_``. The file either exports ``plugin = Plugin(...)``
or declares the same fields at module level::

    command = ["ping", "p"]
    help = ["ping"]
    tags = ["main"]

    async def handle(ctx):
        await ctx.reply("pong")

Every load executes the file into a brand-new module object, so a failing
load never disturbs what is already registered.
"""

from __future__ import annotations

import asyncio
import importlib.util
import itertools
import re
import sys
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from types import ModuleType
from typing import TYPE_CHECKING, Any, TypeAlias

from wabot.logger import logger

if TYPE_CHECKING:
    from wabot.config import Settings
    from wabot.facade import MessageFacade
    from wabot.types import Connection, IncomingMessage

CommandSpec: TypeAlias = str | re.Pattern[str] | list[str | re.Pattern[str]]

_module_counter = itertools.count(1)


class PluginLoadError(Exception):
    """A plugin file could not be compiled, executed, or understood."""


class ReloadOutcome(StrEnum):
    ADDED = "added"
    REPLACED = "replaced"
    REMOVED = "removed"
    KEPT_LAST_GOOD = "kept-last-good"
    FAILED = "failed"
    ABSENT = "absent"
    IGNORED = "ignored"


@dataclass
class PluginContext:
    """What a plugin's ``handle`` receives for one matched command."""

    conn: Connection
    message: IncomingMessage
    command: str
    args: list[str]
    prefix: str
    is_owner: bool
    facade: MessageFacade
    registry: PluginRegistry
    settings: Settings

    @property
    def text(self) -> str:
        return " ".join(self.args)

    @property
    def chat(self) -> str:
        return self.message.chat

    async def reply(self, content: str | bytes, **options: Any) -> Any:
        return await self.facade.reply(self.message.chat, content, quoted=self.message, **options)


def _string_list(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


@dataclass
class Plugin:
    command: CommandSpec | None = None
    handle: Callable[[PluginContext], Awaitable[Any]] | None = None
    help: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    owner_only: bool = False
    group_only: bool = False
    private_only: bool = False
    disabled: bool = False

    def __post_init__(self) -> None:
        self.help = _string_list(self.help)
        self.tags = _string_list(self.tags)

    def matches(self, name: str) -> bool:
        """True if *name* (already lower-cased) selects this plugin."""
        spec = self.command
        if spec is None:
            return False
        candidates = spec if isinstance(spec, list) else [spec]
        for candidate in candidates:
            if isinstance(candidate, re.Pattern):
                if candidate.search(name):
                    return True
            elif candidate == name:
                return True
        return False


@dataclass
class PluginRecord:
    identifier: str
    module: ModuleType
    plugin: Plugin
    loaded_at: datetime

    def describe(self) -> dict[str, Any]:
        command = self.plugin.command
        commands = command if isinstance(command, list) else [command] if command else []
        return {
            "identifier": self.identifier,
            "commands": [c.pattern if isinstance(c, re.Pattern) else c for c in commands],
            "help": list(self.plugin.help),
            "tags": list(self.plugin.tags),
            "disabled": self.plugin.disabled,
            "loaded_at": self.loaded_at.isoformat(),
        }


def is_plugin_filename(name: str) -> bool:
    return name.endswith(".py") and not name.startswith((".", "_")) and "/" not in name


def _coerce_plugin(module: ModuleType) -> Plugin:
    exported = getattr(module, "plugin", None)
    if isinstance(exported, Plugin):
        plugin = exported
    else:
        plugin = Plugin(
            command=getattr(module, "command", None),
            handle=getattr(module, "handle", None),
            help=getattr(module, "help", None),
            tags=getattr(module, "tags", None),
            owner_only=bool(getattr(module, "owner_only", False)),
            group_only=bool(getattr(module, "group_only", False)),
            private_only=bool(getattr(module, "private_only", False)),
            disabled=bool(getattr(module, "disabled", False)),
        )
    if plugin.handle is None or not callable(plugin.handle):
        raise PluginLoadError("plugin defines no callable 'handle'")
    return plugin


def check_syntax(path: Path) -> None:
    """Compile *path* without executing it; raises PluginLoadError if invalid."""
    try:
        source = path.read_bytes()
        compile(source, str(path), "exec", dont_inherit=True)
    except (SyntaxError, ValueError) as exc:
        raise PluginLoadError(f"syntax error: {exc}") from exc
    except OSError as exc:
        raise PluginLoadError(f"cannot read: {exc}") from exc


def load_plugin_file(path: Path) -> PluginRecord:
    """Execute *path* into a fresh module and return its record."""
    module_name = f"wabot_plugin_{path.stem}_{next(_module_counter)}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise PluginLoadError(f"cannot build import spec for {path.name}")
    module = importlib.util.module_from_spec(spec)
    # Registered while executing so decorators that look up their module work.
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
        plugin = _coerce_plugin(module)
    except PluginLoadError:
        sys.modules.pop(module_name, None)
        raise
    except (Exception, SystemExit) as exc:
        sys.modules.pop(module_name, None)
        raise PluginLoadError(f"{type(exc).__name__}: {exc}") from exc
    return PluginRecord(
        identifier=path.name,
        module=module,
        plugin=plugin,
        loaded_at=datetime.now(UTC),
    )


class PluginRegistry:
    """Owns the identifier → :class:`PluginRecord` mapping.

    Handler code reads through :meth:`lookup`, :meth:`plugins` and
    :meth:`find_command`; only :meth:`load_all` and :meth:`reload_one`
    mutate.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self._records: dict[str, PluginRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Read API
    # ------------------------------------------------------------------

    def lookup(self, identifier: str) -> PluginRecord | None:
        return self._records.get(identifier)

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[str]:
        return iter(self._records)

    def identifiers(self) -> list[str]:
        return list(self._records)

    def items(self) -> list[tuple[str, PluginRecord]]:
        return list(self._records.items())

    def plugins(self) -> list[Plugin]:
        return [record.plugin for record in self._records.values()]

    def find_command(self, name: str) -> PluginRecord | None:
        """First enabled plugin, in identifier order, whose command matches *name*."""
        for record in self._records.values():
            if record.plugin.disabled:
                continue
            if record.plugin.matches(name):
                return record
        return None

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def _resort(self) -> None:
        self._records = dict(sorted(self._records.items()))

    def _scan(self) -> list[Path]:
        try:
            entries = list(self.directory.iterdir())
        except OSError as exc:
            logger.error("Cannot read plugin directory", path=str(self.directory), err=str(exc))
            return []
        return sorted(p for p in entries if p.is_file() and is_plugin_filename(p.name))

    def load_all(self) -> int:
        """Replace the mapping with a fresh scan of the directory. Returns the count loaded."""
        self.directory.mkdir(parents=True, exist_ok=True)
        records: dict[str, PluginRecord] = {}
        for path in self._scan():
            try:
                records[path.name] = load_plugin_file(path)
            except PluginLoadError as exc:
                logger.error("Plugin failed to load", plugin=path.name, err=str(exc))
        for old in self._records.values():
            sys.modules.pop(old.module.__name__, None)
        self._records = records
        self._resort()
        logger.info("Plugins loaded", count=len(self._records))
        return len(self._records)

    def _lock_for(self, identifier: str) -> asyncio.Lock:
        lock = self._locks.get(identifier)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[identifier] = lock
        return lock

    async def reload_one(self, identifier: str) -> ReloadOutcome:
        """Bring *identifier* in line with the file on disk.

        Calls for the same identifier run one at a time.
        """
        if not is_plugin_filename(identifier):
            return ReloadOutcome.IGNORED
        async with self._lock_for(identifier):
            return self._reload_locked(identifier)

    def _reload_locked(self, identifier: str) -> ReloadOutcome:
        path = self.directory / identifier
        known = identifier in self._records

        if not path.is_file():
            if not known:
                return ReloadOutcome.ABSENT
            old = self._records.pop(identifier)
            sys.modules.pop(old.module.__name__, None)
            self._resort()
            logger.info("Plugin removed", plugin=identifier)
            return ReloadOutcome.REMOVED

        if not known:
            try:
                record = load_plugin_file(path)
            except PluginLoadError as exc:
                logger.error("New plugin failed to load", plugin=identifier, err=str(exc))
                return ReloadOutcome.FAILED
            self._records[identifier] = record
            self._resort()
            logger.info("Plugin added", plugin=identifier)
            return ReloadOutcome.ADDED

        try:
            check_syntax(path)
            record = load_plugin_file(path)
        except PluginLoadError as exc:
            logger.error(
                "Plugin reload rejected, keeping last good", plugin=identifier, err=str(exc)
            )
            return ReloadOutcome.KEPT_LAST_GOOD

        old = self._records[identifier]
        self._records[identifier] = record
        sys.modules.pop(old.module.__name__, None)
        self._resort()
        logger.info("Plugin reloaded", plugin=identifier)
        return ReloadOutcome.REPLACED
