"""Transport provider discovery.

Built on pluggy. The built-in neonize transport is registered from a static
table; third-party packages can add providers through the ``wabot``
setuptools entry-point group.

Usage:
    from wabot.transport import get_transport

    transport = get_transport("neonize")
    conn = transport.create_connection(config)
"""

from __future__ import annotations

import importlib

import pluggy

from wabot.logger import logger
from wabot.transport.hookspecs import WabotSpec, hookimpl
from wabot.types import MessagingTransport

__all__ = [
    "TransportUnavailableError",
    "get_plugin_manager",
    "get_transport",
    "hookimpl",
]

# (module_path, class_name)
_BUILTIN_PLUGIN_SPECS: list[tuple[str, str]] = [
    ("wabot.transport.neonize_transport", "NeonizeTransportPlugin"),
]


class TransportUnavailableError(Exception):
    """No registered plugin provides the requested transport."""


def get_plugin_manager() -> pluggy.PluginManager:
    """Create the plugin manager with built-in and entry-point plugins registered."""
    pm = pluggy.PluginManager("wabot")
    pm.add_hookspecs(WabotSpec)

    for module_path, class_name in _BUILTIN_PLUGIN_SPECS:
        try:
            mod = importlib.import_module(module_path)
            cls = getattr(mod, class_name)
            pm.register(cls(), name=f"builtin-{class_name}")
            logger.debug("Registered built-in transport", name=class_name)
        except ImportError as exc:
            # neonize ships a native library; a broken install skips the provider
            logger.warning(
                "Transport skipped (dependency missing)", plugin=class_name, err=str(exc)
            )
        except Exception:
            logger.exception("Failed to load built-in transport", plugin=class_name)

    # Third-party providers register via the "wabot" entry-point group
    discovered = pm.load_setuptools_entrypoints("wabot")
    if discovered:
        logger.info("Loaded transport plugins from entry points", count=discovered)

    return pm


def get_transport(
    provider: str,
    pm: pluggy.PluginManager | None = None,
) -> MessagingTransport:
    """Return the transport named *provider*.

    Raises:
        TransportUnavailableError: if no plugin provides it.
    """
    pm = pm or get_plugin_manager()
    transports = [t for t in pm.hook.wabot_transport() if t is not None]
    for transport in transports:
        if getattr(transport, "name", None) == provider:
            return transport
    available = sorted(getattr(t, "name", "?") for t in transports)
    raise TransportUnavailableError(
        f"Transport {provider!r} not available (have: {', '.join(available) or 'none'})"
    )
