"""Pluggy hook specifications for transport providers.

A transport provider plugin implements :meth:`WabotSpec.wabot_transport`
and returns an object satisfying :class:`wabot.types.MessagingTransport`.
"""

from __future__ import annotations

from typing import Any

import pluggy

hookspec = pluggy.HookspecMarker("wabot")
hookimpl = pluggy.HookimplMarker("wabot")


class WabotSpec:
    """Hook specifications for wabot plugins."""

    @hookspec
    def wabot_transport(self) -> Any | None:
        """Provide a messaging transport.

        Returns:
            Object with:
                - name (str): provider identifier (e.g. "neonize")
                - create_connection(config, *, chats=None) -> Connection
            Or None if this plugin doesn't provide one.
        """
