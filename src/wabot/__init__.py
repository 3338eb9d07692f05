"""wabot: WhatsApp bot with reconnect supervision and hot-reloadable plugins."""

__version__ = "0.4.0"
