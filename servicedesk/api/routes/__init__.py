"""Route modules exposed by the API package."""

from . import equipment, ping, tickets

__all__ = ["equipment", "ping", "tickets"]
