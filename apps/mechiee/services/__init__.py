"""Service layer package.

Keep imports lazy so importing one service does not pull in the whole graph.
Common entry points remain reachable from `mechiee.services` through
`__getattr__` proxies.
"""

from __future__ import annotations

from importlib import import_module
from typing import Any

_EXPORTS = {
    "BookingDispatcher": "mechiee.services.dispatch",
    "ChatEngine": "mechiee.services.chat",
    "Directory": "mechiee.services.directory",
    "PersistentNotifier": "mechiee.services.notifier",
    "PresenceHub": "mechiee.services.presence",
    "RoomGateway": "mechiee.services.gateway",
    "RoomRegistry": "mechiee.services.rooms",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:  # PEP 562 lazy attribute access
    module = _EXPORTS.get(name)
    if module is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    return getattr(import_module(module), name)
