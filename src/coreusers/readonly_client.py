"""
ReadOnlyTelegramClient — allowlist proxy around Telethon's TelegramClient.

The core-users sync only ever needs to resolve a channel and read its
history and discussion threads.  This wrapper exposes exactly those
methods (plus connection lifecycle) and refuses everything else with a
``PermissionError`` and a CRITICAL log line, so a bug in the sync code can
never post, edit or delete anything with the operator's account.
"""

from __future__ import annotations

import logging
from typing import Any, FrozenSet
from weakref import WeakKeyDictionary

from telethon import TelegramClient as TelethonClient

logger = logging.getLogger("coreusers.readonly_client")

# Reviewed read-only Telethon methods.  Keep this list minimal.
ALLOWED_METHODS: FrozenSet[str] = frozenset(
    {
        "get_entity",
        "get_messages",
        "get_me",
        "connect",
        "disconnect",
        "is_connected",
    }
)

# Wrapped clients are kept outside the instance so attribute tricks on the
# wrapper cannot reach the raw client.
_CLIENTS: "WeakKeyDictionary[ReadOnlyTelegramClient, TelethonClient]" = WeakKeyDictionary()

_OWN_ATTRIBUTES = frozenset(
    {
        "__class__",
        "__repr__",
        "__aenter__",
        "__aexit__",
        "__getattribute__",
        "__setattr__",
        "__delattr__",
    }
)


def _raw_client(wrapper: "ReadOnlyTelegramClient") -> TelethonClient:
    client = _CLIENTS.get(wrapper)
    if client is None:
        raise PermissionError("ReadOnlyTelegramClient: wrapped client unavailable.")
    return client


class ReadOnlyTelegramClient:
    """Read-only proxy around a Telethon client.

    Usage::

        async with ReadOnlyTelegramClient(TelethonClient(...)) as client:
            entity = await client.get_entity("some_channel")
            page = await client.get_messages(entity, limit=100)
    """

    __slots__ = ("__weakref__",)

    def __init__(self, client: TelethonClient) -> None:
        _CLIENTS[self] = client

    async def __aenter__(self) -> "ReadOnlyTelegramClient":
        await _raw_client(self).connect()
        logger.info("ReadOnlyTelegramClient connected.")
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await _raw_client(self).disconnect()
        logger.info("ReadOnlyTelegramClient disconnected.")

    def __getattribute__(self, name: str) -> Any:
        if name in _OWN_ATTRIBUTES:
            return object.__getattribute__(self, name)

        if name not in ALLOWED_METHODS:
            logger.critical("BLOCKED  | attr=%s (not on the read-only allowlist)", name)
            raise PermissionError(
                f"ReadOnlyTelegramClient: access to '{name}' is denied. "
                f"Only these methods are permitted: {sorted(ALLOWED_METHODS)}"
            )

        attr = getattr(_raw_client(self), name)
        if not callable(attr):
            raise PermissionError(
                f"ReadOnlyTelegramClient: allowed member '{name}' is not callable."
            )
        logger.debug("ALLOWED  | method=%s", name)
        return attr

    def __setattr__(self, name: str, value: Any) -> None:
        raise PermissionError("ReadOnlyTelegramClient: setting attributes is not allowed.")

    def __delattr__(self, name: str) -> None:
        raise PermissionError("ReadOnlyTelegramClient: deleting attributes is not allowed.")

    def __repr__(self) -> str:
        return f"<ReadOnlyTelegramClient allowed={sorted(ALLOWED_METHODS)}>"
