"""
Messaging gateway — the narrow, typed surface the sync engine uses to
read Telegram.

``MessagingGateway`` is the abstraction boundary: the engine only calls
``resolve_entity`` and ``list_messages`` and only sees ``GatewayMessage``
values.  ``TelethonGateway`` is the production adapter over
``ReadOnlyTelegramClient``; tests substitute a deterministic fake.

Telethon errors are translated into the ``GatewayError`` hierarchy here so
callers never import Telethon.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Union

from telethon import errors as tg_errors
from telethon.tl.types import PeerChannel, PeerChat, PeerUser

from coreusers.constants import PAGE_LIMIT
from coreusers.readonly_client import ReadOnlyTelegramClient
from shared.cache import TTLCache

logger = logging.getLogger("coreusers.gateway")


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------


class AuthorKind(str, Enum):
    """Who wrote a comment: a person, a channel posting as itself, or a chat."""

    USER = "user"
    CHANNEL = "channel"
    CHAT = "chat"


@dataclass(frozen=True)
class SenderPeer:
    kind: AuthorKind
    external_id: int


@dataclass
class GatewayMessage:
    """A channel post or discussion comment as returned by the gateway.

    ``id`` and ``date`` are left loosely typed on purpose: the engine
    validates them and skips malformed items.  ``date`` may be a datetime
    or epoch seconds.
    """

    id: Any
    date: Union[datetime, int, float, None]
    reply_count: Optional[int] = None
    sender: Optional[SenderPeer] = None


class GatewayError(Exception):
    """Base class for failures talking to Telegram."""


class GatewayRateLimitError(GatewayError):
    """Telegram asked us to wait (FLOOD_WAIT) longer than we are willing to."""

    def __init__(self, retry_after: float, message: str = "") -> None:
        super().__init__(message or f"rate limited, retry after {retry_after}s")
        self.retry_after = retry_after


class GatewayEntityNotFoundError(GatewayError):
    """The channel username does not resolve to an entity."""


class GatewayPermissionError(GatewayError):
    """The account lost access to the channel (private, banned, kicked)."""


class MessagingGateway(ABC):
    """Read-only history access needed by the sync engine."""

    @abstractmethod
    async def resolve_entity(self, username: str) -> Any:
        """Return an opaque handle for ``username``.

        Raises:
            GatewayEntityNotFoundError: If the username does not resolve.
            GatewayError: On any other gateway failure.
        """

    @abstractmethod
    async def list_messages(
        self,
        handle: Any,
        *,
        min_id: Optional[int] = None,
        offset_id: Optional[int] = None,
        reply_to: Optional[int] = None,
        limit: int = PAGE_LIMIT,
    ) -> List[GatewayMessage]:
        """Return one page of messages.

        With ``min_id`` the page holds channel posts with a larger id,
        oldest first.  With ``reply_to`` it holds comments of that post,
        paginated by ``offset_id`` (0 = start).
        """


def peer_to_sender(peer: Any) -> Optional[SenderPeer]:
    """Map a Telethon ``from_id`` peer onto a :class:`SenderPeer`.

    Returns ``None`` for anything that is not a user, channel or chat peer
    (anonymous posts carry no ``from_id`` at all).
    """
    if isinstance(peer, PeerUser):
        return SenderPeer(AuthorKind.USER, int(peer.user_id))
    if isinstance(peer, PeerChannel):
        return SenderPeer(AuthorKind.CHANNEL, int(peer.channel_id))
    if isinstance(peer, PeerChat):
        return SenderPeer(AuthorKind.CHAT, int(peer.chat_id))
    return None


def to_gateway_message(msg: Any) -> GatewayMessage:
    """Convert a Telethon ``Message`` into a :class:`GatewayMessage`."""
    replies = getattr(msg, "replies", None)
    raw_count = getattr(replies, "replies", None) if replies is not None else None
    return GatewayMessage(
        id=getattr(msg, "id", None),
        date=getattr(msg, "date", None),
        reply_count=raw_count if isinstance(raw_count, int) else None,
        sender=peer_to_sender(getattr(msg, "from_id", None)),
    )


# ---------------------------------------------------------------------------
# Telethon adapter
# ---------------------------------------------------------------------------


class TelethonGateway(MessagingGateway):
    """Production gateway backed by a :class:`ReadOnlyTelegramClient`.

    Args:
        client: Connected read-only client.
        entity_cache: Cache of resolved channel entities keyed by the
                      lower-cased username.
        max_retries: Retries per call (FLOOD_WAIT or transient server and
                     connection failures) before giving up.
        max_flood_wait_seconds: Longest FLOOD_WAIT we sleep through; longer
                                waits fail the call immediately.
        retry_backoff_seconds: First delay after a transient failure;
                               doubles on each further retry.
        request_delay_seconds: Pause before each history request.
        sleep: Injected for tests.
    """

    def __init__(
        self,
        client: ReadOnlyTelegramClient,
        entity_cache: Optional[TTLCache[Any]] = None,
        max_retries: int = 3,
        max_flood_wait_seconds: float = 60.0,
        retry_backoff_seconds: float = 1.0,
        request_delay_seconds: float = 0.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._entities: TTLCache[Any] = (
            entity_cache if entity_cache is not None else TTLCache(max_size=256, ttl_seconds=3600)
        )
        self._max_retries = max(0, int(max_retries))
        self._max_flood_wait = max(0.0, float(max_flood_wait_seconds))
        self._retry_backoff = max(0.0, float(retry_backoff_seconds))
        self._request_delay = max(0.0, float(request_delay_seconds))
        self._sleep = sleep

    async def resolve_entity(self, username: str) -> Any:
        key = username.lstrip("@").lower()
        cached = self._entities.get(key)
        if cached is not None:
            return cached

        try:
            entity = await self._call(self._client.get_entity, key)
        except ValueError as exc:
            # Telethon raises ValueError for usernames it cannot resolve.
            raise GatewayEntityNotFoundError(f"cannot resolve @{key}: {exc}") from exc

        self._entities.set(key, entity)
        return entity

    async def list_messages(
        self,
        handle: Any,
        *,
        min_id: Optional[int] = None,
        offset_id: Optional[int] = None,
        reply_to: Optional[int] = None,
        limit: int = PAGE_LIMIT,
    ) -> List[GatewayMessage]:
        kwargs: dict[str, Any] = {"limit": limit}
        if reply_to is not None:
            kwargs["reply_to"] = reply_to
        if offset_id:
            kwargs["offset_id"] = offset_id
        if min_id is not None:
            kwargs["min_id"] = min_id
            # Oldest first, so min_id pagination walks forward without gaps.
            kwargs["reverse"] = True

        if self._request_delay:
            await self._sleep(self._request_delay)

        try:
            page = await self._call(self._client.get_messages, handle, **kwargs)
        except tg_errors.MsgIdInvalidError:
            # Post has no discussion thread.
            logger.debug("No discussion thread for reply_to=%s", reply_to)
            return []

        return [to_gateway_message(msg) for msg in page or []]

    async def _call(self, method: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        attempt = 0
        while True:
            try:
                return await method(*args, **kwargs)
            except tg_errors.FloodWaitError as exc:
                wait = float(getattr(exc, "seconds", 0) or 0)
                if attempt >= self._max_retries or wait > self._max_flood_wait:
                    raise GatewayRateLimitError(wait) from exc
                attempt += 1
                logger.warning(
                    "FLOOD_WAIT %.0fs on %s (retry %d/%d)",
                    wait,
                    getattr(method, "__name__", "call"),
                    attempt,
                    self._max_retries,
                )
                await self._sleep(wait + 1.0)
            except (tg_errors.ServerError, tg_errors.TimedOutError, ConnectionError) as exc:
                if attempt >= self._max_retries:
                    raise GatewayError(f"transient failure persisted: {exc}") from exc
                attempt += 1
                delay = self._retry_backoff * 2 ** (attempt - 1)
                logger.warning(
                    "%s on %s; retrying in %.1fs (retry %d/%d)",
                    type(exc).__name__,
                    getattr(method, "__name__", "call"),
                    delay,
                    attempt,
                    self._max_retries,
                )
                await self._sleep(delay)
            except (
                tg_errors.UsernameNotOccupiedError,
                tg_errors.UsernameInvalidError,
            ) as exc:
                raise GatewayEntityNotFoundError(str(exc)) from exc
            except (
                tg_errors.ChannelPrivateError,
                tg_errors.ChatAdminRequiredError,
                tg_errors.UserBannedInChannelError,
            ) as exc:
                raise GatewayPermissionError(str(exc)) from exc
            except tg_errors.MsgIdInvalidError:
                raise
            except tg_errors.RPCError as exc:
                raise GatewayError(str(exc)) from exc
