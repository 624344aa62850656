"""
Channel directory — maps Telegram chat ids to internal channel records and
tracks which admins linked which channels.

Channels are created when the bot is promoted to administrator in a
channel (see ``reportbot.handlers.handle_my_chat_member``).  The username
is refreshed on every link event because the sync engine needs it to
resolve the channel through MTProto.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

import asyncpg

from coreusers.models import Channel

logger = logging.getLogger("coreusers.directory")

_UPSERT_CHANNEL_SQL = """
    INSERT INTO channels (telegram_chat_id, username, title)
    VALUES ($1, $2, $3)
    ON CONFLICT (telegram_chat_id)
    DO UPDATE SET
        username = EXCLUDED.username,
        title = EXCLUDED.title
    RETURNING id, telegram_chat_id, username, title
"""

_UPSERT_USER_SQL = """
    INSERT INTO users (telegram_user_id)
    VALUES ($1)
    ON CONFLICT (telegram_user_id) DO UPDATE SET telegram_user_id = EXCLUDED.telegram_user_id
    RETURNING id
"""

_UPSERT_LINK_SQL = """
    INSERT INTO user_channels (user_id, channel_id, is_admin)
    VALUES ($1, $2, $3)
    ON CONFLICT (user_id, channel_id) DO UPDATE SET is_admin = EXCLUDED.is_admin
"""


def _channel_from_row(row: Any) -> Channel:
    return Channel(
        id=int(row["id"]),
        telegram_chat_id=int(row["telegram_chat_id"]),
        username=row["username"],
        title=row["title"],
    )


def normalize_username(username: Optional[str]) -> Optional[str]:
    """Strip ``@`` and whitespace; empty values become ``None``."""
    if username is None:
        return None
    cleaned = username.strip().lstrip("@").strip()
    return cleaned or None


class ChannelDirectory:
    """Lookup and linking of channels.

    Args:
        pool: ``asyncpg`` connection pool.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get_channel_by_chat_id(self, telegram_chat_id: int) -> Optional[Channel]:
        row = await self._pool.fetchrow(
            "SELECT id, telegram_chat_id, username, title FROM channels WHERE telegram_chat_id = $1",
            telegram_chat_id,
        )
        return _channel_from_row(row) if row is not None else None

    async def link_admin(
        self,
        telegram_chat_id: int,
        username: Optional[str],
        title: Optional[str],
        admin_telegram_user_id: int,
        is_admin: bool = True,
    ) -> Channel:
        """Upsert the channel, the admin user and their link in one transaction.

        A username is unique across channels; if another channel still
        holds it (the name moved), that channel's username is cleared.
        """
        username = normalize_username(username)
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                if username is not None:
                    await conn.execute(
                        """
                        UPDATE channels SET username = NULL
                        WHERE username = $1 AND telegram_chat_id <> $2
                        """,
                        username,
                        telegram_chat_id,
                    )
                channel_row = await conn.fetchrow(
                    _UPSERT_CHANNEL_SQL, telegram_chat_id, username, title
                )
                user_id = await conn.fetchval(_UPSERT_USER_SQL, admin_telegram_user_id)
                await conn.execute(_UPSERT_LINK_SQL, user_id, channel_row["id"], is_admin)

        channel = _channel_from_row(channel_row)
        logger.info(
            "Channel %s (@%s) linked by user %s (is_admin=%s)",
            telegram_chat_id,
            username,
            admin_telegram_user_id,
            is_admin,
        )
        return channel

    async def get_channels_for_user(self, telegram_user_id: int) -> List[Channel]:
        rows = await self._pool.fetch(
            """
            SELECT c.id, c.telegram_chat_id, c.username, c.title
            FROM user_channels uc
            JOIN users u ON u.id = uc.user_id
            JOIN channels c ON c.id = uc.channel_id
            WHERE u.telegram_user_id = $1
            ORDER BY c.telegram_chat_id
            """,
            telegram_user_id,
        )
        return [_channel_from_row(row) for row in rows]
