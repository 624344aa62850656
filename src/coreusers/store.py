"""
PostgreSQL storage for channel posts, comments and sync bookkeeping.

Uses ``asyncpg``.  All queries use parameterized placeholders ($1, $2, ...)
— **never** string interpolation.

A ``CoreUsersStore`` wraps either the pool or a single connection.  The
sync engine runs inside :meth:`CoreUsersStore.transaction`, which yields a
store bound to one connection with an open transaction, so a failed sync
leaves no partial post/comment graph behind.  Author rows in ``users`` are
the exception: they are shared by all channels and committed through the
pool (see :meth:`CoreUsersStore.upsert_users`).

Inserts that can collide (posts, comments, users) use
``ON CONFLICT DO NOTHING``; duplicates are expected on every re-sync.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import asyncpg

from coreusers.models import ChannelPost, LeaderboardRow, NewComment
from shared.db import parse_command_count

logger = logging.getLogger("coreusers.store")

Executor = Union[asyncpg.Pool, asyncpg.Connection]

_COMMENT_COLUMNS = (
    "post_id",
    "user_id",
    "telegram_comment_id",
    "author_type",
    "commented_at",
)

_TRY_LOCK_SQL = "SELECT pg_try_advisory_xact_lock(hashtextextended($1, 0))"

_UPSERT_CHANNEL_SYNC_SQL = """
    INSERT INTO core_channel_users_channel_sync (channel_id, last_synced_at)
    VALUES ($1, $2)
    ON CONFLICT (channel_id) DO UPDATE SET last_synced_at = EXCLUDED.last_synced_at
"""

_UPSERT_POST_SYNC_SQL = """
    INSERT INTO core_channel_users_post_comments_sync (post_id, last_synced_at)
    VALUES ($1, $2)
    ON CONFLICT (post_id) DO UPDATE SET last_synced_at = EXCLUDED.last_synced_at
"""

_INSERT_POSTS_SQL = """
    INSERT INTO channel_posts (channel_id, telegram_post_id, published_at)
    SELECT $1, p.telegram_post_id, p.published_at
    FROM UNNEST($2::bigint[], $3::timestamptz[]) AS p(telegram_post_id, published_at)
    ON CONFLICT (channel_id, telegram_post_id) DO NOTHING
    RETURNING id, channel_id, telegram_post_id, published_at
"""

_TOP_USERS_SQL = """
    SELECT u.telegram_user_id   AS author_external_id,
           COUNT(*)             AS comments_count,
           COUNT(DISTINCT c.post_id) AS posts_count
    FROM core_channel_users_comments c
    JOIN channel_posts p ON p.id = c.post_id
    JOIN users u ON u.id = c.user_id
    WHERE p.channel_id = $1
      AND c.commented_at >= $2
      AND c.commented_at <= $3
    GROUP BY u.telegram_user_id
    ORDER BY comments_count DESC, u.telegram_user_id ASC
    LIMIT $4
"""


def _post_from_row(row: Any) -> ChannelPost:
    return ChannelPost(
        id=int(row["id"]),
        channel_id=int(row["channel_id"]),
        telegram_post_id=int(row["telegram_post_id"]),
        published_at=row["published_at"],
    )


class CoreUsersStore:
    """Persistence for the sync engine, cleanup and leaderboard.

    Args:
        executor: An ``asyncpg`` pool, or a connection when the store is
                  bound to a transaction.
    """

    def __init__(self, executor: Executor) -> None:
        self._db = executor
        self._comment_insert_sql_cache: Dict[int, str] = {}

    # ------------------------------------------------------------------
    # Transactions and locking
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["CoreUsersStore"]:
        """Yield a store bound to one connection inside a transaction.

        The transaction commits when the block exits normally and rolls
        back when it raises.
        """
        if isinstance(self._db, asyncpg.Pool):
            async with self._db.acquire() as conn:
                async with conn.transaction():
                    yield CoreUsersStore(conn)
        else:
            async with self._db.transaction():
                yield self

    async def try_lock_channel(self, channel_id: int) -> bool:
        """Try to take the per-channel sync lock without waiting.

        The lock is transaction-scoped and only meaningful on a store
        yielded by :meth:`transaction`; it is released at commit/rollback.
        """
        return bool(await self._db.fetchval(_TRY_LOCK_SQL, f"core_users_sync:{channel_id}"))

    # ------------------------------------------------------------------
    # Sync bookkeeping
    # ------------------------------------------------------------------

    async def get_channel_last_synced_at(self, channel_id: int) -> Optional[datetime]:
        return await self._db.fetchval(
            "SELECT last_synced_at FROM core_channel_users_channel_sync WHERE channel_id = $1",
            channel_id,
        )

    async def set_channel_last_synced_at(self, channel_id: int, synced_at: datetime) -> None:
        await self._db.execute(_UPSERT_CHANNEL_SYNC_SQL, channel_id, synced_at)

    async def get_post_last_synced_at(self, post_ids: Sequence[int]) -> Dict[int, datetime]:
        """Return ``{post_id: last_synced_at}`` for posts that have a record."""
        if not post_ids:
            return {}
        rows = await self._db.fetch(
            """
            SELECT post_id, last_synced_at
            FROM core_channel_users_post_comments_sync
            WHERE post_id = ANY($1::bigint[])
            """,
            list(post_ids),
        )
        return {int(row["post_id"]): row["last_synced_at"] for row in rows}

    async def set_post_last_synced_at(self, post_id: int, synced_at: datetime) -> None:
        await self._db.execute(_UPSERT_POST_SYNC_SQL, post_id, synced_at)

    # ------------------------------------------------------------------
    # Posts
    # ------------------------------------------------------------------

    async def get_max_post_id(self, channel_id: int) -> int:
        """Return the highest stored ``telegram_post_id`` (0 when none)."""
        value = await self._db.fetchval(
            "SELECT MAX(telegram_post_id) FROM channel_posts WHERE channel_id = $1",
            channel_id,
        )
        return int(value) if value is not None else 0

    async def get_posts(self, channel_id: int, telegram_post_ids: Iterable[int]) -> Dict[int, ChannelPost]:
        """Return stored posts keyed by ``telegram_post_id``."""
        ids = list(telegram_post_ids)
        if not ids:
            return {}
        rows = await self._db.fetch(
            """
            SELECT id, channel_id, telegram_post_id, published_at
            FROM channel_posts
            WHERE channel_id = $1 AND telegram_post_id = ANY($2::bigint[])
            """,
            channel_id,
            ids,
        )
        return {int(row["telegram_post_id"]): _post_from_row(row) for row in rows}

    async def insert_posts(
        self,
        channel_id: int,
        posts: Sequence[Tuple[int, datetime]],
    ) -> List[ChannelPost]:
        """Insert ``(telegram_post_id, published_at)`` pairs.

        Returns:
            Only the rows actually inserted (conflicts are skipped).
        """
        if not posts:
            return []
        rows = await self._db.fetch(
            _INSERT_POSTS_SQL,
            channel_id,
            [post_id for post_id, _ in posts],
            [published_at for _, published_at in posts],
        )
        logger.debug("Post insert: %d/%d new rows", len(rows), len(posts))
        return [_post_from_row(row) for row in rows]

    async def get_resync_candidates(
        self,
        channel_id: int,
        max_telegram_post_id: int,
        published_after: datetime,
    ) -> List[ChannelPost]:
        """Stored posts at or below the high-water mark published after a cutoff."""
        rows = await self._db.fetch(
            """
            SELECT id, channel_id, telegram_post_id, published_at
            FROM channel_posts
            WHERE channel_id = $1
              AND telegram_post_id <= $2
              AND published_at > $3
            ORDER BY telegram_post_id
            """,
            channel_id,
            max_telegram_post_id,
            published_after,
        )
        return [_post_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Users and comments
    # ------------------------------------------------------------------

    async def upsert_users(self, telegram_user_ids: Iterable[int]) -> Dict[int, int]:
        """Ensure a ``users`` row exists for every id.

        Call this on the pool-backed store: the single INSERT commits on
        its own, so concurrent syncs only contend for the moment it runs.
        Ids are inserted in ascending order.

        Returns:
            ``{telegram_user_id: users.id}``.
        """
        ids = sorted(set(telegram_user_ids))
        if not ids:
            return {}
        await self._db.execute(
            """
            INSERT INTO users (telegram_user_id)
            SELECT UNNEST($1::bigint[])
            ON CONFLICT (telegram_user_id) DO NOTHING
            """,
            ids,
        )
        return await self.get_user_ids(ids)

    async def get_user_ids(self, telegram_user_ids: Iterable[int]) -> Dict[int, int]:
        """Map Telegram ids to ``users.id`` for rows that already exist."""
        ids = sorted(set(telegram_user_ids))
        if not ids:
            return {}
        rows = await self._db.fetch(
            "SELECT id, telegram_user_id FROM users WHERE telegram_user_id = ANY($1::bigint[])",
            ids,
        )
        return {int(row["telegram_user_id"]): int(row["id"]) for row in rows}

    def _build_comment_insert_sql(self, row_count: int) -> str:
        sql = self._comment_insert_sql_cache.get(row_count)
        if sql is not None:
            return sql
        width = len(_COMMENT_COLUMNS)
        values_sql: List[str] = []
        for idx in range(row_count):
            base = idx * width
            values_sql.append(
                "(" + ", ".join(f"${base + i}" for i in range(1, width + 1)) + ")"
            )
        sql = (
            "INSERT INTO core_channel_users_comments ("
            + ", ".join(_COMMENT_COLUMNS)
            + ") VALUES "
            + ", ".join(values_sql)
            + " ON CONFLICT (post_id, telegram_comment_id) DO NOTHING"
        )
        self._comment_insert_sql_cache[row_count] = sql
        return sql

    async def insert_comments(self, comments: Sequence[NewComment]) -> int:
        """Insert comments, ignoring ones already stored.

        Returns:
            Number of rows actually inserted.
        """
        if not comments:
            return 0
        params: List[Any] = []
        for comment in comments:
            params.extend(
                (
                    comment.post_id,
                    comment.user_id,
                    comment.telegram_comment_id,
                    comment.author_type,
                    comment.commented_at,
                )
            )
        status = await self._db.execute(self._build_comment_insert_sql(len(comments)), *params)
        inserted = parse_command_count(status)
        logger.debug("Comment insert: %d/%d new rows", inserted, len(comments))
        return inserted

    async def delete_comments_before(self, cutoff: datetime) -> int:
        """Delete every comment older than ``cutoff`` across all channels."""
        status = await self._db.execute(
            "DELETE FROM core_channel_users_comments WHERE commented_at < $1",
            cutoff,
        )
        return parse_command_count(status)

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    async def load_top_users(
        self,
        channel_id: int,
        window_from: datetime,
        window_to: datetime,
        limit: int,
    ) -> List[LeaderboardRow]:
        rows = await self._db.fetch(_TOP_USERS_SQL, channel_id, window_from, window_to, limit)
        return [
            LeaderboardRow(
                author_external_id=int(row["author_external_id"]),
                comments_count=int(row["comments_count"]),
                posts_count=int(row["posts_count"]),
            )
            for row in rows
        ]
