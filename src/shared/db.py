"""
Database helpers — connection pool management, schema initialisation,
and health checks.

Uses ``asyncpg`` for async PostgreSQL access.  All tables are created
idempotently at startup; there is no separate migration step.

Tables:
    - ``channels``: linked Telegram channels (chat id, username, title).
    - ``users``: Telegram accounts seen as admins or comment authors.
    - ``user_channels``: admin <-> channel links.
    - ``channel_posts``: channel posts discovered by the sync engine.
    - ``core_channel_users_comments``: comments under channel posts.
    - ``core_channel_users_channel_sync``: per-channel sync cooldown.
    - ``core_channel_users_post_comments_sync``: per-post re-sync stamp.
    - ``audit_log``: structured audit events.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

import asyncpg

logger = logging.getLogger("shared.db")

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS channels (
        id               BIGSERIAL PRIMARY KEY,
        telegram_chat_id BIGINT NOT NULL UNIQUE,
        username         VARCHAR(255) UNIQUE,
        title            TEXT,
        created_at       TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        id               BIGSERIAL PRIMARY KEY,
        telegram_user_id BIGINT NOT NULL UNIQUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_channels (
        id         BIGSERIAL PRIMARY KEY,
        user_id    BIGINT NOT NULL REFERENCES users (id),
        channel_id BIGINT NOT NULL REFERENCES channels (id),
        is_admin   BOOLEAN NOT NULL DEFAULT FALSE,
        CONSTRAINT uq_user_channels_user_channel UNIQUE (user_id, channel_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS channel_posts (
        id               BIGSERIAL PRIMARY KEY,
        channel_id       BIGINT NOT NULL REFERENCES channels (id),
        telegram_post_id BIGINT NOT NULL,
        published_at     TIMESTAMPTZ NOT NULL,
        CONSTRAINT uq_channel_posts_channel_post UNIQUE (channel_id, telegram_post_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS core_channel_users_comments (
        id                  BIGSERIAL PRIMARY KEY,
        post_id             BIGINT NOT NULL REFERENCES channel_posts (id),
        user_id             BIGINT NOT NULL REFERENCES users (id),
        telegram_comment_id BIGINT NOT NULL,
        author_type         VARCHAR(16) NOT NULL,
        commented_at        TIMESTAMPTZ NOT NULL,
        CONSTRAINT core_comments_post_comment_unique UNIQUE (post_id, telegram_comment_id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_core_comments_commented_at
    ON core_channel_users_comments (commented_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS core_channel_users_channel_sync (
        channel_id     BIGINT PRIMARY KEY REFERENCES channels (id),
        last_synced_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS core_channel_users_post_comments_sync (
        post_id        BIGINT PRIMARY KEY REFERENCES channel_posts (id),
        last_synced_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id        BIGSERIAL PRIMARY KEY,
        timestamp TIMESTAMPTZ DEFAULT NOW(),
        service   TEXT NOT NULL,
        action    TEXT NOT NULL,
        details   JSONB,
        success   BOOLEAN NOT NULL
    )
    """,
)


# ---------------------------------------------------------------------------
# Connection pool
# ---------------------------------------------------------------------------


async def get_connection_pool(config: Dict[str, Any]) -> asyncpg.Pool:
    """Create and return an ``asyncpg`` connection pool.

    Args:
        config: Database configuration dict with keys:
                ``host``, ``port``, ``database``, ``user``, ``password``,
                and optionally ``min_size``, ``max_size``.

    Returns:
        An ``asyncpg.Pool`` instance.

    Raises:
        asyncpg.PostgresError: If the connection cannot be established.
    """
    pool = await asyncpg.create_pool(
        host=config.get("host"),
        port=config.get("port", 5432),
        database=config["database"],
        user=config.get("user"),
        password=config.get("password"),
        min_size=config.get("min_size", 2),
        max_size=config.get("max_size", 10),
    )
    logger.info(
        "Database pool created: %s@%s/%s",
        config.get("user"),
        config.get("host") or "local socket",
        config["database"],
    )
    return pool


# ---------------------------------------------------------------------------
# Schema initialisation
# ---------------------------------------------------------------------------


async def init_database(pool: asyncpg.Pool) -> None:
    """Create tables and indexes if they do not exist.

    Executed once at service startup.  Idempotent (uses IF NOT EXISTS).
    """
    async with pool.acquire() as conn:
        async with conn.transaction():
            for statement in _SCHEMA_STATEMENTS:
                await conn.execute(statement)
    logger.info("Database schema ready (%d statements)", len(_SCHEMA_STATEMENTS))


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------


async def health_check(pool: asyncpg.Pool) -> bool:
    """Verify the database is reachable and responsive.

    Returns:
        ``True`` if a simple query succeeds, ``False`` otherwise.
    """
    try:
        async with pool.acquire() as conn:
            result = await conn.fetchval("SELECT 1;")
            return result == 1
    except (asyncpg.PostgresError, OSError):
        logger.exception("Database health check failed")
        return False


def parse_command_count(status: str) -> int:
    """Return the row count from an asyncpg command status string.

    asyncpg reports e.g. ``"INSERT 0 3"`` or ``"DELETE 12"``.
    """
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError, IndexError):
        logger.debug("Unexpected command status string: %s", status)
        return 0
