"""
Channel sync engine — pulls new posts and their discussion comments from
Telegram into PostgreSQL.

One call to :meth:`SyncEngine.sync_channel` is one sync run:

    1. Open a transaction and take the per-channel advisory lock
       (non-blocking; a held lock means another request is syncing).
    2. Cooldown gate on ``core_channel_users_channel_sync``.
    3. Resolve the channel through the gateway (needs a username).
    4. New-post ingestion above the stored high-water mark.
    5. Hybrid re-sync of stored posts by age band.
    6. Stamp the channel sync record and commit.

Gateway failures and the wall-clock budget roll the whole run back and
surface as ``synced=False``; database errors propagate.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from coreusers.config import CoreUsersSettings
from coreusers.gateway import GatewayError, GatewayMessage, MessagingGateway, SenderPeer
from coreusers.models import Channel, ChannelPost, NewComment
from coreusers.store import CoreUsersStore

logger = logging.getLogger("coreusers.sync")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Message decoding
# ---------------------------------------------------------------------------


def decode_message_id(value: Any) -> Optional[int]:
    """Return a positive integer message id, or ``None`` if malformed."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
        return parsed if parsed > 0 else None
    return None


def decode_timestamp(value: Any) -> Optional[datetime]:
    """Return an aware UTC datetime from a datetime or epoch seconds."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    return None


# ---------------------------------------------------------------------------
# Age-band policy
# ---------------------------------------------------------------------------


class PostAgeBand(str, Enum):
    FRESH = "fresh"
    MEDIUM = "medium"
    STALE = "stale"


def classify_post_age(
    published_at: datetime,
    now: datetime,
    settings: CoreUsersSettings,
) -> PostAgeBand:
    """Classify a post by age; both band edges are exclusive upper bounds."""
    age = now - published_at
    if age < settings.fresh_age:
        return PostAgeBand.FRESH
    if age < settings.medium_age:
        return PostAgeBand.MEDIUM
    return PostAgeBand.STALE


def should_resync(
    band: PostAgeBand,
    last_synced_at: Optional[datetime],
    now: datetime,
    settings: CoreUsersSettings,
) -> bool:
    if band is PostAgeBand.FRESH:
        return True
    if band is PostAgeBand.MEDIUM:
        return last_synced_at is None or now - last_synced_at >= settings.medium_resync_interval
    return False


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


@dataclass
class SyncResult:
    """Outcome of one :meth:`SyncEngine.sync_channel` call.

    ``reason`` is ``"ok"`` when the run completed, otherwise why it was
    skipped or abandoned: ``"locked"``, ``"cooldown"``, ``"no-username"``,
    ``"gateway-error"`` or ``"timeout"``.
    """

    synced: bool
    reason: str = "ok"
    new_posts: int = 0
    posts_synced: int = 0
    posts_skipped: int = 0
    comments_stored: int = 0
    pages_fetched: int = 0


class SyncEngine:
    """Sync channel posts and comments into the store.

    Args:
        store: Pool-backed store; each run opens its own transaction.
        gateway: Read-only Telegram gateway.
        settings: Policy knobs (cooldown, age bands, page limits, budget).
        clock: Returns the current aware UTC datetime.
    """

    def __init__(
        self,
        store: CoreUsersStore,
        gateway: MessagingGateway,
        settings: Optional[CoreUsersSettings] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._settings = settings or CoreUsersSettings()
        self._clock = clock

    async def sync_channel(self, channel: Channel, window_from: datetime) -> SyncResult:
        """Run one sync for ``channel``; comments older than ``window_from`` are not fetched."""
        now = self._clock()
        try:
            result = await asyncio.wait_for(
                self._run(channel, window_from, now),
                timeout=self._settings.sync_timeout_seconds,
            )
        except GatewayError as exc:
            logger.warning(
                "Sync of channel %s aborted by gateway error (%s): %s",
                channel.telegram_chat_id,
                type(exc).__name__,
                exc,
            )
            return SyncResult(synced=False, reason="gateway-error")
        except asyncio.TimeoutError:
            logger.warning(
                "Sync of channel %s exceeded %.0fs budget; rolled back",
                channel.telegram_chat_id,
                self._settings.sync_timeout_seconds,
            )
            return SyncResult(synced=False, reason="timeout")

        if result.synced:
            logger.info(
                "Synced channel %s: %d new posts, %d posts fetched, %d skipped, "
                "%d new comments, %d pages",
                channel.telegram_chat_id,
                result.new_posts,
                result.posts_synced,
                result.posts_skipped,
                result.comments_stored,
                result.pages_fetched,
            )
        else:
            logger.debug(
                "Channel %s not synced: %s", channel.telegram_chat_id, result.reason
            )
        return result

    async def _run(self, channel: Channel, window_from: datetime, now: datetime) -> SyncResult:
        async with self._store.transaction() as tx:
            if not await tx.try_lock_channel(channel.id):
                return SyncResult(synced=False, reason="locked")

            last_synced_at = await tx.get_channel_last_synced_at(channel.id)
            if last_synced_at is not None and now - last_synced_at < self._settings.cooldown:
                return SyncResult(synced=False, reason="cooldown")

            if not channel.username:
                logger.info(
                    "Channel %s has no username; cannot resolve it for sync",
                    channel.telegram_chat_id,
                )
                return SyncResult(synced=False, reason="no-username")

            handle = await self._gateway.resolve_entity(channel.username)
            max_id_before = await tx.get_max_post_id(channel.id)

            result = SyncResult(synced=True)
            await self._ingest_new_posts(tx, handle, channel, max_id_before, window_from, now, result)
            await self._resync_existing_posts(tx, handle, channel, max_id_before, window_from, now, result)

            await tx.set_channel_last_synced_at(channel.id, now)
            return result

    # ------------------------------------------------------------------
    # New posts
    # ------------------------------------------------------------------

    async def _ingest_new_posts(
        self,
        tx: CoreUsersStore,
        handle: Any,
        channel: Channel,
        min_id: int,
        window_from: datetime,
        now: datetime,
        result: SyncResult,
    ) -> None:
        limit = self._settings.page_limit
        pages = 0
        while True:
            if pages >= self._settings.max_post_pages:
                logger.warning(
                    "Post pagination for channel %s stopped at page guard (%d pages, min_id=%d)",
                    channel.telegram_chat_id,
                    pages,
                    min_id,
                )
                break

            page = await self._gateway.list_messages(handle, min_id=min_id, limit=limit)
            pages += 1
            result.pages_fetched += 1
            if not page:
                break

            decoded: Dict[int, Tuple[datetime, int]] = {}
            for msg in page:
                post_id = decode_message_id(msg.id)
                published_at = decode_timestamp(msg.date)
                if post_id is None or published_at is None:
                    logger.debug("Skipping malformed post id=%r date=%r", msg.id, msg.date)
                    continue
                if post_id <= min_id:
                    continue
                decoded[post_id] = (published_at, msg.reply_count or 0)

            if not decoded:
                logger.debug("Post page yielded no id above min_id=%d; stopping", min_id)
                break

            posts = await self._store_posts(tx, channel, decoded, result)
            for post_id in sorted(decoded):
                post = posts.get(post_id)
                if post is None:
                    continue
                _, reply_count = decoded[post_id]
                if reply_count > 0:
                    await self._sync_post_comments(tx, handle, post, window_from, now, result)
                else:
                    await tx.set_post_last_synced_at(post.id, now)
                result.posts_synced += 1

            min_id = max(decoded)
            if len(page) < limit:
                break

    async def _store_posts(
        self,
        tx: CoreUsersStore,
        channel: Channel,
        decoded: Dict[int, Tuple[datetime, int]],
        result: SyncResult,
    ) -> Dict[int, ChannelPost]:
        posts = await tx.get_posts(channel.id, decoded.keys())
        unseen = [
            (post_id, published_at)
            for post_id, (published_at, _) in sorted(decoded.items())
            if post_id not in posts
        ]
        inserted = await tx.insert_posts(channel.id, unseen)
        result.new_posts += len(inserted)
        for post in inserted:
            posts[post.telegram_post_id] = post

        missing = [post_id for post_id in decoded if post_id not in posts]
        if missing:
            posts.update(await tx.get_posts(channel.id, missing))
        return posts

    # ------------------------------------------------------------------
    # Existing posts
    # ------------------------------------------------------------------

    async def _resync_existing_posts(
        self,
        tx: CoreUsersStore,
        handle: Any,
        channel: Channel,
        max_id_before: int,
        window_from: datetime,
        now: datetime,
        result: SyncResult,
    ) -> None:
        if max_id_before <= 0:
            return
        candidates = await tx.get_resync_candidates(
            channel.id, max_id_before, now - self._settings.medium_age
        )
        if not candidates:
            return
        last_synced = await tx.get_post_last_synced_at([post.id for post in candidates])

        for post in candidates:
            band = classify_post_age(post.published_at, now, self._settings)
            if should_resync(band, last_synced.get(post.id), now, self._settings):
                await self._sync_post_comments(tx, handle, post, window_from, now, result)
                result.posts_synced += 1
            else:
                result.posts_skipped += 1

    # ------------------------------------------------------------------
    # Comments
    # ------------------------------------------------------------------

    async def _sync_post_comments(
        self,
        tx: CoreUsersStore,
        handle: Any,
        post: ChannelPost,
        window_from: datetime,
        now: datetime,
        result: SyncResult,
    ) -> None:
        limit = self._settings.page_limit
        offset_id = 0
        pages = 0
        while pages < self._settings.max_comment_pages:
            page = await self._gateway.list_messages(
                handle,
                reply_to=post.telegram_post_id,
                offset_id=offset_id,
                limit=limit,
            )
            pages += 1
            result.pages_fetched += 1
            if not page:
                break

            staged, last_id, reached_window_start = self._stage_comment_page(page, window_from)
            result.comments_stored += await self._store_comments(tx, post, staged)

            if reached_window_start or len(page) < limit:
                break
            if last_id is None or last_id == offset_id:
                logger.warning(
                    "Comment pagination stalled for post %d at offset_id=%d",
                    post.telegram_post_id,
                    offset_id,
                )
                break
            offset_id = last_id
        else:
            logger.warning(
                "Comment pagination for post %d stopped at page guard (%d pages)",
                post.telegram_post_id,
                pages,
            )

        await tx.set_post_last_synced_at(post.id, now)

    @staticmethod
    def _stage_comment_page(
        page: Sequence[GatewayMessage],
        window_from: datetime,
    ) -> Tuple[Dict[int, Tuple[SenderPeer, datetime]], Optional[int], bool]:
        """Decode one comment page in arrival order.

        Returns:
            ``(staged, last_id, reached_window_start)`` where ``staged``
            maps comment id to ``(sender, commented_at)``.
        """
        staged: Dict[int, Tuple[SenderPeer, datetime]] = {}
        last_id: Optional[int] = None
        for msg in page:
            comment_id = decode_message_id(msg.id)
            if comment_id is not None:
                last_id = comment_id
            commented_at = decode_timestamp(msg.date)
            if comment_id is None or commented_at is None:
                logger.debug("Skipping malformed comment id=%r date=%r", msg.id, msg.date)
                continue
            if commented_at < window_from:
                return staged, last_id, True
            if msg.sender is None:
                logger.debug("Dropping comment %d without a resolvable sender", comment_id)
                continue
            staged[comment_id] = (msg.sender, commented_at)
        return staged, last_id, False

    async def _store_comments(
        self,
        tx: CoreUsersStore,
        post: ChannelPost,
        staged: Dict[int, Tuple[SenderPeer, datetime]],
    ) -> int:
        if not staged:
            return 0
        # Author rows are shared by every channel: commit them through the
        # pool so syncs of other channels never wait on this transaction.
        authors = [sender.external_id for sender, _ in staged.values()]
        await self._store.upsert_users(authors)
        user_ids = await tx.get_user_ids(authors)
        rows: List[NewComment] = []
        for comment_id, (sender, commented_at) in staged.items():
            user_id = user_ids.get(sender.external_id)
            if user_id is None:
                logger.warning("No user row for author %d; skipping comment", sender.external_id)
                continue
            rows.append(
                NewComment(
                    post_id=post.id,
                    user_id=user_id,
                    telegram_comment_id=comment_id,
                    author_type=sender.kind.value,
                    commented_at=commented_at,
                )
            )
        return await tx.insert_comments(rows)
