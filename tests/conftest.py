"""
Shared fixtures: an in-memory store and a deterministic fake gateway that
honour the same interfaces as ``CoreUsersStore`` and ``TelethonGateway``.

The fake gateway mimics Telegram paging: channel posts come oldest first
above ``min_id``; discussion comments come newest first below
``offset_id``.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import pytest

from coreusers.config import CoreUsersSettings
from coreusers.gateway import (
    AuthorKind,
    GatewayEntityNotFoundError,
    GatewayMessage,
    MessagingGateway,
    SenderPeer,
)
from coreusers.models import Channel, ChannelPost, LeaderboardRow, NewComment
from coreusers.report import CoreUsersService
from coreusers.sync import SyncEngine

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class InMemoryStore:
    """Dict-backed stand-in for ``CoreUsersStore``.

    ``transaction()`` snapshots state and restores it when the block
    raises (including cancellation), like a PostgreSQL rollback.  It
    yields a :class:`TransactionView`, so tests can tell pool calls from
    transaction calls.  Users are outside the snapshot: ``upsert_users``
    commits on its own, and ``user_upserts`` records ``"pool"`` or
    ``"transaction"`` for each call.
    """

    def __init__(self) -> None:
        self.posts: Dict[Tuple[int, int], ChannelPost] = {}
        self.users: Dict[int, int] = {}
        self.comments: Dict[Tuple[int, int], NewComment] = {}
        self.channel_sync: Dict[int, datetime] = {}
        self.post_sync: Dict[int, datetime] = {}
        self.locked_channels: Set[int] = set()
        self.user_upserts: List[str] = []
        self._ids = itertools.count(1)

    # -- helpers for tests -------------------------------------------------

    def state(self) -> Tuple[Any, ...]:
        return copy.deepcopy((self.posts, self.comments, self.channel_sync, self.post_sync))

    def _restore(self, state: Tuple[Any, ...]) -> None:
        self.posts, self.comments, self.channel_sync, self.post_sync = state

    def add_post(self, channel_id: int, telegram_post_id: int, published_at: datetime) -> ChannelPost:
        post = ChannelPost(next(self._ids), channel_id, telegram_post_id, published_at)
        self.posts[(channel_id, telegram_post_id)] = post
        return post

    def add_comment(
        self,
        post: ChannelPost,
        telegram_comment_id: int,
        author_id: int,
        commented_at: datetime,
    ) -> None:
        user_id = self.users.setdefault(author_id, next(self._ids))
        self.comments[(post.id, telegram_comment_id)] = NewComment(
            post.id, user_id, telegram_comment_id, "user", commented_at
        )

    def comment_ids(self, post: Optional[ChannelPost] = None) -> List[int]:
        return sorted(
            comment.telegram_comment_id
            for comment in self.comments.values()
            if post is None or comment.post_id == post.id
        )

    def post_by_tg_id(self, channel_id: int, telegram_post_id: int) -> ChannelPost:
        return self.posts[(channel_id, telegram_post_id)]

    # -- CoreUsersStore interface -----------------------------------------

    @asynccontextmanager
    async def transaction(self):
        snapshot = self.state()
        try:
            yield TransactionView(self)
        except BaseException:
            self._restore(snapshot)
            raise

    async def try_lock_channel(self, channel_id: int) -> bool:
        return channel_id not in self.locked_channels

    async def get_channel_last_synced_at(self, channel_id: int) -> Optional[datetime]:
        return self.channel_sync.get(channel_id)

    async def set_channel_last_synced_at(self, channel_id: int, synced_at: datetime) -> None:
        self.channel_sync[channel_id] = synced_at

    async def get_post_last_synced_at(self, post_ids: Sequence[int]) -> Dict[int, datetime]:
        return {pid: self.post_sync[pid] for pid in post_ids if pid in self.post_sync}

    async def set_post_last_synced_at(self, post_id: int, synced_at: datetime) -> None:
        self.post_sync[post_id] = synced_at

    async def get_max_post_id(self, channel_id: int) -> int:
        ids = [tg_id for (cid, tg_id) in self.posts if cid == channel_id]
        return max(ids) if ids else 0

    async def get_posts(self, channel_id: int, telegram_post_ids: Iterable[int]) -> Dict[int, ChannelPost]:
        return {
            tg_id: self.posts[(channel_id, tg_id)]
            for tg_id in telegram_post_ids
            if (channel_id, tg_id) in self.posts
        }

    async def insert_posts(
        self, channel_id: int, posts: Sequence[Tuple[int, datetime]]
    ) -> List[ChannelPost]:
        inserted = []
        for tg_id, published_at in posts:
            if (channel_id, tg_id) in self.posts:
                continue
            inserted.append(self.add_post(channel_id, tg_id, published_at))
        return inserted

    async def get_resync_candidates(
        self, channel_id: int, max_telegram_post_id: int, published_after: datetime
    ) -> List[ChannelPost]:
        return sorted(
            (
                post
                for (cid, tg_id), post in self.posts.items()
                if cid == channel_id
                and tg_id <= max_telegram_post_id
                and post.published_at > published_after
            ),
            key=lambda post: post.telegram_post_id,
        )

    async def upsert_users(
        self, telegram_user_ids: Iterable[int], _scope: str = "pool"
    ) -> Dict[int, int]:
        self.user_upserts.append(_scope)
        result = {}
        for tg_id in sorted(set(telegram_user_ids)):
            if tg_id not in self.users:
                self.users[tg_id] = next(self._ids)
            result[tg_id] = self.users[tg_id]
        return result

    async def get_user_ids(self, telegram_user_ids: Iterable[int]) -> Dict[int, int]:
        return {tg_id: self.users[tg_id] for tg_id in telegram_user_ids if tg_id in self.users}

    async def insert_comments(self, comments: Sequence[NewComment]) -> int:
        inserted = 0
        for comment in comments:
            key = (comment.post_id, comment.telegram_comment_id)
            if key in self.comments:
                continue
            self.comments[key] = comment
            inserted += 1
        return inserted

    async def delete_comments_before(self, cutoff: datetime) -> int:
        stale = [key for key, c in self.comments.items() if c.commented_at < cutoff]
        for key in stale:
            del self.comments[key]
        return len(stale)

    async def load_top_users(
        self, channel_id: int, window_from: datetime, window_to: datetime, limit: int
    ) -> List[LeaderboardRow]:
        post_channel = {post.id: cid for (cid, _), post in self.posts.items()}
        external = {internal: tg_id for tg_id, internal in self.users.items()}
        comments: Dict[int, int] = {}
        posts: Dict[int, Set[int]] = {}
        for comment in self.comments.values():
            if post_channel.get(comment.post_id) != channel_id:
                continue
            if not (window_from <= comment.commented_at <= window_to):
                continue
            author = external[comment.user_id]
            comments[author] = comments.get(author, 0) + 1
            posts.setdefault(author, set()).add(comment.post_id)
        ranked = sorted(comments, key=lambda author: (-comments[author], author))
        return [
            LeaderboardRow(author, comments[author], len(posts[author]))
            for author in ranked[:limit]
        ]


class TransactionView:
    """Store bound to an open ``InMemoryStore`` transaction."""

    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    def __getattr__(self, name: str) -> Any:
        return getattr(self._store, name)

    async def upsert_users(self, telegram_user_ids: Iterable[int]) -> Dict[int, int]:
        return await self._store.upsert_users(telegram_user_ids, _scope="transaction")


# ---------------------------------------------------------------------------
# Fake gateway
# ---------------------------------------------------------------------------


class FakeGateway(MessagingGateway):
    """Scripted Telegram history for one or more channel usernames."""

    def __init__(self, usernames: Iterable[str] = ("corechan",)) -> None:
        self.usernames = {name.lower() for name in usernames}
        self.posts: Dict[int, GatewayMessage] = {}
        self.comments: Dict[int, List[GatewayMessage]] = {}
        self.reply_counts: Dict[int, Optional[int]] = {}
        self.errors: Dict[int, Exception] = {}
        self.delay = 0.0
        self.calls: List[Dict[str, Any]] = []
        self.resolved: List[str] = []

    def add_post(self, post_id: Any, date: Any, reply_count: Optional[int] = None) -> None:
        self.posts[post_id] = GatewayMessage(id=post_id, date=date)
        if reply_count is not None:
            self.reply_counts[post_id] = reply_count

    def add_comment(
        self,
        post_id: int,
        comment_id: Any,
        date: Any,
        author_id: Optional[int] = None,
        kind: AuthorKind = AuthorKind.USER,
    ) -> None:
        sender = SenderPeer(kind, author_id) if author_id is not None else None
        self.comments.setdefault(post_id, []).append(
            GatewayMessage(id=comment_id, date=date, sender=sender)
        )

    @property
    def comment_calls(self) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["reply_to"] is not None]

    @property
    def post_calls(self) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["reply_to"] is None]

    def fetched_threads(self) -> Set[int]:
        return {call["reply_to"] for call in self.comment_calls}

    async def resolve_entity(self, username: str) -> Any:
        self.resolved.append(username)
        if username.lower() not in self.usernames:
            raise GatewayEntityNotFoundError(f"cannot resolve @{username}")
        return ("handle", username.lower())

    async def list_messages(
        self,
        handle: Any,
        *,
        min_id: Optional[int] = None,
        offset_id: Optional[int] = None,
        reply_to: Optional[int] = None,
        limit: int = 100,
    ) -> List[GatewayMessage]:
        self.calls.append(
            {"min_id": min_id, "offset_id": offset_id, "reply_to": reply_to, "limit": limit}
        )
        if self.delay:
            await asyncio.sleep(self.delay)

        if reply_to is not None:
            if reply_to in self.errors:
                raise self.errors[reply_to]
            thread = sorted(
                self.comments.get(reply_to, []),
                key=lambda m: m.id if isinstance(m.id, int) else 0,
                reverse=True,
            )
            if offset_id:
                thread = [m for m in thread if isinstance(m.id, int) and m.id < offset_id]
            return thread[:limit]

        page = []
        for post_id in sorted(self.posts, key=lambda pid: pid if isinstance(pid, int) else 0):
            if min_id is not None and isinstance(post_id, int) and post_id <= min_id:
                continue
            msg = self.posts[post_id]
            count = self.reply_counts.get(post_id, len(self.comments.get(post_id, [])))
            page.append(GatewayMessage(id=msg.id, date=msg.date, reply_count=count))
        return page[:limit]


class FakeDirectory:
    def __init__(self, channels: Iterable[Channel] = ()) -> None:
        self.channels = {channel.telegram_chat_id: channel for channel in channels}

    async def get_channel_by_chat_id(self, telegram_chat_id: int) -> Optional[Channel]:
        return self.channels.get(telegram_chat_id)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return CoreUsersSettings()


@pytest.fixture
def channel():
    return Channel(id=7, telegram_chat_id=-1001234567890, username="corechan", title="Core Chan")


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def engine(store, gateway, settings, clock):
    return SyncEngine(store, gateway, settings, clock=clock)


@pytest.fixture
def directory(channel):
    return FakeDirectory([channel])


@pytest.fixture
def service(directory, store, engine, settings, clock):
    return CoreUsersService(directory, store, engine, settings, clock=clock)
