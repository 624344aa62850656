"""Plain records passed between the stores, the sync engine and the report."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Literal, Optional

ReportType = Literal["ok", "no-data"]


@dataclass(frozen=True)
class Channel:
    id: int
    telegram_chat_id: int
    username: Optional[str] = None
    title: Optional[str] = None


@dataclass(frozen=True)
class ChannelPost:
    id: int
    channel_id: int
    telegram_post_id: int
    published_at: datetime


@dataclass(frozen=True)
class NewComment:
    post_id: int
    user_id: int
    telegram_comment_id: int
    author_type: str
    commented_at: datetime


@dataclass(frozen=True)
class LeaderboardRow:
    author_external_id: int
    comments_count: int
    posts_count: int


@dataclass(frozen=True)
class CoreUserReportItem:
    author_external_id: int
    comments_count: int
    posts_count: int
    avg_comments_per_active_post: float


@dataclass
class CoreUsersReport:
    """Result of one report build.

    ``synced_with_telegram`` tells whether this call refreshed data from
    Telegram or served what was already stored (cooldown, lock, errors).
    """

    type: ReportType
    synced_with_telegram: bool
    window_from: datetime
    window_to: datetime
    items: List[CoreUserReportItem] = field(default_factory=list)
