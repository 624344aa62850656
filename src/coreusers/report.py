"""
Core-users report facade — refresh a channel from Telegram (when allowed),
drop comments that fell out of the window, and rank the most active
commenters.

The report is always built from what is stored: a skipped or failed sync
only flips ``synced_with_telegram`` to ``False``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from coreusers.config import CoreUsersSettings
from coreusers.directory import ChannelDirectory
from coreusers.models import Channel, CoreUserReportItem, CoreUsersReport
from coreusers.store import CoreUsersStore
from coreusers.sync import SyncEngine
from shared.audit import AuditLogger

logger = logging.getLogger("coreusers.report")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CoreUsersService:
    """Builds core-users reports for linked channels.

    Args:
        directory: Channel lookup by Telegram chat id.
        store: Pool-backed store for cleanup and aggregation.
        engine: Sync engine used to refresh the channel first.
        settings: Window length and leaderboard size.
        clock: Returns the current aware UTC datetime.
        audit: Optional audit logger; one event per report.
    """

    def __init__(
        self,
        directory: ChannelDirectory,
        store: CoreUsersStore,
        engine: SyncEngine,
        settings: Optional[CoreUsersSettings] = None,
        clock: Callable[[], datetime] = _utcnow,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self._directory = directory
        self._store = store
        self._engine = engine
        self._settings = settings or CoreUsersSettings()
        self._clock = clock
        self._audit = audit

    async def cleanup_old_comments(self, window_from: datetime) -> int:
        """Delete comments older than ``window_from`` in every channel."""
        deleted = await self._store.delete_comments_before(window_from)
        if deleted:
            logger.info("Cleanup removed %d comments older than %s", deleted, window_from.isoformat())
        return deleted

    async def load_top_users_for_channel(
        self,
        channel: Channel,
        window_from: datetime,
        window_to: datetime,
    ) -> List[CoreUserReportItem]:
        rows = await self._store.load_top_users(
            channel.id, window_from, window_to, self._settings.top_users
        )
        return [
            CoreUserReportItem(
                author_external_id=row.author_external_id,
                comments_count=row.comments_count,
                posts_count=row.posts_count,
                avg_comments_per_active_post=(
                    row.comments_count / row.posts_count if row.posts_count else 0.0
                ),
            )
            for row in rows
        ]

    async def build_core_users_report_for_channel(self, external_chat_id: int) -> CoreUsersReport:
        """Sync, clean up and aggregate for one channel.

        An unknown chat id yields a ``no-data`` report without touching
        the store.
        """
        window_to = self._clock()
        window_from = window_to - self._settings.window

        channel = await self._directory.get_channel_by_chat_id(external_chat_id)
        if channel is None:
            logger.info("Report requested for unknown channel %s", external_chat_id)
            report = CoreUsersReport(
                type="no-data",
                synced_with_telegram=False,
                window_from=window_from,
                window_to=window_to,
            )
            await self._audit_report(external_chat_id, report, known=False)
            return report

        result = await self._engine.sync_channel(channel, window_from)
        await self.cleanup_old_comments(window_from)
        items = await self.load_top_users_for_channel(channel, window_from, window_to)

        report = CoreUsersReport(
            type="ok" if items else "no-data",
            synced_with_telegram=result.synced,
            window_from=window_from,
            window_to=window_to,
            items=items,
        )
        await self._audit_report(external_chat_id, report, known=True, sync_reason=result.reason)
        return report

    async def _audit_report(
        self,
        external_chat_id: int,
        report: CoreUsersReport,
        known: bool,
        sync_reason: Optional[str] = None,
    ) -> None:
        if self._audit is None:
            return
        await self._audit.log(
            "core_users_report",
            {
                "chat_id": external_chat_id,
                "known_channel": known,
                "type": report.type,
                "synced": report.synced_with_telegram,
                "sync_reason": sync_reason,
                "items": len(report.items),
            },
            success=known,
        )


def format_report(report: CoreUsersReport, title: Optional[str] = None) -> str:
    """Render a report as plain text for Telegram or the terminal."""
    header = f"Core users of {title}" if title else "Core users"
    period = f"{report.window_from:%Y-%m-%d} .. {report.window_to:%Y-%m-%d}"
    freshness = "fresh from Telegram" if report.synced_with_telegram else "from stored data"

    lines = [f"{header} ({period}, {freshness})"]
    if report.type == "no-data" or not report.items:
        lines.append("No comments in this period.")
        return "\n".join(lines)

    lines.append("")
    for rank, item in enumerate(report.items, start=1):
        lines.append(
            f"{rank}. id {item.author_external_id}: {item.comments_count} comments "
            f"on {item.posts_count} posts (avg {item.avg_comments_per_active_post:.2f})"
        )
    return "\n".join(lines)
