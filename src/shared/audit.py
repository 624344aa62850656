"""
Structured audit logging — records report builds, channel links and
rejected access attempts to both a JSON Lines file and the
PostgreSQL ``audit_log`` table.

Writes are queued and flushed by a background task so that a slow disk
or database never stalls a report request.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import asyncpg

logger = logging.getLogger("shared.audit")

_DEFAULT_LOG_PATH = Path("/var/log/tg-core-users/audit.log")
_INSERT_AUDIT_SQL = (
    "INSERT INTO audit_log (service, action, details, success) "
    "VALUES ($1, $2, $3::jsonb, $4)"
)


@dataclass(slots=True)
class AuditEvent:
    service: str
    action: str
    details: Dict[str, Any]
    success: bool
    timestamp: datetime

    def to_json_line(self) -> str:
        return json.dumps(
            {
                "timestamp": self.timestamp.isoformat(),
                "service": self.service,
                "action": self.action,
                "details": self.details,
                "success": self.success,
            },
            default=str,
        ) + "\n"


class AuditLogger:
    """Buffered audit logger for one service.

    Args:
        pool: ``asyncpg`` pool with INSERT on ``audit_log``, or ``None`` to
              write the file only.
        service: Service label stored with every event (``"core_users"``,
                 ``"reportbot"``).
        log_path: JSON Lines file; ``None`` disables the file sink.
        flush_batch_size: Events written per round-trip.
    """

    def __init__(
        self,
        pool: Optional[asyncpg.Pool],
        service: str,
        log_path: Optional[Path] = _DEFAULT_LOG_PATH,
        queue_size: int = 1024,
        flush_batch_size: int = 64,
    ) -> None:
        self._pool = pool
        self._service = service
        self._log_path = log_path
        self._queue: asyncio.Queue[AuditEvent | None] = asyncio.Queue(
            maxsize=max(1, queue_size)
        )
        self._flush_batch_size = max(1, flush_batch_size)
        self._worker_task: asyncio.Task[None] | None = None
        self._closed = False

    async def log(
        self,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
    ) -> None:
        """Queue an audit event for both sinks.

        Events logged after :meth:`close` are dropped with a debug note.
        """
        if self._closed:
            logger.debug("Dropping audit event after close: action=%s", action)
            return
        if self._worker_task is None:
            self._worker_task = asyncio.get_running_loop().create_task(
                self._worker(), name=f"{self._service}-audit-writer"
            )
        await self._queue.put(
            AuditEvent(
                service=self._service,
                action=action,
                details=dict(details or {}),
                success=success,
                timestamp=datetime.now(timezone.utc),
            )
        )

    async def _worker(self) -> None:
        while True:
            event = await self._queue.get()
            if event is None:
                self._queue.task_done()
                return

            batch = [event]
            stop = False
            while len(batch) < self._flush_batch_size:
                try:
                    nxt = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                if nxt is None:
                    self._queue.task_done()
                    stop = True
                    break
                batch.append(nxt)

            await self._write_batch(batch)
            for _ in batch:
                self._queue.task_done()
            if stop:
                return

    async def _write_batch(self, batch: List[AuditEvent]) -> None:
        if self._log_path is not None:
            try:
                self._log_path.parent.mkdir(parents=True, exist_ok=True)
                with open(self._log_path, "a", encoding="utf-8") as handle:
                    handle.write("".join(event.to_json_line() for event in batch))
            except OSError:
                logger.exception("Failed to write audit log file")

        if self._pool is None:
            return
        try:
            async with self._pool.acquire() as conn:
                await conn.executemany(
                    _INSERT_AUDIT_SQL,
                    [
                        (
                            event.service,
                            event.action,
                            json.dumps(event.details, default=str),
                            event.success,
                        )
                        for event in batch
                    ],
                )
        except (asyncpg.PostgresError, OSError):
            logger.exception("Failed to write audit log to database")

    async def close(self) -> None:
        """Flush queued events and stop the background writer."""
        if self._closed:
            return
        self._closed = True
        if self._worker_task is not None:
            await self._queue.put(None)
            await self._worker_task
            self._worker_task = None
