"""
Core-users entry point — wires config, secrets, the read-only Telegram
client and PostgreSQL into a :class:`CoreUsersService`.

``open_runtime`` is shared with the report bot.  Run directly for
operator use::

    python -m coreusers.main report -1001234567890

Key behaviours:
    - Loads configuration from ``/etc/tg-core-users/settings.toml``.
    - All Telegram access goes through ``ReadOnlyTelegramClient``.
    - The decrypted session lives in ``/dev/shm`` only while connected.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg
from telethon import TelegramClient as TelethonClient

from coreusers.config import DEFAULT_CONFIG_PATH, CoreUsersSettings, load_config
from coreusers.directory import ChannelDirectory
from coreusers.gateway import TelethonGateway
from coreusers.readonly_client import ReadOnlyTelegramClient
from coreusers.report import CoreUsersService, format_report
from coreusers.store import CoreUsersStore
from coreusers.sync import SyncEngine
from shared.audit import AuditLogger
from shared.cache import TTLCache
from shared.db import get_connection_pool, health_check, init_database
from shared.secrets import get_secret, materialized_session

logger = logging.getLogger("coreusers.main")

_DEFAULT_AUDIT_LOG = "/var/log/tg-core-users/audit.log"


@dataclass
class Runtime:
    settings: CoreUsersSettings
    pool: asyncpg.Pool
    directory: ChannelDirectory
    service: CoreUsersService
    audit: AuditLogger


def build_gateway(
    client: ReadOnlyTelegramClient,
    config: Dict[str, Any],
    settings: CoreUsersSettings,
) -> TelethonGateway:
    """Construct the Telethon gateway from the ``[gateway]`` table."""
    gateway_cfg = config.get("gateway", {})
    return TelethonGateway(
        client,
        entity_cache=TTLCache(
            max_size=settings.entity_cache_size,
            ttl_seconds=settings.entity_cache_ttl_seconds,
        ),
        max_retries=int(gateway_cfg.get("max_retries", 3)),
        max_flood_wait_seconds=float(gateway_cfg.get("max_flood_wait_seconds", 60.0)),
        retry_backoff_seconds=float(gateway_cfg.get("retry_backoff_seconds", 1.0)),
        request_delay_seconds=float(gateway_cfg.get("request_delay_seconds", 0.0)),
    )


@asynccontextmanager
async def open_runtime(config: Dict[str, Any], audit_service: str = "core_users") -> AsyncIterator[Runtime]:
    """Connect to PostgreSQL and Telegram and yield a ready service.

    Everything is torn down on exit: the Telegram client disconnects, the
    audit queue is flushed, the pool is closed and the decrypted session
    file is removed.
    """
    settings = CoreUsersSettings.from_config(config)
    api_id = int(get_secret("api-id"))
    api_hash = get_secret("api-hash")
    session_key = get_secret("session_encryption_key")
    session_path = Path(config["gateway"]["session_path"])
    audit_path = Path(config.get("audit", {}).get("log_path", _DEFAULT_AUDIT_LOG))

    with materialized_session(session_path, session_key) as session_base:
        pool = await get_connection_pool(config["database"])
        audit: Optional[AuditLogger] = None
        try:
            if not await health_check(pool):
                raise RuntimeError("Database health check failed")
            await init_database(pool)
            audit = AuditLogger(pool, audit_service, log_path=audit_path)

            raw_client = TelethonClient(session_base, api_id, api_hash)
            async with ReadOnlyTelegramClient(raw_client) as client:
                me = await client.get_me()
                logger.info("Telegram session ready as id=%s", getattr(me, "id", None))

                store = CoreUsersStore(pool)
                directory = ChannelDirectory(pool)
                engine = SyncEngine(store, build_gateway(client, config, settings), settings)
                service = CoreUsersService(directory, store, engine, settings, audit=audit)
                yield Runtime(
                    settings=settings,
                    pool=pool,
                    directory=directory,
                    service=service,
                    audit=audit,
                )
        finally:
            if audit is not None:
                await audit.close()
            await pool.close()


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="coreusers",
        description="Build core-users reports for linked Telegram channels.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help="settings.toml path (default: %(default)s)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    report = commands.add_parser("report", help="sync a channel and print its leaderboard")
    report.add_argument("chat_id", type=int, help="Telegram chat id, e.g. -1001234567890")
    return parser.parse_args(argv)


async def report_main(config_path: Path, chat_id: int) -> int:
    config = load_config(config_path)
    async with open_runtime(config) as runtime:
        channel = await runtime.directory.get_channel_by_chat_id(chat_id)
        report = await runtime.service.build_core_users_report_for_channel(chat_id)
    print(format_report(report, title=channel.title if channel else None))
    return 0 if channel is not None else 1


def main(argv: Optional[List[str]] = None) -> None:
    """Synchronous entry point."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    if args.command == "report":
        sys.exit(asyncio.run(report_main(args.config, args.chat_id)))


if __name__ == "__main__":
    main()
