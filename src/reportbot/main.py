"""
Report bot entry point — starts the Telegram bot that links channels and
answers ``/core_users`` requests.

Runs as a long-lived systemd service under the ``tg-core-users`` user.

Key behaviours:
    - Loads configuration from ``/etc/tg-core-users/settings.toml``.
    - Uses ``python-telegram-bot`` (Bot API) for the chat surface and the
      read-only MTProto session (``coreusers``) for history reads.
    - The MTProto session, DB pool and audit logger are opened in
      ``post_init`` and closed in ``post_shutdown``.
    - Starts long-polling.
"""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack
from typing import Any, Dict

from telegram import Update
from telegram.ext import Application, ChatMemberHandler, CommandHandler

from coreusers.config import load_config
from coreusers.main import open_runtime
from reportbot.handlers import (
    error_handler,
    handle_channels,
    handle_core_users,
    handle_help,
    handle_my_chat_member,
    handle_start,
)
from shared.secrets import get_secret

logger = logging.getLogger("reportbot.main")


def register_handlers(app: Application) -> None:
    app.add_handler(CommandHandler("start", handle_start))
    app.add_handler(CommandHandler("help", handle_help))
    app.add_handler(CommandHandler("channels", handle_channels))
    app.add_handler(CommandHandler("core_users", handle_core_users))
    app.add_handler(ChatMemberHandler(handle_my_chat_member, ChatMemberHandler.MY_CHAT_MEMBER))
    app.add_error_handler(error_handler)


def build_application(config: Dict[str, Any]) -> Application:
    """Construct the ``python-telegram-bot`` Application.

    Args:
        config: Parsed configuration dictionary.

    Returns:
        A configured ``Application`` instance (not yet running).
    """
    token = get_secret("bot_token")
    owner_id = int(config.get("bot", {}).get("owner_id", 0) or 0)
    resources = AsyncExitStack()

    async def _post_init(app: Application) -> None:
        runtime = await resources.enter_async_context(
            open_runtime(config, audit_service="reportbot")
        )
        app.bot_data.update(
            directory=runtime.directory,
            service=runtime.service,
            audit=runtime.audit,
            owner_id=owner_id,
        )
        logger.info("Report bot ready (owner restriction: %s)", owner_id or "none")

    async def _post_shutdown(app: Application) -> None:
        await resources.aclose()

    app = (
        Application.builder()
        .token(token)
        .post_init(_post_init)
        .post_shutdown(_post_shutdown)
        .build()
    )
    register_handlers(app)
    return app


def run() -> None:
    """Synchronous entry point (called from ``__main__`` or systemd)."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    config = load_config()
    app = build_application(config)
    app.run_polling(allowed_updates=Update.ALL_TYPES)


if __name__ == "__main__":
    run()
