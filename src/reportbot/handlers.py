"""
Telegram bot handler functions for the core-users report bot.

Channel admins add the bot to their channel as an administrator; the
resulting ``my_chat_member`` update links the channel to the admin who
promoted it.  Linked admins can then request ``/core_users`` for their
channels.

Objects shared between handlers live in ``context.bot_data`` (see
``reportbot.main``): ``directory``, ``service``, ``audit`` and
``owner_id``.
"""

from __future__ import annotations

import logging
from functools import wraps
from typing import Any, Callable, Coroutine, List, Optional

from telegram import ChatMember, ChatMemberUpdated, Update
from telegram.constants import ChatType
from telegram.error import TelegramError
from telegram.ext import ContextTypes

from coreusers.directory import ChannelDirectory
from coreusers.models import Channel
from coreusers.report import CoreUsersService, format_report
from shared.audit import AuditLogger

logger = logging.getLogger("reportbot.handlers")

HandlerFunc = Callable[
    [Update, ContextTypes.DEFAULT_TYPE],
    Coroutine[Any, Any, None],
]

# Telegram message length limit
_TG_MAX_LEN = 4096

_ADMIN_STATUSES = (ChatMember.OWNER, ChatMember.ADMINISTRATOR)


# ---------------------------------------------------------------------------
# Access control
# ---------------------------------------------------------------------------


def owner_only(func: HandlerFunc) -> HandlerFunc:
    """Restrict a handler to ``bot.owner_id`` when one is configured.

    With no owner configured every user passes; per-channel access is
    still checked by the handler itself.  Rejected senders get no reply.
    """

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        owner_id: int = context.bot_data.get("owner_id", 0)
        user_id = update.effective_user.id if update.effective_user else None

        if owner_id and user_id != owner_id:
            logger.warning(
                "owner_only: blocked user_id=%s (owner_id=%s) on handler=%s",
                user_id,
                owner_id,
                func.__name__,
            )
            audit: AuditLogger | None = context.bot_data.get("audit")
            if audit:
                await audit.log(
                    "unauthorized_access",
                    {"user_id": user_id, "handler": func.__name__},
                    success=False,
                )
            return

        return await func(update, context)

    return wrapper


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _split_message(text: str) -> List[str]:
    """Split a long message into Telegram-safe chunks (<= 4096 chars).

    Prefers splitting at newlines for readability.
    """
    if len(text) <= _TG_MAX_LEN:
        return [text]

    chunks: List[str] = []
    while text:
        if len(text) <= _TG_MAX_LEN:
            chunks.append(text)
            break

        split_pos = text.rfind("\n", 0, _TG_MAX_LEN)
        if split_pos == -1 or split_pos < _TG_MAX_LEN // 2:
            split_pos = _TG_MAX_LEN

        chunks.append(text[:split_pos])
        text = text[split_pos:].lstrip("\n")

    return chunks


def _describe_channel(channel: Channel) -> str:
    name = channel.title or (f"@{channel.username}" if channel.username else "untitled")
    return f"{name} ({channel.telegram_chat_id})"


def link_skip_reason(member_update: ChatMemberUpdated, actor_status: Optional[str]) -> Optional[str]:
    """Return why a ``my_chat_member`` update must not link, or ``None``.

    Args:
        member_update: The bot's own membership change.
        actor_status: Channel status of the user who made the change, or
                      ``None`` if it could not be looked up.
    """
    if member_update.new_chat_member.status != ChatMember.ADMINISTRATOR:
        return "bot-not-admin"
    if member_update.from_user is None or member_update.from_user.is_bot:
        return "no-actor"
    if actor_status not in _ADMIN_STATUSES:
        return "actor-not-admin"
    return None


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def handle_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle the ``/start`` command."""
    await update.message.reply_text(
        "Hi! I rank the most active commenters of your channel.\n\n"
        "Add me to your channel as an administrator, then send "
        "/core_users to get the leaderboard for the last 90 days.\n\n"
        "Use /help to see available commands."
    )


async def handle_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle the ``/help`` command."""
    await update.message.reply_text(
        "Commands:\n"
        "/channels - channels linked to you\n"
        "/core_users [chat_id] - top commenters of a linked channel\n"
        "/help - this message\n\n"
        "A channel is linked when one of its admins adds this bot as an "
        "administrator. Data is refreshed from Telegram at most once a day; "
        "other requests use stored data."
    )


@owner_only
async def handle_channels(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """List channels linked to the caller."""
    directory: ChannelDirectory = context.bot_data["directory"]
    channels = await directory.get_channels_for_user(update.effective_user.id)
    if not channels:
        await update.message.reply_text(
            "No linked channels. Add me to your channel as an administrator first."
        )
        return
    lines = ["Your channels:"] + [f"- {_describe_channel(channel)}" for channel in channels]
    await update.message.reply_text("\n".join(lines))


@owner_only
async def handle_core_users(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle ``/core_users [chat_id]``."""
    directory: ChannelDirectory = context.bot_data["directory"]
    service: CoreUsersService = context.bot_data["service"]
    audit: AuditLogger | None = context.bot_data.get("audit")
    user_id = update.effective_user.id
    args = context.args or []

    channels = await directory.get_channels_for_user(user_id)

    if not args:
        if len(channels) != 1:
            await update.message.reply_text(
                "Usage: /core_users <chat_id>\nSee /channels for your channel ids."
            )
            return
        channel = channels[0]
    else:
        try:
            chat_id = int(args[0])
        except ValueError:
            await update.message.reply_text(f"Not a chat id: {args[0]}")
            return
        channel = next((c for c in channels if c.telegram_chat_id == chat_id), None)
        if channel is None:
            logger.warning("User %s requested report for unlinked channel %s", user_id, chat_id)
            if audit:
                await audit.log(
                    "unauthorized_access",
                    {"user_id": user_id, "chat_id": chat_id, "handler": "handle_core_users"},
                    success=False,
                )
            await update.message.reply_text(
                "That channel is not linked to you. See /channels."
            )
            return

    await update.message.reply_text(
        f"Collecting comments for {_describe_channel(channel)}, this can take a few minutes..."
    )
    report = await service.build_core_users_report_for_channel(channel.telegram_chat_id)
    for chunk in _split_message(format_report(report, title=channel.title)):
        await update.message.reply_text(chunk)


# ---------------------------------------------------------------------------
# Membership updates
# ---------------------------------------------------------------------------


async def handle_my_chat_member(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Link a channel when the bot is promoted to administrator in it."""
    member_update = update.my_chat_member
    if member_update is None or member_update.chat.type != ChatType.CHANNEL:
        return

    chat = member_update.chat
    actor = member_update.from_user
    actor_status: Optional[str] = None
    if actor is not None and not actor.is_bot:
        try:
            member = await context.bot.get_chat_member(chat.id, actor.id)
            actor_status = member.status
        except TelegramError as exc:
            logger.warning("Cannot check status of user %s in %s: %s", actor.id, chat.id, exc)

    reason = link_skip_reason(member_update, actor_status)
    if reason is not None:
        logger.info("Not linking channel %s: %s", chat.id, reason)
        return

    directory: ChannelDirectory = context.bot_data["directory"]
    channel = await directory.link_admin(
        telegram_chat_id=chat.id,
        username=chat.username,
        title=chat.title,
        admin_telegram_user_id=actor.id,
    )

    audit: AuditLogger | None = context.bot_data.get("audit")
    if audit:
        await audit.log(
            "channel_linked",
            {"chat_id": channel.telegram_chat_id, "user_id": actor.id, "username": channel.username},
            success=True,
        )


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Global error handler for unhandled exceptions in handlers."""
    logger.exception("Unhandled error", exc_info=context.error)

    if isinstance(update, Update) and update.effective_chat:
        try:
            await context.bot.send_message(
                chat_id=update.effective_chat.id,
                text="An error occurred. Please try again later.",
            )
        except TelegramError:
            logger.exception("Failed to send error message to user")

    audit: AuditLogger | None = context.bot_data.get("audit")
    if audit:
        await audit.log(
            "unhandled_error",
            {"error": str(context.error)},
            success=False,
        )
