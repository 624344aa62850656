"""
Core-users package — syncs channel posts and their discussion comments
from Telegram (MTProto/Telethon, read-only) into PostgreSQL and ranks the
most active commenters of a channel over a rolling window.

All Telegram API access goes through ``ReadOnlyTelegramClient`` wrapped by
``TelethonGateway``; the sync engine only ever sees the narrow
``MessagingGateway`` interface.
"""
