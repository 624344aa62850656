"""Telegram bot that serves core-users reports to channel admins."""
