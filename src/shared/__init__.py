"""Helpers shared by the core-users CLI and the report bot."""
