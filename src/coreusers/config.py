"""
Configuration loading for the core-users services.

Settings come from a TOML file (``/etc/tg-core-users/settings.toml`` by
default, overridable via ``TG_CORE_USERS_CONFIG``).  Secrets are never
stored here; see :mod:`shared.secrets`.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, get_type_hints

import toml

from coreusers import constants

logger = logging.getLogger("coreusers.config")

DEFAULT_CONFIG_PATH = Path(
    os.environ.get("TG_CORE_USERS_CONFIG", "/etc/tg-core-users/settings.toml")
)

_REQUIRED_KEYS = (
    ("database",),
    ("gateway", "session_path"),
)


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Load and validate settings from a TOML file.

    Returns:
        Parsed configuration dictionary.

    Raises:
        FileNotFoundError: If the config file does not exist.
        KeyError: If required keys are missing.
    """
    config = toml.load(path)

    for keys in _REQUIRED_KEYS:
        obj = config
        for k in keys:
            if k not in obj:
                raise KeyError(f"Missing required config key: {'.'.join(keys)}")
            obj = obj[k]

    return config


@dataclass(frozen=True)
class CoreUsersSettings:
    """Tunable policy for sync and reporting (``[core_users]`` section)."""

    window_days: int = constants.SYNC_WINDOW_DAYS
    cooldown_days: float = constants.SYNC_COOLDOWN_DAYS
    top_users: int = constants.TOP_USERS_AMOUNT
    fresh_post_days: float = constants.FRESH_POST_DAYS
    medium_post_days: float = constants.MEDIUM_POST_DAYS
    medium_resync_interval_hours: float = constants.MEDIUM_RESYNC_INTERVAL_HOURS
    page_limit: int = constants.PAGE_LIMIT
    max_post_pages: int = constants.MAX_POST_PAGES
    max_comment_pages: int = constants.MAX_COMMENT_PAGES
    sync_timeout_seconds: float = constants.SYNC_TIMEOUT_SECONDS
    entity_cache_ttl_seconds: float = 3600.0
    entity_cache_size: int = 256

    @property
    def window(self) -> timedelta:
        return timedelta(days=self.window_days)

    @property
    def cooldown(self) -> timedelta:
        return timedelta(days=self.cooldown_days)

    @property
    def fresh_age(self) -> timedelta:
        return timedelta(days=self.fresh_post_days)

    @property
    def medium_age(self) -> timedelta:
        return timedelta(days=self.medium_post_days)

    @property
    def medium_resync_interval(self) -> timedelta:
        return timedelta(hours=self.medium_resync_interval_hours)

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "CoreUsersSettings":
        """Build settings from the ``[core_users]`` table.

        Missing keys use defaults; values that cannot be coerced to the
        field's type, or are not positive, are logged and replaced by the
        default.
        """
        section = config.get("core_users", {}) or {}
        values: Dict[str, Any] = {}
        types = get_type_hints(cls)
        for field in fields(cls):
            if field.name not in section:
                continue
            raw = section[field.name]
            caster = types[field.name]
            try:
                value = caster(raw)
            except (TypeError, ValueError):
                logger.warning(
                    "Invalid core_users.%s=%r; using default %r",
                    field.name,
                    raw,
                    field.default,
                )
                continue
            if value <= 0:
                logger.warning(
                    "Non-positive core_users.%s=%r; using default %r",
                    field.name,
                    raw,
                    field.default,
                )
                continue
            values[field.name] = value
        return cls(**values)
