"""Unit tests for configuration loading and core-users settings."""

from datetime import timedelta

import pytest
import toml

from coreusers.config import CoreUsersSettings, load_config


@pytest.fixture
def config_file(tmp_path):
    def write(data):
        path = tmp_path / "settings.toml"
        path.write_text(toml.dumps(data))
        return path

    return write


class TestLoadConfig:
    def test_valid_config(self, config_file):
        path = config_file(
            {
                "database": {"database": "tg_core_users"},
                "gateway": {"session_path": "/var/lib/tg-core-users/session.enc"},
            }
        )
        config = load_config(path)
        assert config["gateway"]["session_path"].endswith("session.enc")

    def test_missing_session_path(self, config_file):
        path = config_file({"database": {"database": "x"}, "gateway": {}})
        with pytest.raises(KeyError, match="gateway.session_path"):
            load_config(path)

    def test_missing_database(self, config_file):
        path = config_file({"gateway": {"session_path": "s"}})
        with pytest.raises(KeyError, match="database"):
            load_config(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "absent.toml")


class TestCoreUsersSettings:
    def test_defaults(self):
        settings = CoreUsersSettings.from_config({})
        assert settings.window == timedelta(days=90)
        assert settings.cooldown == timedelta(days=1)
        assert settings.top_users == 10
        assert settings.fresh_age == timedelta(days=3)
        assert settings.medium_age == timedelta(days=10)
        assert settings.medium_resync_interval == timedelta(hours=48)
        assert settings.page_limit == 100

    def test_overrides(self):
        settings = CoreUsersSettings.from_config(
            {"core_users": {"window_days": 30, "cooldown_days": 0.5, "top_users": "5"}}
        )
        assert settings.window_days == 30
        assert settings.cooldown == timedelta(hours=12)
        assert settings.top_users == 5

    def test_invalid_values_fall_back_to_defaults(self, caplog):
        settings = CoreUsersSettings.from_config(
            {"core_users": {"page_limit": "many", "max_post_pages": 0}}
        )
        assert settings.page_limit == 100
        assert settings.max_post_pages == 50
        assert "core_users.page_limit" in caplog.text

    def test_float_field_keeps_fraction(self):
        settings = CoreUsersSettings.from_config({"core_users": {"sync_timeout_seconds": 12.5}})
        assert settings.sync_timeout_seconds == 12.5

    def test_values_are_cast_to_field_types(self):
        settings = CoreUsersSettings.from_config(
            {"core_users": {"max_comment_pages": "25", "medium_resync_interval_hours": "36"}}
        )
        assert settings.max_comment_pages == 25
        assert type(settings.max_comment_pages) is int
        assert settings.medium_resync_interval_hours == 36.0
        assert type(settings.medium_resync_interval_hours) is float

    def test_fractional_int_field_falls_back(self):
        settings = CoreUsersSettings.from_config({"core_users": {"top_users": "2.5"}})
        assert settings.top_users == 10
