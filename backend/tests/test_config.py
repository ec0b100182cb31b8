"""Tests for config settings groups."""

import pytest

from config import DatabaseSettings, Settings, TrackerSettings


class TestSettings:
    def test_top_level_fields(self) -> None:
        assert set(Settings.model_fields) == {
            "debug",
            "log_level",
            "log_format",
            "database",
            "registry",
            "explorer",
            "tracker",
        }

    def test_unknown_prefixed_env_ignored(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PAYTRACKER_ENVIRONMENT", "production")
        monkeypatch.setenv("PAYTRACKER_LOG_LEVEL", "DEBUG")
        settings = Settings()
        assert settings.log_level == "DEBUG"
        assert not hasattr(settings, "environment")

    def test_tracker_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TRACKER_SAFETY_BUFFER", "25")
        assert TrackerSettings().safety_buffer == 25


class TestDatabaseSettings:
    def test_postgres_dsn_redacted(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PAYMENTS_DATABASE_URL", "postgresql://tracker:s3cret@db:5432/payments")
        settings = DatabaseSettings()
        assert settings.url == "postgresql://tracker:s3cret@db:5432/payments"
        assert "s3cret" not in settings.db_info_for_logging()
        assert settings.db_info_for_logging() == "PostgreSQL @ postgresql://tracker:***@db:5432/payments"
