from __future__ import annotations

import pytest

from cronguard.config import get_settings


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in (
        "DATABASE_URL",
        "CRONGUARD_JOBS_MANIFEST",
        "CRONGUARD_DEFAULT_TTL_SECONDS",
        "CRONGUARD_SKIP_STALE_LOCK_CLEANUP",
        "LOG_LEVEL",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr("cronguard.config.load_dotenv", lambda: False)

    settings = get_settings()

    assert settings.database_url is None
    assert settings.jobs_manifest == "manifest.py"
    assert settings.default_ttl_seconds == 300.0
    assert settings.skip_stale_lock_cleanup is False
    assert settings.stuck_lease_multiplier == 2.0
    assert settings.log_level == "INFO"


def test_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", '"sqlite:///cron.db"')
    monkeypatch.setenv("CRONGUARD_DEFAULT_TTL_SECONDS", "900")
    monkeypatch.setenv("CRONGUARD_SKIP_STALE_LOCK_CLEANUP", "yes")
    monkeypatch.setenv("CRONGUARD_STARTUP_TIMEOUT_SECONDS", "30")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = get_settings()

    assert settings.database_url == "sqlite:///cron.db"
    assert settings.default_ttl_seconds == 900.0
    assert settings.skip_stale_lock_cleanup is True
    assert settings.startup_timeout_seconds == 30.0
    assert settings.log_level == "DEBUG"


def test_settings_are_cached(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CRONGUARD_TIMEZONE", "Europe/Berlin")
    first = get_settings()
    monkeypatch.setenv("CRONGUARD_TIMEZONE", "UTC")
    assert get_settings() is first
