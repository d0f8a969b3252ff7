"""Tests for environment-driven configuration."""

import pytest

from atendebot.settings import Settings


def test_defaults(monkeypatch):
    for name in ("DATABASE_URL", "REDIS_URL", "WORKER_CONCURRENCY", "JOB_BACKOFF_SECONDS", "OPENAI_MODEL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("atendebot.settings.load_dotenv", lambda: None)

    settings = Settings.from_env()

    assert settings.queue_name == "whatsapp-messages"
    assert settings.worker_concurrency == 5
    assert settings.job_backoff_seconds == (2.0, 4.0, 8.0)
    assert settings.history_threshold == 10
    assert settings.recent_window == 5


def test_values_from_environment(monkeypatch):
    monkeypatch.setattr("atendebot.settings.load_dotenv", lambda: None)
    monkeypatch.setenv("DATABASE_URL", "postgresql+psycopg://bot@db/atendebot")
    monkeypatch.setenv("WORKER_CONCURRENCY", "12")
    monkeypatch.setenv("JOB_BACKOFF_SECONDS", "1, 5,30")
    monkeypatch.setenv("OPENAI_TIMEOUT", "45.5")
    monkeypatch.setenv("TRIAL_TOKEN_LIMIT", "1000")

    settings = Settings.from_env()

    assert settings.database_url == "postgresql+psycopg://bot@db/atendebot"
    assert settings.worker_concurrency == 12
    assert settings.job_backoff_seconds == (1.0, 5.0, 30.0)
    assert settings.openai_timeout == 45.5
    assert settings.trial_token_limit == 1000


@pytest.mark.parametrize("name", ["WORKER_CONCURRENCY", "OPENAI_TIMEOUT"])
def test_bad_numbers_fail_fast(monkeypatch, name):
    monkeypatch.setattr("atendebot.settings.load_dotenv", lambda: None)
    monkeypatch.setenv(name, "many")

    with pytest.raises(RuntimeError, match=name):
        Settings.from_env()
