"""Runtime configuration for the worker and the HTTP API.

Values come from environment variables (optionally loaded from a ``.env``
file). Every setting has a development-friendly default so the test-suite and
local runs work without any configuration.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got {value!r}") from exc


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number, got {value!r}") from exc


def _env_delays(name: str, default: tuple[float, ...]) -> tuple[float, ...]:
    value = os.getenv(name)
    if not value:
        return default
    return tuple(float(part) for part in value.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite+pysqlite:///atendebot.db"
    redis_url: str = "redis://localhost:6379/0"
    queue_name: str = "whatsapp-messages"
    worker_concurrency: int = 5
    job_max_attempts: int = 3
    job_backoff_seconds: tuple[float, ...] = (2.0, 4.0, 8.0)

    openai_model: str = "gpt-4o-mini"
    openai_summary_model: str = "gpt-4o-mini"
    openai_timeout: float = 30.0
    ai_max_tokens: int = 350
    ai_temperature: float = 0.4
    ai_max_attempts: int = 3

    wppconnect_url: str = "http://localhost:21465"
    wppconnect_secret: str = ""
    channel_timeout: float = 15.0
    send_max_attempts: int = 3
    send_backoff_seconds: tuple[float, ...] = field(default=(2.0, 4.0, 8.0))

    usage_cache_ttl: float = 60.0
    trial_token_limit: int = 75_000
    history_threshold: int = 10
    recent_window: int = 5

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment."""

        load_dotenv()
        defaults = cls()
        return cls(
            database_url=os.getenv("DATABASE_URL", defaults.database_url),
            redis_url=os.getenv("REDIS_URL", defaults.redis_url),
            queue_name=os.getenv("QUEUE_NAME", defaults.queue_name),
            worker_concurrency=_env_int("WORKER_CONCURRENCY", defaults.worker_concurrency),
            job_max_attempts=_env_int("JOB_MAX_ATTEMPTS", defaults.job_max_attempts),
            job_backoff_seconds=_env_delays(
                "JOB_BACKOFF_SECONDS", defaults.job_backoff_seconds
            ),
            openai_model=os.getenv("OPENAI_MODEL", defaults.openai_model),
            openai_summary_model=os.getenv(
                "OPENAI_SUMMARY_MODEL", defaults.openai_summary_model
            ),
            openai_timeout=_env_float("OPENAI_TIMEOUT", defaults.openai_timeout),
            ai_max_tokens=_env_int("AI_MAX_TOKENS", defaults.ai_max_tokens),
            ai_temperature=_env_float("AI_TEMPERATURE", defaults.ai_temperature),
            ai_max_attempts=_env_int("AI_MAX_ATTEMPTS", defaults.ai_max_attempts),
            wppconnect_url=os.getenv("WPPCONNECT_URL", defaults.wppconnect_url),
            wppconnect_secret=os.getenv("WPPCONNECT_SECRET", defaults.wppconnect_secret),
            channel_timeout=_env_float("CHANNEL_TIMEOUT", defaults.channel_timeout),
            send_max_attempts=_env_int("SEND_MAX_ATTEMPTS", defaults.send_max_attempts),
            send_backoff_seconds=_env_delays(
                "SEND_BACKOFF_SECONDS", defaults.send_backoff_seconds
            ),
            usage_cache_ttl=_env_float("USAGE_CACHE_TTL", defaults.usage_cache_ttl),
            trial_token_limit=_env_int("TRIAL_TOKEN_LIMIT", defaults.trial_token_limit),
            history_threshold=_env_int("HISTORY_THRESHOLD", defaults.history_threshold),
            recent_window=_env_int("RECENT_WINDOW", defaults.recent_window),
        )
