"""Logging for the worker and the HTTP API.

Every module logs through a child of the ``atendebot`` logger. ``init_logging``
attaches a daily-rotated ``app.log`` handler to it and, when given a FastAPI
app, replaces the uvicorn access handlers with ``access.log`` plus a
middleware that writes one JSON line per request.

Customer phone numbers are PII: ``mask_phone`` renders them for log calls and
``PhoneRedactionFilter`` catches any full number that still slips into a
message. Request headers and bodies pass through ``_scrub`` before they are
written.

Environment variables: LOG_DIR, LOG_LEVEL, LOG_JSON, LOG_REQUEST_BODIES,
LOG_RETENTION_DAYS, LOG_ROTATE_UTC.
"""

from __future__ import annotations

import json
import logging
import os
import re
import time
from dataclasses import dataclass
from logging.handlers import TimedRotatingFileHandler
from typing import Any, cast
from uuid import uuid4

from fastapi import FastAPI, Request

APP_LOGGER_NAME = "atendebot"
ACCESS_LOGGER_NAME = "uvicorn.access"

# Context attributes passed through ``extra=`` and copied into JSON lines.
CONTEXT_FIELDS = ("company_id", "conversation_id", "job_id", "request_id")

SENSITIVE_FIELDS = frozenset(
    {
        "authorization",
        "cookie",
        "set-cookie",
        "password",
        "token",
        "access_token",
        "refresh_token",
        "secret",
        "phone",
        "from",
        "to",
    }
)

UNLOGGED_PATHS = frozenset({"/api/health", "/api/metrics"})

# Brazilian numbers with country code are 12-13 digits; WhatsApp ids append @c.us.
_PHONE_RE = re.compile(r"(?<!\d)\d{10,15}(?:@c\.us)?(?!\d)")


def _env_flag(name: str, default: bool = False) -> bool:
    return os.getenv(name, "true" if default else "false").strip().lower() in {"1", "true", "yes"}


@dataclass(frozen=True)
class LogSettings:
    log_dir: str = "logs"
    level: int = logging.INFO
    json: bool = False
    retention_days: int = 7
    rotate_utc: bool = False
    request_bodies: bool = False

    @classmethod
    def from_env(cls) -> "LogSettings":
        return cls(
            log_dir=os.getenv("LOG_DIR", "logs"),
            level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
            json=_env_flag("LOG_JSON"),
            retention_days=int(os.getenv("LOG_RETENTION_DAYS", "7")),
            rotate_utc=_env_flag("LOG_ROTATE_UTC"),
            request_bodies=_env_flag("LOG_REQUEST_BODIES"),
        )


def mask_phone(phone: str | None) -> str:
    """Return ``phone`` with everything but the last four digits hidden."""

    if not phone:
        return "-"
    digits = "".join(ch for ch in phone if ch.isdigit())
    if len(digits) <= 4:
        return "***"
    return f"***{digits[-4:]}"


class PhoneRedactionFilter(logging.Filter):
    """Mask full phone numbers in the rendered message of every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = _PHONE_RE.sub(lambda match: mask_phone(match.group(0)), message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line, with any context fields the caller attached."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _formatter(settings: LogSettings) -> logging.Formatter:
    if settings.json:
        return JsonFormatter()
    return logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")


def _file_handler(settings: LogSettings, filename: str) -> TimedRotatingFileHandler:
    handler = TimedRotatingFileHandler(
        os.path.join(settings.log_dir, filename),
        when="midnight",
        backupCount=settings.retention_days,
        utc=settings.rotate_utc,
    )
    handler.setFormatter(_formatter(settings))
    handler.addFilter(PhoneRedactionFilter())
    return handler


def _scrub(data: object) -> object:
    """Replace the values of sensitive keys, at any depth, with ``***``."""

    if isinstance(data, dict):
        return {
            key: "***" if str(key).lower() in SENSITIVE_FIELDS else _scrub(value)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [_scrub(item) for item in data]
    return data


async def _read_body(request: Request) -> object | None:
    """Read and scrub the request body, leaving it readable for the route."""

    raw = await request.body()

    async def replay() -> dict:
        return {"type": "http.request", "body": raw, "more_body": False}

    request._receive = replay  # type: ignore[attr-defined]
    if not raw:
        return None
    try:
        return _scrub(json.loads(raw))
    except ValueError:
        return raw.decode("utf-8", errors="replace")


def _install_access_logging(app: FastAPI, settings: LogSettings | None = None) -> None:
    """Log every request except probes and echo ``X-Request-Id`` back.

    Server errors are logged at WARNING so they stand out in ``access.log``.
    """

    settings = settings or LogSettings.from_env()
    access_logger = logging.getLogger(ACCESS_LOGGER_NAME)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        if request.url.path in UNLOGGED_PATHS:
            return await call_next(request)

        request_id = request.headers.get("X-Request-Id") or uuid4().hex
        request.state.request_id = request_id
        body = await _read_body(request) if settings.request_bodies else None
        started = time.perf_counter()

        response = await call_next(request)

        forwarded = request.headers.get("X-Forwarded-For")
        entry: dict[str, Any] = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "latency_ms": round((time.perf_counter() - started) * 1000, 2),
            "client_ip": forwarded or (request.client.host if request.client else None),
            "headers": _scrub(dict(request.headers)),
        }
        if request.query_params:
            entry["query"] = _scrub(dict(request.query_params))
        if body is not None:
            entry["body"] = body
        response.headers["X-Request-Id"] = request_id

        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        access_logger.log(level, json.dumps(entry, default=str))
        return response


def init_logging(app: FastAPI | None = None) -> None:
    """Configure ``app.log`` and, for the HTTP API, ``access.log`` and its middleware.

    Safe to call more than once: the application logger keeps a single file
    handler.
    """

    settings = LogSettings.from_env()
    os.makedirs(settings.log_dir, exist_ok=True)

    app_logger = logging.getLogger(APP_LOGGER_NAME)
    if not app_logger.handlers:
        app_logger.addHandler(_file_handler(settings, "app.log"))
    app_logger.setLevel(settings.level)

    if app is None:
        return

    access_logger = logging.getLogger(ACCESS_LOGGER_NAME)
    access_logger.handlers.clear()
    access_logger.addHandler(_file_handler(settings, "access.log"))
    access_logger.setLevel(settings.level)

    cast(Any, app).logger = app_logger
    _install_access_logging(app, settings)
