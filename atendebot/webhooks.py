"""Outbound company webhooks.

Companies register HTTP endpoints for pipeline events. Each delivery is a JSON
``POST`` of ``{"event", "timestamp", "data"}``; when the endpoint has a secret
the body is signed with HMAC-SHA256 in ``X-Webhook-Signature``. Delivery is
best effort: failures are retried per endpoint, then logged, and never reach
the message pipeline.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Protocol

import requests
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from .__version__ import __version__
from .models import WebhookRecord
from .retry import Attempt, RetryPolicy

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"


class WebhookEvent(str, Enum):
    NEW_CONVERSATION = "NEW_CONVERSATION"
    MESSAGE_RECEIVED = "MESSAGE_RECEIVED"


@dataclass(frozen=True)
class CompanyWebhook:
    id: str
    company_id: str
    url: str
    events: tuple[str, ...] = ()
    secret: str | None = None
    headers: Mapping[str, str] = field(default_factory=dict)
    timeout_ms: int = 5000
    retry_count: int = 3
    is_active: bool = True

    def listens_to(self, event: str) -> bool:
        return self.is_active and event in self.events


@dataclass(frozen=True)
class DeliveryResult:
    webhook_id: str
    success: bool
    status_code: int | None = None
    error: str | None = None


class WebhookRepository(Protocol):
    def list_active(self, company_id: str) -> List[CompanyWebhook]: ...


def _webhook_from_record(record: WebhookRecord) -> CompanyWebhook:
    return CompanyWebhook(
        id=record.id,
        company_id=record.company_id,
        url=record.url,
        events=tuple(record.events or ()),
        secret=record.secret,
        headers=dict(record.headers or {}),
        timeout_ms=record.timeout_ms,
        retry_count=record.retry_count,
        is_active=record.is_active,
    )


class SqlWebhookRepository:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def list_active(self, company_id: str) -> List[CompanyWebhook]:
        with self._session_factory() as session:
            records = session.scalars(
                select(WebhookRecord).where(
                    WebhookRecord.company_id == company_id,
                    WebhookRecord.is_active.is_(True),
                )
            )
            return [_webhook_from_record(record) for record in records]


class InMemoryWebhookRepository:
    def __init__(self) -> None:
        self._webhooks: Dict[str, CompanyWebhook] = {}
        self._lock = threading.Lock()

    def add_webhook(self, webhook: CompanyWebhook) -> CompanyWebhook:
        with self._lock:
            self._webhooks[webhook.id] = webhook
        return webhook

    def list_active(self, company_id: str) -> List[CompanyWebhook]:
        with self._lock:
            return [w for w in self._webhooks.values() if w.company_id == company_id and w.is_active]


def sign_payload(body: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()


class WebhookDispatcher:
    """Deliver events to every active endpoint of a company that subscribed to them."""

    def __init__(
        self,
        repository: WebhookRepository,
        *,
        session: requests.Session | None = None,
        backoff: tuple[float, ...] = (1.0, 2.0),
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._repository = repository
        self._http = session or requests.Session()
        self._backoff = backoff
        self._sleep = sleep
        self._clock = clock

    def _policy(self, webhook: CompanyWebhook) -> RetryPolicy:
        return RetryPolicy(max_attempts=max(1, webhook.retry_count), backoff=self._backoff, sleep=self._sleep)

    def _attempt(self, webhook: CompanyWebhook, body: str, headers: Mapping[str, str]) -> Attempt[int]:
        try:
            response = self._http.post(
                webhook.url, data=body.encode("utf-8"), headers=dict(headers), timeout=webhook.timeout_ms / 1000
            )
        except requests.RequestException as exc:
            return Attempt.failure(f"{type(exc).__name__}: {exc}", retryable=True)
        if response.ok:
            return Attempt.success(response.status_code)
        return Attempt.failure(f"HTTP {response.status_code}: {response.text[:200]}", retryable=True)

    def send(self, webhook: CompanyWebhook, event: str, data: Mapping[str, Any]) -> DeliveryResult:
        body = json.dumps({"event": event, "timestamp": self._clock().isoformat(), "data": dict(data)}, default=str)
        headers = {"Content-Type": "application/json", "User-Agent": f"atendebot-webhook/{__version__}"}
        if webhook.secret:
            headers[SIGNATURE_HEADER] = sign_payload(body, webhook.secret)
        headers.update(webhook.headers)

        outcome = self._policy(webhook).run(
            lambda: self._attempt(webhook, body, headers), label=f"webhook {webhook.id} ({event})"
        )
        if outcome.ok:
            return DeliveryResult(webhook.id, True, status_code=outcome.value)
        return DeliveryResult(webhook.id, False, error=outcome.error)

    def dispatch(self, company_id: str, event: str, data: Mapping[str, Any]) -> List[DeliveryResult]:
        webhooks = [w for w in self._repository.list_active(company_id) if w.listens_to(event)]
        if not webhooks:
            return []
        results = [self.send(webhook, event, data) for webhook in webhooks]
        logger.info(
            "Dispatched %s for company %s: %d/%d delivered",
            event,
            company_id,
            sum(1 for result in results if result.success),
            len(results),
        )
        return results


def dispatch_webhook(
    dispatcher: WebhookDispatcher | None, company_id: str, event: WebhookEvent, data: Mapping[str, Any]
) -> None:
    """Deliver through ``dispatcher`` without ever raising."""

    if dispatcher is None:
        return
    try:
        dispatcher.dispatch(company_id, event.value, data)
    except Exception:
        logger.exception("Webhook dispatch failed for %s on company %s", event.value, company_id)
