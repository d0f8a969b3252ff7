"""Real-time notifications to operator dashboards.

Events are published on Redis pub/sub channels named ``company:{company_id}``;
the dashboard socket server subscribes to those channels. Publishing is best
effort: errors are logged and never reach the caller.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, List, Mapping, Protocol, Tuple

import redis

logger = logging.getLogger(__name__)

NEW_MESSAGE = "new_message"
CONVERSATION_UPDATED = "conversation_updated"
NEW_CONVERSATION = "new_conversation"


def company_channel(company_id: str) -> str:
    return f"company:{company_id}"


class Notifier(Protocol):
    def emit_to_company(self, company_id: str, event: str, payload: Mapping[str, Any]) -> None: ...


class RedisNotifier:
    """Publish JSON envelopes ``{"event", "data"}`` on the company channel."""

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisNotifier":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def emit_to_company(self, company_id: str, event: str, payload: Mapping[str, Any]) -> None:
        envelope = json.dumps({"event": event, "data": dict(payload)}, default=str)
        try:
            self._client.publish(company_channel(company_id), envelope)
        except redis.RedisError as exc:
            logger.warning("Failed to publish %s for company %s: %s", event, company_id, exc)


class InMemoryNotifier:
    def __init__(self) -> None:
        self.events: List[Tuple[str, str, dict[str, Any]]] = []
        self._lock = threading.Lock()

    def emit_to_company(self, company_id: str, event: str, payload: Mapping[str, Any]) -> None:
        with self._lock:
            self.events.append((company_id, event, dict(payload)))

    def names(self) -> List[str]:
        with self._lock:
            return [event for _, event, _ in self.events]


class NullNotifier:
    def emit_to_company(self, company_id: str, event: str, payload: Mapping[str, Any]) -> None:
        logger.debug("Dropping %s notification for company %s", event, company_id)


def notify(notifier: Notifier | None, company_id: str, event: str, payload: Mapping[str, Any]) -> None:
    """Emit through ``notifier`` without ever raising."""

    if notifier is None:
        return
    try:
        notifier.emit_to_company(company_id, event, payload)
    except Exception:
        logger.exception("Notifier failed for %s on company %s", event, company_id)
