"""Fire-and-forget audit trail for conversation lifecycle actions.

Callers go through :func:`audit`, which never raises: a broken sink must not
stop a customer reply from going out.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Protocol

from sqlalchemy.orm import Session, sessionmaker

from .models import AuditLogRecord

logger = logging.getLogger(__name__)

CONVERSATION_TAKEN_OVER = "CONVERSATION_TAKEN_OVER"
CONVERSATION_TRANSFERRED = "CONVERSATION_TRANSFERRED"
CONVERSATION_RETURNED_TO_AI = "CONVERSATION_RETURNED_TO_AI"
CONVERSATION_CLOSED = "CONVERSATION_CLOSED"
CONVERSATION_REOPENED = "CONVERSATION_REOPENED"
ORDER_CREATED = "ORDER_CREATED"
PAYMENT_PROOF_RECEIVED = "PAYMENT_PROOF_RECEIVED"
TOKEN_LIMIT_UPDATED = "TOKEN_LIMIT_UPDATED"


@dataclass(frozen=True)
class AuditEvent:
    action: str
    entity: str
    entity_id: str | None = None
    company_id: str | None = None
    user_email: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None: ...


class SqlAuditSink:
    """Write audit events to the ``audit_logs`` table."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def record(self, event: AuditEvent) -> None:
        with self._session_factory.begin() as session:
            session.add(
                AuditLogRecord(
                    action=event.action,
                    entity=event.entity,
                    entity_id=event.entity_id,
                    company_id=event.company_id,
                    user_email=event.user_email,
                    details=dict(event.details),
                    created_at=event.created_at,
                )
            )


class InMemoryAuditSink:
    def __init__(self) -> None:
        self.events: List[AuditEvent] = []
        self._lock = threading.Lock()

    def record(self, event: AuditEvent) -> None:
        with self._lock:
            self.events.append(event)

    def actions(self) -> List[str]:
        with self._lock:
            return [event.action for event in self.events]


def audit(sink: AuditSink | None, event: AuditEvent) -> None:
    """Record ``event`` on ``sink``; failures are logged and swallowed."""

    if sink is None:
        return
    try:
        sink.record(event)
    except Exception:
        logger.exception(
            "Failed to record audit event %s for %s %s",
            event.action,
            event.entity,
            event.entity_id,
        )
