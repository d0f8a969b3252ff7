"""SQLAlchemy declarative base and the tables used by the message pipeline.

This package exposes a single declarative ``Base`` class shared by every
table definition. Individual models live in :mod:`atendebot.models.entities`
and are re-exported here so callers can write
``from atendebot.models import ConversationRecord``.
"""

from __future__ import annotations

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy declarative models."""


from .entities import (  # noqa: E402
    AgentDocumentRecord,
    AgentPersonaRecord,
    AgentTrainingDataRecord,
    AuditLogRecord,
    CompanyRecord,
    ConversationRecord,
    CustomerMemoryRecord,
    MessageRecord,
    OrderRecord,
    PlanRecord,
    ProductRecord,
    SubscriptionRecord,
    TokenUsageRecord,
    TokenUsageTurnRecord,
    WebhookRecord,
)


__all__ = [
    "Base",
    "AgentDocumentRecord",
    "AgentPersonaRecord",
    "AgentTrainingDataRecord",
    "AuditLogRecord",
    "CompanyRecord",
    "ConversationRecord",
    "CustomerMemoryRecord",
    "MessageRecord",
    "OrderRecord",
    "PlanRecord",
    "ProductRecord",
    "SubscriptionRecord",
    "TokenUsageRecord",
    "TokenUsageTurnRecord",
    "WebhookRecord",
]
