"""Domain models used by the worker and the context assembler."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..nlp import CustomerIntent
from .schemas import Message, SenderType


@dataclass(frozen=True)
class ChatTurn:
    """One message as the language model sees it."""

    role: str
    content: str

    @classmethod
    def from_message(cls, message: Message) -> "ChatTurn":
        role = "user" if message.sender == SenderType.CUSTOMER else "assistant"
        return cls(role=role, content=message.content)

    def as_openai(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class ConversationContext:
    """Bounded prompt context for one AI turn (never persisted)."""

    summary: str | None = None
    recent_messages: list[ChatTurn] = field(default_factory=list)
    detected_intent: CustomerIntent | None = None
    total_messages: int = 0


class JobStatus(str, Enum):
    REPLIED = "REPLIED"
    SKIPPED = "SKIPPED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    PAYMENT_PROOF = "PAYMENT_PROOF"
    DUPLICATE = "DUPLICATE"
    FAILED = "FAILED"


@dataclass
class JobOutcome:
    status: JobStatus
    conversation_id: str | None = None
    detail: str | None = None
    extras: dict[str, Any] = field(default_factory=dict)
