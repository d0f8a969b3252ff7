"""Pydantic schemas for conversations and their messages."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ConversationStatus(str, Enum):
    OPEN = "OPEN"
    AI_HANDLING = "AI_HANDLING"
    HUMAN_HANDLING = "HUMAN_HANDLING"
    CLOSED = "CLOSED"


class SenderType(str, Enum):
    CUSTOMER = "CUSTOMER"
    AI = "AI"
    HUMAN = "HUMAN"


class MessageType(str, Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    AUDIO = "AUDIO"
    VIDEO = "VIDEO"
    DOCUMENT = "DOCUMENT"
    STICKER = "STICKER"
    LOCATION = "LOCATION"

    @classmethod
    def parse(cls, value: str | None) -> "MessageType":
        """Map a channel media type onto a known type, defaulting to TEXT."""

        normalized = (value or "").strip().upper()
        if normalized in {"CHAT", "PTT", "VOICE"}:
            normalized = "AUDIO" if normalized != "CHAT" else "TEXT"
        try:
            return cls(normalized)
        except ValueError:
            return cls.TEXT


class Conversation(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    company_id: str
    customer_phone: str
    customer_name: str | None = None
    status: ConversationStatus
    agent_id: str | None = None
    unread_count: int = 0
    last_message_at: datetime | None = None
    created_at: datetime = Field(default_factory=_now)


class Message(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    conversation_id: str
    sender: SenderType
    type: MessageType = MessageType.TEXT
    content: str = ""
    media_url: str | None = None
    external_id: str | None = None
    is_read: bool = False
    created_at: datetime = Field(default_factory=_now)


class ConversationList(BaseModel):
    items: list[Conversation]
    total: int


class OperatorMessageRequest(BaseModel):
    content: str = Field(min_length=1, max_length=4096)


class TransitionResponse(BaseModel):
    conversation: Conversation
    action: str
