"""Conversation storage, lifecycle and prompt context."""

from .repository import (
    ConversationNotFoundError,
    InMemoryConversationRepository,
    SqlConversationRepository,
)
from .schemas import Conversation, ConversationStatus, Message, MessageType, SenderType
from .state import ConversationStateMachine, InvalidTransitionError, can_send, initial_status

__all__ = [
    "Conversation",
    "ConversationNotFoundError",
    "ConversationStateMachine",
    "ConversationStatus",
    "InMemoryConversationRepository",
    "InvalidTransitionError",
    "Message",
    "MessageType",
    "SenderType",
    "SqlConversationRepository",
    "can_send",
    "initial_status",
]
