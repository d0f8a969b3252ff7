"""Conversation lifecycle: the allowed status transitions and their side effects.

Transition table::

    take_over / transfer_to_human   OPEN, AI_HANDLING   -> HUMAN_HANDLING
    return_ai                       HUMAN_HANDLING      -> AI_HANDLING
    close                           any but CLOSED      -> CLOSED
    reopen                          CLOSED              -> AI_HANDLING (OPEN if AI disabled)

Every applied transition is written to the audit sink and announced with a
``conversation_updated`` notification. Status writes are compare-and-set, so
two operators racing on the same conversation cannot both win.
"""

from __future__ import annotations

import logging
from typing import Any, FrozenSet, Mapping

from .. import audit as audit_actions
from ..audit import AuditEvent, AuditSink, audit
from ..companies import CompanyContext
from ..notifications import CONVERSATION_UPDATED, Notifier, notify
from .repository import ConversationNotFoundError, ConversationRepository
from .schemas import Conversation, ConversationStatus, SenderType

logger = logging.getLogger(__name__)

_HANDOFF_FROM: FrozenSet[ConversationStatus] = frozenset(
    {ConversationStatus.OPEN, ConversationStatus.AI_HANDLING}
)
_NOT_CLOSED: FrozenSet[ConversationStatus] = frozenset(
    {ConversationStatus.OPEN, ConversationStatus.AI_HANDLING, ConversationStatus.HUMAN_HANDLING}
)


class InvalidTransitionError(ValueError):
    """Raised when an action is not allowed from the conversation's status."""

    def __init__(self, action: str, current: ConversationStatus) -> None:
        super().__init__(f"Cannot {action} a conversation in status {current.value}")
        self.action = action
        self.current = current


def initial_status(company: CompanyContext) -> ConversationStatus:
    return ConversationStatus.AI_HANDLING if company.ai_enabled else ConversationStatus.OPEN


def can_send(status: ConversationStatus, sender: SenderType) -> bool:
    """Whether ``sender`` may reply while the conversation is in ``status``."""

    if sender == SenderType.AI:
        return status == ConversationStatus.AI_HANDLING
    if sender == SenderType.HUMAN:
        return status in (ConversationStatus.HUMAN_HANDLING, ConversationStatus.OPEN)
    return True


class ConversationStateMachine:
    def __init__(
        self,
        repository: ConversationRepository,
        audit_sink: AuditSink | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self._repository = repository
        self._audit_sink = audit_sink
        self._notifier = notifier

    def _apply(
        self,
        conversation_id: str,
        *,
        action: str,
        audit_action: str,
        allowed_from: FrozenSet[ConversationStatus],
        target: ConversationStatus,
        company_id: str,
        user_email: str | None,
        details: Mapping[str, Any] | None = None,
    ) -> Conversation:
        current = self._repository.get_conversation(conversation_id)
        if current is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        if current.status not in allowed_from:
            raise InvalidTransitionError(action, current.status)

        updated = self._repository.compare_and_set_status(conversation_id, allowed_from, target)
        if updated is None:
            latest = self._repository.get_conversation(conversation_id)
            raise InvalidTransitionError(action, latest.status if latest else current.status)

        logger.info(
            "Conversation %s: %s -> %s (%s)",
            conversation_id,
            current.status.value,
            target.value,
            action,
        )
        event_details = {"from": current.status.value, "to": target.value}
        event_details.update(details or {})
        audit(
            self._audit_sink,
            AuditEvent(
                action=audit_action,
                entity="Conversation",
                entity_id=conversation_id,
                company_id=company_id,
                user_email=user_email,
                details=event_details,
            ),
        )
        notify(
            self._notifier,
            company_id,
            CONVERSATION_UPDATED,
            {"conversationId": conversation_id, "status": target.value, "action": action},
        )
        return updated

    def take_over(self, conversation_id: str, company: CompanyContext, user_email: str | None) -> Conversation:
        return self._apply(
            conversation_id,
            action="take_over",
            audit_action=audit_actions.CONVERSATION_TAKEN_OVER,
            allowed_from=_HANDOFF_FROM,
            target=ConversationStatus.HUMAN_HANDLING,
            company_id=company.id,
            user_email=user_email,
        )

    def transfer_to_human(
        self, conversation_id: str, company: CompanyContext, reason: str | None = None
    ) -> Conversation:
        """AI-initiated hand-off; same transition as :meth:`take_over`."""

        return self._apply(
            conversation_id,
            action="transfer_to_human",
            audit_action=audit_actions.CONVERSATION_TRANSFERRED,
            allowed_from=_HANDOFF_FROM,
            target=ConversationStatus.HUMAN_HANDLING,
            company_id=company.id,
            user_email=None,
            details={"initiator": "AI", "reason": reason} if reason else {"initiator": "AI"},
        )

    def return_ai(self, conversation_id: str, company: CompanyContext, user_email: str | None) -> Conversation:
        return self._apply(
            conversation_id,
            action="return_ai",
            audit_action=audit_actions.CONVERSATION_RETURNED_TO_AI,
            allowed_from=frozenset({ConversationStatus.HUMAN_HANDLING}),
            target=ConversationStatus.AI_HANDLING,
            company_id=company.id,
            user_email=user_email,
        )

    def close(self, conversation_id: str, company: CompanyContext, user_email: str | None) -> Conversation:
        return self._apply(
            conversation_id,
            action="close",
            audit_action=audit_actions.CONVERSATION_CLOSED,
            allowed_from=_NOT_CLOSED,
            target=ConversationStatus.CLOSED,
            company_id=company.id,
            user_email=user_email,
        )

    def reopen(
        self, conversation_id: str, company: CompanyContext, user_email: str | None = None
    ) -> Conversation:
        return self._apply(
            conversation_id,
            action="reopen",
            audit_action=audit_actions.CONVERSATION_REOPENED,
            allowed_from=frozenset({ConversationStatus.CLOSED}),
            target=initial_status(company),
            company_id=company.id,
            user_email=user_email,
        )
