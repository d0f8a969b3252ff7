"""Operator API for conversations: listing, hand-off actions and replies."""

from __future__ import annotations

import logging
from typing import Callable

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..companies import CompanyContext
from ..conversations import schemas
from ..conversations.repository import ConversationNotFoundError
from ..conversations.state import InvalidTransitionError, can_send
from ..notifications import NEW_MESSAGE, notify
from .deps import ApiServices, get_services, get_user_email, require_company

logger = logging.getLogger(__name__)

router = APIRouter(tags=["conversations"])


def _load(services: ApiServices, conversation_id: str) -> tuple[schemas.Conversation, CompanyContext]:
    conversation = services.conversations.get_conversation(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail=f"Conversation {conversation_id} not found")
    return conversation, require_company(services, conversation.company_id)


def _transition(
    action: str,
    conversation_id: str,
    services: ApiServices,
    apply: Callable[[str, CompanyContext], schemas.Conversation],
) -> schemas.TransitionResponse:
    _, company = _load(services, conversation_id)
    try:
        updated = apply(conversation_id, company)
    except ConversationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return schemas.TransitionResponse(conversation=updated, action=action)


@router.get("/api/companies/{company_id}/conversations", response_model=schemas.ConversationList)
def list_conversations(
    company_id: str,
    status_filter: schemas.ConversationStatus | None = Query(default=None, alias="status"),
    limit: int = 50,
    services: ApiServices = Depends(get_services),
) -> schemas.ConversationList:
    require_company(services, company_id)
    if limit < 1 or limit > 200:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 200")
    items = services.conversations.list_conversations(company_id, status_filter, limit)
    return schemas.ConversationList(items=items, total=len(items))


@router.get("/api/conversations/{conversation_id}", response_model=schemas.Conversation)
def get_conversation(conversation_id: str, services: ApiServices = Depends(get_services)) -> schemas.Conversation:
    conversation, _ = _load(services, conversation_id)
    return conversation


@router.get("/api/conversations/{conversation_id}/messages", response_model=list[schemas.Message])
def list_messages(conversation_id: str, services: ApiServices = Depends(get_services)) -> list[schemas.Message]:
    conversation, _ = _load(services, conversation_id)
    messages = services.conversations.list_messages(conversation.id)
    services.conversations.mark_read(conversation.id)
    return messages


@router.post("/api/conversations/{conversation_id}/take-over", response_model=schemas.TransitionResponse)
def take_over(
    conversation_id: str,
    services: ApiServices = Depends(get_services),
    user_email: str | None = Depends(get_user_email),
) -> schemas.TransitionResponse:
    return _transition(
        "take_over",
        conversation_id,
        services,
        lambda cid, company: services.state_machine.take_over(cid, company, user_email),
    )


@router.post("/api/conversations/{conversation_id}/return-ai", response_model=schemas.TransitionResponse)
def return_ai(
    conversation_id: str,
    services: ApiServices = Depends(get_services),
    user_email: str | None = Depends(get_user_email),
) -> schemas.TransitionResponse:
    return _transition(
        "return_ai",
        conversation_id,
        services,
        lambda cid, company: services.state_machine.return_ai(cid, company, user_email),
    )


@router.post("/api/conversations/{conversation_id}/close", response_model=schemas.TransitionResponse)
def close(
    conversation_id: str,
    services: ApiServices = Depends(get_services),
    user_email: str | None = Depends(get_user_email),
) -> schemas.TransitionResponse:
    return _transition(
        "close",
        conversation_id,
        services,
        lambda cid, company: services.state_machine.close(cid, company, user_email),
    )


@router.post("/api/conversations/{conversation_id}/reopen", response_model=schemas.TransitionResponse)
def reopen(
    conversation_id: str,
    services: ApiServices = Depends(get_services),
    user_email: str | None = Depends(get_user_email),
) -> schemas.TransitionResponse:
    return _transition(
        "reopen",
        conversation_id,
        services,
        lambda cid, company: services.state_machine.reopen(cid, company, user_email),
    )


@router.post(
    "/api/conversations/{conversation_id}/messages",
    response_model=schemas.Message,
    status_code=status.HTTP_201_CREATED,
)
def send_operator_message(
    conversation_id: str,
    payload: schemas.OperatorMessageRequest,
    services: ApiServices = Depends(get_services),
    user_email: str | None = Depends(get_user_email),
) -> schemas.Message:
    """Send a human reply; only allowed while a human owns the conversation."""

    conversation, company = _load(services, conversation_id)
    if not can_send(conversation.status, schemas.SenderType.HUMAN):
        raise HTTPException(
            status_code=409,
            detail=f"Operators cannot send while the conversation is {conversation.status.value}",
        )
    if not services.channel.send_text(company.session_name, conversation.customer_phone, payload.content):
        raise HTTPException(status_code=502, detail="Message could not be delivered")
    message = services.conversations.add_message(
        schemas.Message(
            conversation_id=conversation.id,
            sender=schemas.SenderType.HUMAN,
            content=payload.content,
            is_read=True,
        )
    )
    services.conversations.mark_read(conversation.id)
    logger.info("Operator %s replied on conversation %s", user_email or "-", conversation.id)
    notify(
        services.notifier,
        company.id,
        NEW_MESSAGE,
        {"conversationId": conversation.id, "messageId": message.id, "sender": schemas.SenderType.HUMAN.value},
    )
    return message
