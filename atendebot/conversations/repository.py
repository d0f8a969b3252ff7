"""Storage for conversations and messages."""
from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Collection, Dict, List, Optional, Protocol, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..companies import as_utc
from ..models import ConversationRecord, MessageRecord
from . import schemas


class ConversationNotFoundError(RuntimeError):
    """Raised when a conversation id does not exist."""


class ConversationRepository(Protocol):
    """Abstraction for persisting conversations and their messages."""

    def get_conversation(self, conversation_id: str) -> Optional[schemas.Conversation]: ...

    def get_or_create(
        self,
        company_id: str,
        customer_phone: str,
        *,
        status: schemas.ConversationStatus,
        customer_name: str | None = None,
    ) -> Tuple[schemas.Conversation, bool]: ...

    def compare_and_set_status(
        self,
        conversation_id: str,
        expected: Collection[schemas.ConversationStatus],
        new_status: schemas.ConversationStatus,
    ) -> Optional[schemas.Conversation]: ...

    def bind_agent(self, conversation_id: str, agent_id: str) -> schemas.Conversation: ...

    def touch_inbound(self, conversation_id: str, at: datetime) -> None: ...

    def mark_read(self, conversation_id: str) -> None: ...

    def add_message(self, message: schemas.Message) -> schemas.Message: ...

    def get_message_by_external_id(self, external_id: str) -> Optional[schemas.Message]: ...

    def list_messages(self, conversation_id: str) -> List[schemas.Message]: ...

    def list_conversations(
        self,
        company_id: str,
        status: schemas.ConversationStatus | None = None,
        limit: int = 50,
    ) -> List[schemas.Conversation]: ...


def _conversation_from_record(record: ConversationRecord) -> schemas.Conversation:
    return schemas.Conversation(
        id=record.id,
        company_id=record.company_id,
        customer_phone=record.customer_phone,
        customer_name=record.customer_name,
        status=schemas.ConversationStatus(record.status),
        agent_id=record.agent_id,
        unread_count=record.unread_count,
        last_message_at=as_utc(record.last_message_at),
        created_at=as_utc(record.created_at),
    )


def _message_from_record(record: MessageRecord) -> schemas.Message:
    return schemas.Message(
        id=record.id,
        conversation_id=record.conversation_id,
        sender=schemas.SenderType(record.sender),
        type=schemas.MessageType(record.type),
        content=record.content,
        media_url=record.media_url,
        external_id=record.external_id,
        is_read=record.is_read,
        created_at=as_utc(record.created_at),
    )


class SqlConversationRepository:
    """SQLAlchemy implementation of :class:`ConversationRepository`."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def get_conversation(self, conversation_id: str) -> Optional[schemas.Conversation]:
        with self._session_factory() as session:
            record = session.get(ConversationRecord, conversation_id)
            return _conversation_from_record(record) if record else None

    def _find(self, session: Session, company_id: str, customer_phone: str) -> ConversationRecord | None:
        return session.scalar(
            select(ConversationRecord).where(
                ConversationRecord.company_id == company_id,
                ConversationRecord.customer_phone == customer_phone,
            )
        )

    def get_or_create(
        self,
        company_id: str,
        customer_phone: str,
        *,
        status: schemas.ConversationStatus,
        customer_name: str | None = None,
    ) -> Tuple[schemas.Conversation, bool]:
        with self._session_factory() as session:
            existing = self._find(session, company_id, customer_phone)
            if existing is not None:
                return _conversation_from_record(existing), False
            record = ConversationRecord(
                company_id=company_id,
                customer_phone=customer_phone,
                customer_name=customer_name,
                status=status.value,
            )
            session.add(record)
            try:
                session.commit()
            except IntegrityError:
                # Another worker created it first; the unique key guarantees one row.
                session.rollback()
                existing = self._find(session, company_id, customer_phone)
                if existing is None:
                    raise
                return _conversation_from_record(existing), False
            return _conversation_from_record(record), True

    def compare_and_set_status(
        self,
        conversation_id: str,
        expected: Collection[schemas.ConversationStatus],
        new_status: schemas.ConversationStatus,
    ) -> Optional[schemas.Conversation]:
        with self._session_factory.begin() as session:
            result = session.execute(
                update(ConversationRecord)
                .where(
                    ConversationRecord.id == conversation_id,
                    ConversationRecord.status.in_([status.value for status in expected]),
                )
                .values(status=new_status.value)
            )
            if result.rowcount != 1:
                return None
        return self.get_conversation(conversation_id)

    def bind_agent(self, conversation_id: str, agent_id: str) -> schemas.Conversation:
        with self._session_factory.begin() as session:
            session.execute(
                update(ConversationRecord)
                .where(
                    ConversationRecord.id == conversation_id,
                    ConversationRecord.agent_id.is_(None),
                )
                .values(agent_id=agent_id)
            )
        conversation = self.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    def touch_inbound(self, conversation_id: str, at: datetime) -> None:
        with self._session_factory.begin() as session:
            session.execute(
                update(ConversationRecord)
                .where(ConversationRecord.id == conversation_id)
                .values(
                    unread_count=ConversationRecord.unread_count + 1,
                    last_message_at=at,
                )
            )

    def mark_read(self, conversation_id: str) -> None:
        with self._session_factory.begin() as session:
            session.execute(
                update(ConversationRecord)
                .where(ConversationRecord.id == conversation_id)
                .values(unread_count=0)
            )
            session.execute(
                update(MessageRecord)
                .where(MessageRecord.conversation_id == conversation_id)
                .values(is_read=True)
            )

    def add_message(self, message: schemas.Message) -> schemas.Message:
        record = MessageRecord(
            id=message.id,
            conversation_id=message.conversation_id,
            sender=message.sender.value,
            type=message.type.value,
            content=message.content,
            media_url=message.media_url,
            external_id=message.external_id,
            is_read=message.is_read,
            created_at=message.created_at,
        )
        with self._session_factory() as session:
            session.add(record)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                if message.external_id is None:
                    raise
                existing = session.scalar(
                    select(MessageRecord).where(MessageRecord.external_id == message.external_id)
                )
                if existing is None:
                    raise
                return _message_from_record(existing)
            return _message_from_record(record)

    def get_message_by_external_id(self, external_id: str) -> Optional[schemas.Message]:
        with self._session_factory() as session:
            record = session.scalar(
                select(MessageRecord).where(MessageRecord.external_id == external_id)
            )
            return _message_from_record(record) if record else None

    def list_messages(self, conversation_id: str) -> List[schemas.Message]:
        with self._session_factory() as session:
            records = session.scalars(
                select(MessageRecord)
                .where(MessageRecord.conversation_id == conversation_id)
                .order_by(MessageRecord.created_at.asc())
            )
            return [_message_from_record(record) for record in records]

    def count_messages(self, conversation_id: str) -> int:
        with self._session_factory() as session:
            return session.scalar(
                select(func.count())
                .select_from(MessageRecord)
                .where(MessageRecord.conversation_id == conversation_id)
            ) or 0

    def list_conversations(
        self,
        company_id: str,
        status: schemas.ConversationStatus | None = None,
        limit: int = 50,
    ) -> List[schemas.Conversation]:
        query = select(ConversationRecord).where(ConversationRecord.company_id == company_id)
        if status is not None:
            query = query.where(ConversationRecord.status == status.value)
        query = query.order_by(
            ConversationRecord.last_message_at.desc().nulls_last(),
            ConversationRecord.created_at.desc(),
        ).limit(limit)
        with self._session_factory() as session:
            return [_conversation_from_record(record) for record in session.scalars(query)]


class InMemoryConversationRepository:
    def __init__(self) -> None:
        self._conversations: Dict[str, schemas.Conversation] = {}
        self._messages: Dict[str, List[schemas.Message]] = {}
        self._by_external: Dict[str, schemas.Message] = {}
        self._lock = threading.RLock()

    def get_conversation(self, conversation_id: str) -> Optional[schemas.Conversation]:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            return conversation.model_copy() if conversation else None

    def get_or_create(
        self,
        company_id: str,
        customer_phone: str,
        *,
        status: schemas.ConversationStatus,
        customer_name: str | None = None,
    ) -> Tuple[schemas.Conversation, bool]:
        with self._lock:
            for conversation in self._conversations.values():
                if (
                    conversation.company_id == company_id
                    and conversation.customer_phone == customer_phone
                ):
                    return conversation.model_copy(), False
            conversation = schemas.Conversation(
                company_id=company_id,
                customer_phone=customer_phone,
                customer_name=customer_name,
                status=status,
            )
            self._conversations[conversation.id] = conversation
            self._messages[conversation.id] = []
            return conversation.model_copy(), True

    def _require(self, conversation_id: str) -> schemas.Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    def compare_and_set_status(
        self,
        conversation_id: str,
        expected: Collection[schemas.ConversationStatus],
        new_status: schemas.ConversationStatus,
    ) -> Optional[schemas.Conversation]:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None or conversation.status not in expected:
                return None
            conversation.status = new_status
            return conversation.model_copy()

    def bind_agent(self, conversation_id: str, agent_id: str) -> schemas.Conversation:
        with self._lock:
            conversation = self._require(conversation_id)
            if conversation.agent_id is None:
                conversation.agent_id = agent_id
            return conversation.model_copy()

    def touch_inbound(self, conversation_id: str, at: datetime) -> None:
        with self._lock:
            conversation = self._require(conversation_id)
            conversation.unread_count += 1
            conversation.last_message_at = at

    def mark_read(self, conversation_id: str) -> None:
        with self._lock:
            conversation = self._require(conversation_id)
            conversation.unread_count = 0
            for message in self._messages.get(conversation_id, []):
                message.is_read = True

    def add_message(self, message: schemas.Message) -> schemas.Message:
        with self._lock:
            self._require(message.conversation_id)
            if message.external_id and message.external_id in self._by_external:
                return self._by_external[message.external_id].model_copy()
            stored = message.model_copy()
            self._messages[message.conversation_id].append(stored)
            if stored.external_id:
                self._by_external[stored.external_id] = stored
            return stored.model_copy()

    def get_message_by_external_id(self, external_id: str) -> Optional[schemas.Message]:
        with self._lock:
            message = self._by_external.get(external_id)
            return message.model_copy() if message else None

    def list_messages(self, conversation_id: str) -> List[schemas.Message]:
        with self._lock:
            return [message.model_copy() for message in self._messages.get(conversation_id, [])]

    def list_conversations(
        self,
        company_id: str,
        status: schemas.ConversationStatus | None = None,
        limit: int = 50,
    ) -> List[schemas.Conversation]:
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        with self._lock:
            items = [
                conversation.model_copy()
                for conversation in self._conversations.values()
                if conversation.company_id == company_id
                and (status is None or conversation.status == status)
            ]
        items.sort(key=lambda c: (c.last_message_at or epoch, c.created_at), reverse=True)
        return items[:limit]
