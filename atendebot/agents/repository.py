"""Persistence for agent personas, the documents they may send and their training data."""
from __future__ import annotations

import threading
from typing import Dict, List, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from ..companies import as_utc
from ..models import AgentDocumentRecord, AgentPersonaRecord, AgentTrainingDataRecord
from ..nlp import normalize_text
from . import schemas


class AgentNotFoundError(RuntimeError):
    """Raised when an agent could not be located."""


class AgentRepository(Protocol):
    """Persistence abstraction used by the selector and the worker."""

    def list_active(self, company_id: str) -> List[schemas.AgentPersona]: ...

    def get_agent(self, agent_id: str) -> Optional[schemas.AgentPersona]: ...

    def find_document(self, agent_id: str, query: str) -> Optional[schemas.AgentDocument]: ...

    def list_training_data(self, agent_id: str) -> List[schemas.TrainingData]: ...


def _persona_from_record(record: AgentPersonaRecord) -> schemas.AgentPersona:
    return schemas.AgentPersona(
        id=record.id,
        company_id=record.company_id,
        name=record.name,
        trigger_keywords=list(record.trigger_keywords or []),
        priority=record.priority,
        is_default=record.is_default,
        is_active=record.is_active,
        can_sell=record.can_sell,
        can_negotiate=record.can_negotiate,
        transfer_to_human=record.transfer_to_human,
        personality=record.personality,
        tone=record.tone,
        voice_enabled=record.voice_enabled,
        voice=record.voice,
        created_at=as_utc(record.created_at),
    )


def _match_document(
    documents: List[schemas.AgentDocument], query: str
) -> Optional[schemas.AgentDocument]:
    needle = normalize_text(query)
    if not needle:
        return documents[0] if documents else None
    for document in documents:
        if needle in normalize_text(document.title) or needle in normalize_text(document.file_name):
            return document
    return None


class SqlAgentRepository:
    """SQLAlchemy implementation of :class:`AgentRepository`."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def list_active(self, company_id: str) -> List[schemas.AgentPersona]:
        with self._session_factory() as session:
            records = session.scalars(
                select(AgentPersonaRecord)
                .where(
                    AgentPersonaRecord.company_id == company_id,
                    AgentPersonaRecord.is_active.is_(True),
                )
                .order_by(AgentPersonaRecord.created_at.asc())
            )
            return [_persona_from_record(record) for record in records]

    def get_agent(self, agent_id: str) -> Optional[schemas.AgentPersona]:
        with self._session_factory() as session:
            record = session.get(AgentPersonaRecord, agent_id)
            return _persona_from_record(record) if record else None

    def find_document(self, agent_id: str, query: str) -> Optional[schemas.AgentDocument]:
        with self._session_factory() as session:
            records = session.scalars(
                select(AgentDocumentRecord).where(AgentDocumentRecord.agent_id == agent_id)
            )
            documents = [
                schemas.AgentDocument(
                    id=record.id,
                    agent_id=record.agent_id,
                    title=record.title,
                    file_url=record.file_url,
                    file_name=record.file_name,
                )
                for record in records
            ]
        return _match_document(documents, query)

    def list_training_data(self, agent_id: str) -> List[schemas.TrainingData]:
        with self._session_factory() as session:
            records = session.scalars(
                select(AgentTrainingDataRecord)
                .where(AgentTrainingDataRecord.agent_id == agent_id)
                .order_by(AgentTrainingDataRecord.created_at.asc())
            )
            return [
                schemas.TrainingData(
                    id=record.id,
                    agent_id=record.agent_id,
                    title=record.title,
                    content=record.content,
                    created_at=as_utc(record.created_at),
                )
                for record in records
            ]


class InMemoryAgentRepository:
    def __init__(self) -> None:
        self._agents: Dict[str, schemas.AgentPersona] = {}
        self._documents: Dict[str, List[schemas.AgentDocument]] = {}
        self._training: Dict[str, List[schemas.TrainingData]] = {}
        self._lock = threading.Lock()

    def add_agent(self, persona: schemas.AgentPersona) -> schemas.AgentPersona:
        with self._lock:
            self._agents[persona.id] = persona
        return persona

    def add_document(self, document: schemas.AgentDocument) -> schemas.AgentDocument:
        with self._lock:
            self._documents.setdefault(document.agent_id, []).append(document)
        return document

    def add_training_data(self, item: schemas.TrainingData) -> schemas.TrainingData:
        with self._lock:
            self._training.setdefault(item.agent_id, []).append(item)
        return item

    def list_active(self, company_id: str) -> List[schemas.AgentPersona]:
        agents = [
            agent
            for agent in self._agents.values()
            if agent.company_id == company_id and agent.is_active
        ]
        agents.sort(key=lambda agent: agent.created_at)
        return agents

    def get_agent(self, agent_id: str) -> Optional[schemas.AgentPersona]:
        return self._agents.get(agent_id)

    def find_document(self, agent_id: str, query: str) -> Optional[schemas.AgentDocument]:
        return _match_document(list(self._documents.get(agent_id, [])), query)

    def list_training_data(self, agent_id: str) -> List[schemas.TrainingData]:
        with self._lock:
            return list(self._training.get(agent_id, []))
