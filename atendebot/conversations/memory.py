"""Long-term memory of each customer across conversations."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from ..companies import as_utc
from ..models import CustomerMemoryRecord
from .models import ChatTurn

logger = logging.getLogger(__name__)

MAX_INTERESTS = 10
SUMMARY_PREVIEW = 200


@dataclass(frozen=True)
class CustomerMemory:
    company_id: str
    customer_phone: str
    summary: str | None = None
    interests: Tuple[str, ...] = field(default_factory=tuple)
    total_conversations: int = 0
    total_messages: int = 0
    last_contact_at: datetime | None = None


class CustomerMemoryRepository(Protocol):
    def get(self, company_id: str, customer_phone: str) -> Optional[CustomerMemory]: ...

    def save(self, memory: CustomerMemory) -> CustomerMemory: ...


class SqlCustomerMemoryRepository:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    @staticmethod
    def _find(session: Session, company_id: str, customer_phone: str) -> CustomerMemoryRecord | None:
        return session.scalar(
            select(CustomerMemoryRecord).where(
                CustomerMemoryRecord.company_id == company_id,
                CustomerMemoryRecord.customer_phone == customer_phone,
            )
        )

    def get(self, company_id: str, customer_phone: str) -> Optional[CustomerMemory]:
        with self._session_factory() as session:
            record = self._find(session, company_id, customer_phone)
            if record is None:
                return None
            return CustomerMemory(
                company_id=record.company_id,
                customer_phone=record.customer_phone,
                summary=record.summary,
                interests=tuple(record.interests or ()),
                total_conversations=record.total_conversations,
                total_messages=record.total_messages,
                last_contact_at=as_utc(record.last_contact_at),
            )

    def save(self, memory: CustomerMemory) -> CustomerMemory:
        with self._session_factory() as session:
            record = self._find(session, memory.company_id, memory.customer_phone)
            if record is None:
                record = CustomerMemoryRecord(
                    company_id=memory.company_id, customer_phone=memory.customer_phone
                )
                session.add(record)
            record.summary = memory.summary
            record.interests = list(memory.interests)
            record.total_conversations = memory.total_conversations
            record.total_messages = memory.total_messages
            record.last_contact_at = memory.last_contact_at
            session.commit()
        return memory


class InMemoryCustomerMemoryRepository:
    def __init__(self) -> None:
        self._items: Dict[Tuple[str, str], CustomerMemory] = {}
        self._lock = threading.Lock()

    def get(self, company_id: str, customer_phone: str) -> Optional[CustomerMemory]:
        return self._items.get((company_id, customer_phone))

    def save(self, memory: CustomerMemory) -> CustomerMemory:
        with self._lock:
            self._items[(memory.company_id, memory.customer_phone)] = memory
        return memory


def _relative_day(moment: datetime, now: datetime) -> str:
    days = (now - moment).days
    if days <= 0:
        return "hoje"
    if days == 1:
        return "ontem"
    if days < 7:
        return f"há {days} dias"
    if days < 30:
        return f"há {days // 7} semanas"
    return f"há {days // 30} meses"


def format_memory_for_prompt(memory: CustomerMemory | None, now: datetime | None = None) -> str:
    if memory is None:
        return ""
    current = now or datetime.now(timezone.utc)
    lines = [
        "Foque na conversa atual; use este histórico apenas se o cliente mencionar o passado.",
        f"Conversas anteriores: {memory.total_conversations}",
    ]
    if memory.last_contact_at is not None:
        lines.append(f"Último contato: {_relative_day(memory.last_contact_at, current)}")
    if memory.summary:
        preview = memory.summary[:SUMMARY_PREVIEW]
        if len(memory.summary) > SUMMARY_PREVIEW:
            preview += "..."
        lines.append(f"Resumo geral: {preview}")
    if memory.interests:
        lines.append("Interesses registrados: " + ", ".join(memory.interests[-3:]))
    return "\n".join(lines)


class CustomerMemoryService:
    """Read and refresh the per-customer memory.

    The summariser is the same callable the context assembler uses; the prior
    summary is fed in as the first turn so the new one folds it in.
    """

    def __init__(
        self,
        repository: CustomerMemoryRepository,
        summarizer: Callable[[Sequence[ChatTurn]], Optional[str]] | None = None,
    ) -> None:
        self._repository = repository
        self._summarizer = summarizer

    def get_memory(self, company_id: str, customer_phone: str) -> Optional[CustomerMemory]:
        try:
            return self._repository.get(company_id, customer_phone)
        except Exception:
            logger.exception("Failed to load customer memory for company %s", company_id)
            return None

    def prompt_block(self, company_id: str, customer_phone: str) -> str:
        return format_memory_for_prompt(self.get_memory(company_id, customer_phone))

    def _current(self, company_id: str, customer_phone: str) -> CustomerMemory:
        existing = self._repository.get(company_id, customer_phone)
        return existing or CustomerMemory(company_id=company_id, customer_phone=customer_phone)

    def update_after_reply(
        self,
        company_id: str,
        customer_phone: str,
        turns: Sequence[ChatTurn],
        *,
        new_conversation: bool = False,
    ) -> Optional[CustomerMemory]:
        try:
            memory = self._current(company_id, customer_phone)
            summary = memory.summary
            if self._summarizer is not None and len(turns) >= 2:
                seed: List[ChatTurn] = []
                if memory.summary:
                    seed.append(ChatTurn(role="assistant", content=f"[Resumo anterior] {memory.summary}"))
                summary = self._summarizer([*seed, *turns]) or memory.summary
            updated = replace(
                memory,
                summary=summary,
                total_conversations=memory.total_conversations + (1 if new_conversation else 0),
                total_messages=memory.total_messages + len(turns),
                last_contact_at=datetime.now(timezone.utc),
            )
            return self._repository.save(updated)
        except Exception:
            logger.exception("Failed to update customer memory for company %s", company_id)
            return None

    def register_interest(self, company_id: str, customer_phone: str, interest: str) -> bool:
        interest = interest.strip()
        if not interest:
            return False
        try:
            memory = self._current(company_id, customer_phone)
            interests = [item for item in memory.interests if item != interest]
            interests.append(interest)
            self._repository.save(replace(memory, interests=tuple(interests[-MAX_INTERESTS:])))
            return True
        except Exception:
            logger.exception("Failed to register interest for company %s", company_id)
            return False
