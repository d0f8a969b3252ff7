"""Monthly token usage storage."""
from __future__ import annotations

import threading
from datetime import date, datetime, timezone
from typing import Dict, Optional, Protocol, Set, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..models import TokenUsageRecord, TokenUsageTurnRecord


def month_start(now: datetime | None = None) -> date:
    """First day of the current calendar month in UTC."""

    current = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return date(current.year, current.month, 1)


class UsageRepository(Protocol):
    def get_usage(self, company_id: str, month: date) -> int: ...

    def add_usage(
        self,
        company_id: str,
        month: date,
        input_tokens: int,
        output_tokens: int,
        turn_id: Optional[str] = None,
    ) -> bool: ...

    def usage_by_company(self, month: date) -> Dict[str, int]: ...


class SqlUsageRepository:
    """SQLAlchemy implementation of :class:`UsageRepository`.

    ``add_usage`` inserts the turn into ``token_usage_turns`` in the same
    transaction as the increment; a duplicate turn id violates the primary key
    and the whole increment is rolled back.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def get_usage(self, company_id: str, month: date) -> int:
        with self._session_factory() as session:
            record = session.scalar(
                select(TokenUsageRecord).where(
                    TokenUsageRecord.company_id == company_id,
                    TokenUsageRecord.month == month,
                )
            )
            if record is None:
                return 0
            return record.input_tokens + record.output_tokens

    def _increment(
        self, session: Session, company_id: str, month: date, input_tokens: int, output_tokens: int
    ) -> None:
        result = session.execute(
            update(TokenUsageRecord)
            .where(TokenUsageRecord.company_id == company_id, TokenUsageRecord.month == month)
            .values(
                input_tokens=TokenUsageRecord.input_tokens + input_tokens,
                output_tokens=TokenUsageRecord.output_tokens + output_tokens,
            )
        )
        if result.rowcount == 0:
            session.add(
                TokenUsageRecord(
                    company_id=company_id,
                    month=month,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                )
            )
        session.flush()

    def add_usage(
        self,
        company_id: str,
        month: date,
        input_tokens: int,
        output_tokens: int,
        turn_id: Optional[str] = None,
    ) -> bool:
        for attempt in range(2):
            session = self._session_factory()
            try:
                if turn_id is not None:
                    session.add(
                        TokenUsageTurnRecord(
                            turn_id=turn_id,
                            company_id=company_id,
                            input_tokens=input_tokens,
                            output_tokens=output_tokens,
                        )
                    )
                    try:
                        session.flush()
                    except IntegrityError:
                        session.rollback()
                        return False
                self._increment(session, company_id, month, input_tokens, output_tokens)
                session.commit()
                return True
            except IntegrityError:
                # Lost the race creating the month row; the retry takes the update path.
                session.rollback()
                if attempt == 1:
                    raise
            finally:
                session.close()
        return False

    def usage_by_company(self, month: date) -> Dict[str, int]:
        with self._session_factory() as session:
            records = session.scalars(select(TokenUsageRecord).where(TokenUsageRecord.month == month))
            return {record.company_id: record.input_tokens + record.output_tokens for record in records}


class InMemoryUsageRepository:
    def __init__(self) -> None:
        self._usage: Dict[Tuple[str, date], Tuple[int, int]] = {}
        self._turns: Set[str] = set()
        self._lock = threading.Lock()

    def get_usage(self, company_id: str, month: date) -> int:
        input_tokens, output_tokens = self._usage.get((company_id, month), (0, 0))
        return input_tokens + output_tokens

    def set_usage(self, company_id: str, month: date, total: int) -> None:
        with self._lock:
            self._usage[(company_id, month)] = (total, 0)

    def add_usage(
        self,
        company_id: str,
        month: date,
        input_tokens: int,
        output_tokens: int,
        turn_id: Optional[str] = None,
    ) -> bool:
        with self._lock:
            if turn_id is not None:
                if turn_id in self._turns:
                    return False
                self._turns.add(turn_id)
            current_in, current_out = self._usage.get((company_id, month), (0, 0))
            self._usage[(company_id, month)] = (current_in + input_tokens, current_out + output_tokens)
            return True

    def usage_by_company(self, month: date) -> Dict[str, int]:
        with self._lock:
            return {
                company_id: sum(tokens)
                for (company_id, usage_month), tokens in self._usage.items()
                if usage_month == month
            }
