"""Company context and billing read model.

``CompanyContext`` is the explicit value threaded through the pipeline instead
of any ambient "current company" state. ``CompanyBilling`` is the read model
the quota tracker needs to decide which monthly allotment applies.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from .models import CompanyRecord, PlanRecord, SubscriptionRecord


class CompanyNotFoundError(RuntimeError):
    """Raised when a company id does not exist."""


class UnknownSessionError(RuntimeError):
    """Raised when an inbound job names a channel session no company owns."""


def as_utc(value: datetime | None) -> datetime | None:
    """Return ``value`` as an aware UTC datetime (SQLite drops the offset)."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class CompanyContext:
    id: str
    name: str
    session_name: str
    niche: str | None = None
    description: str | None = None
    ai_enabled: bool = True


@dataclass(frozen=True)
class CompanyBilling:
    """Everything needed to resolve a company's monthly token allotment.

    ``plan_max_tokens`` of ``-1`` means unlimited; ``monthly_token_limit`` of
    ``None`` or ``0`` means no administrative override was set.
    """

    company_id: str
    trial_ends_at: datetime | None = None
    monthly_token_limit: int | None = None
    subscription_status: str | None = None
    current_period_end: datetime | None = None
    plan_max_tokens: int | None = None

    def has_active_subscription(self, now: datetime) -> bool:
        if self.subscription_status != "ACTIVE":
            return False
        period_end = as_utc(self.current_period_end)
        return period_end is None or period_end > now

    def is_trial_active(self, now: datetime) -> bool:
        trial_end = as_utc(self.trial_ends_at)
        return trial_end is not None and trial_end > now


class CompanyRepository(Protocol):
    """Persistence abstraction for companies and their billing data."""

    def get_company(self, company_id: str) -> Optional[CompanyContext]: ...

    def get_by_session(self, session_name: str) -> Optional[CompanyContext]: ...

    def list_companies(self) -> List[CompanyContext]: ...

    def get_billing(self, company_id: str) -> Optional[CompanyBilling]: ...

    def get_trial_plan_limit(self) -> Optional[int]: ...

    def set_token_limit(self, company_id: str, new_limit: int) -> None: ...


def _context_from_record(record: CompanyRecord) -> CompanyContext:
    return CompanyContext(
        id=record.id,
        name=record.name,
        session_name=record.session_name,
        niche=record.niche,
        description=record.description,
        ai_enabled=record.ai_enabled,
    )


class SqlCompanyRepository:
    """SQLAlchemy implementation of :class:`CompanyRepository`."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def get_company(self, company_id: str) -> Optional[CompanyContext]:
        with self._session_factory() as session:
            record = session.get(CompanyRecord, company_id)
            return _context_from_record(record) if record else None

    def get_by_session(self, session_name: str) -> Optional[CompanyContext]:
        with self._session_factory() as session:
            record = session.scalar(
                select(CompanyRecord).where(CompanyRecord.session_name == session_name)
            )
            return _context_from_record(record) if record else None

    def list_companies(self) -> List[CompanyContext]:
        with self._session_factory() as session:
            records = session.scalars(select(CompanyRecord).order_by(CompanyRecord.name))
            return [_context_from_record(record) for record in records]

    def get_billing(self, company_id: str) -> Optional[CompanyBilling]:
        with self._session_factory() as session:
            company = session.get(CompanyRecord, company_id)
            if company is None:
                return None
            row = session.execute(
                select(SubscriptionRecord, PlanRecord)
                .join(PlanRecord, PlanRecord.id == SubscriptionRecord.plan_id)
                .where(SubscriptionRecord.company_id == company_id)
            ).first()
            subscription, plan = (row[0], row[1]) if row else (None, None)
            return CompanyBilling(
                company_id=company.id,
                trial_ends_at=company.trial_ends_at,
                monthly_token_limit=company.monthly_token_limit,
                subscription_status=subscription.status if subscription else None,
                current_period_end=subscription.current_period_end if subscription else None,
                plan_max_tokens=plan.max_tokens_month if plan else None,
            )

    def get_trial_plan_limit(self) -> Optional[int]:
        with self._session_factory() as session:
            return session.scalar(
                select(PlanRecord.max_tokens_month).where(PlanRecord.is_trial.is_(True)).limit(1)
            )

    def set_token_limit(self, company_id: str, new_limit: int) -> None:
        with self._session_factory.begin() as session:
            record = session.get(CompanyRecord, company_id)
            if record is None:
                raise CompanyNotFoundError(f"Company {company_id} not found")
            record.monthly_token_limit = new_limit


class InMemoryCompanyRepository:
    """Simple in-memory repository used for tests and local development."""

    def __init__(self, trial_plan_limit: int | None = None) -> None:
        self._companies: Dict[str, CompanyContext] = {}
        self._billing: Dict[str, CompanyBilling] = {}
        self._trial_plan_limit = trial_plan_limit
        self._lock = threading.Lock()

    def add_company(
        self, company: CompanyContext, billing: CompanyBilling | None = None
    ) -> CompanyContext:
        with self._lock:
            self._companies[company.id] = company
            self._billing[company.id] = billing or CompanyBilling(company_id=company.id)
        return company

    def get_company(self, company_id: str) -> Optional[CompanyContext]:
        return self._companies.get(company_id)

    def get_by_session(self, session_name: str) -> Optional[CompanyContext]:
        for company in self._companies.values():
            if company.session_name == session_name:
                return company
        return None

    def list_companies(self) -> List[CompanyContext]:
        return sorted(self._companies.values(), key=lambda company: company.name)

    def get_billing(self, company_id: str) -> Optional[CompanyBilling]:
        return self._billing.get(company_id)

    def get_trial_plan_limit(self) -> Optional[int]:
        return self._trial_plan_limit

    def set_token_limit(self, company_id: str, new_limit: int) -> None:
        with self._lock:
            billing = self._billing.get(company_id)
            if billing is None:
                raise CompanyNotFoundError(f"Company {company_id} not found")
            self._billing[company_id] = replace(billing, monthly_token_limit=new_limit)
