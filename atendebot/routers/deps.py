"""Shared dependencies for the HTTP routers."""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Header, HTTPException, Request

from ..audit import AuditSink
from ..channels.base import ChannelAdapter
from ..companies import CompanyContext, CompanyRepository
from ..conversations.repository import ConversationRepository
from ..conversations.state import ConversationStateMachine
from ..notifications import Notifier
from ..queue import JobQueue
from ..quota.tracker import UsageQuotaTracker


@dataclass
class ApiServices:
    companies: CompanyRepository
    conversations: ConversationRepository
    state_machine: ConversationStateMachine
    queue: JobQueue
    channel: ChannelAdapter
    quota: UsageQuotaTracker
    notifier: Notifier | None = None
    audit_sink: AuditSink | None = None


def get_services(request: Request) -> ApiServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=500, detail="Services not configured")
    return services


def get_user_email(x_user_email: str | None = Header(default=None)) -> str | None:
    """Operator identity; authentication happens in front of this API."""

    return x_user_email.strip() if x_user_email and x_user_email.strip() else None


def require_company(services: ApiServices, company_id: str) -> CompanyContext:
    company = services.companies.get_company(company_id)
    if company is None:
        raise HTTPException(status_code=404, detail=f"Company {company_id} not found")
    return company
