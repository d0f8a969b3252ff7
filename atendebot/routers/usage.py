"""Token usage overview and administrative limit overrides."""

from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from .. import audit as audit_actions
from ..audit import AuditEvent, audit
from .deps import ApiServices, get_services, get_user_email, require_company

router = APIRouter(tags=["usage"])


class TokenLimitUpdate(BaseModel):
    monthly_token_limit: int = Field(ge=0)


@router.get("/api/companies/{company_id}/token-usage")
def company_usage(company_id: str, services: ApiServices = Depends(get_services)) -> dict[str, Any]:
    require_company(services, company_id)
    return asdict(services.quota.check_token_limit(company_id))


@router.put("/api/companies/{company_id}/token-limit")
def update_token_limit(
    company_id: str,
    payload: TokenLimitUpdate,
    services: ApiServices = Depends(get_services),
    user_email: str | None = Depends(get_user_email),
) -> dict[str, Any]:
    """Set the monthly override; ``0`` removes it so the plan allotment applies."""

    require_company(services, company_id)
    if not services.quota.update_company_token_limit(company_id, payload.monthly_token_limit):
        raise HTTPException(status_code=500, detail="Could not update the token limit")
    audit(
        services.audit_sink,
        AuditEvent(
            action=audit_actions.TOKEN_LIMIT_UPDATED,
            entity="Company",
            entity_id=company_id,
            company_id=company_id,
            user_email=user_email,
            details={"monthlyTokenLimit": payload.monthly_token_limit},
        ),
    )
    return asdict(services.quota.check_token_limit(company_id))


@router.get("/api/admin/token-usage")
def all_usage(services: ApiServices = Depends(get_services)) -> list[dict[str, Any]]:
    return [asdict(status) for status in services.quota.get_all_companies_usage()]
