"""Monthly token quota enforcement.

Limit resolution, in order:

1. An active subscription uses the company's administrative override when it
   is positive, otherwise the plan allotment (``-1`` is unlimited).
2. Without an active subscription but inside the trial, the override wins,
   then the trial plan stored in the database, then ``TRIAL_TOKEN_LIMIT``.
3. Anything else (lapsed trial, no trial and no subscription) is blocked
   without reading usage.

Billing is fail-closed: an unknown company or a storage error reports the
limit as reached.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from ..companies import CompanyRepository
from .cache import UsageCache
from .repository import UsageRepository, month_start

logger = logging.getLogger(__name__)

TRIAL_TOKEN_LIMIT = 75_000
UNLIMITED = -1
WARNING_PERCENT = 90.0

LIMIT_REACHED_MESSAGE = (
    "Desculpe, não posso responder no momento. Por favor, entre em contato "
    "pelo telefone ou aguarde o próximo período. 📱"
)


@dataclass(frozen=True)
class TokenUsageStatus:
    company_id: str
    current_usage: int
    monthly_limit: int
    percent_used: float
    is_limit_reached: bool
    remaining_tokens: int
    upgrade_required: bool
    upgrade_message: str | None = None


@dataclass(frozen=True)
class UsageRegistration:
    registered: bool
    limit_reached: bool
    warning: str | None = None


def _blocked(company_id: str, message: str) -> TokenUsageStatus:
    return TokenUsageStatus(
        company_id=company_id,
        current_usage=0,
        monthly_limit=0,
        percent_used=100.0,
        is_limit_reached=True,
        remaining_tokens=0,
        upgrade_required=True,
        upgrade_message=message,
    )


def build_status(company_id: str, current_usage: int, monthly_limit: int) -> TokenUsageStatus:
    if monthly_limit == UNLIMITED:
        return TokenUsageStatus(
            company_id=company_id,
            current_usage=current_usage,
            monthly_limit=UNLIMITED,
            percent_used=0.0,
            is_limit_reached=False,
            remaining_tokens=UNLIMITED,
            upgrade_required=False,
        )
    reached = current_usage >= monthly_limit
    percent = (current_usage / monthly_limit) * 100 if monthly_limit > 0 else 100.0
    message = None
    if reached:
        message = "Limite de tokens do mês atingido. Faça upgrade do plano para continuar."
    elif percent >= 80:
        message = f"Atenção: {percent:.0f}% do limite de tokens usado."
    return TokenUsageStatus(
        company_id=company_id,
        current_usage=current_usage,
        monthly_limit=monthly_limit,
        percent_used=round(percent, 2),
        is_limit_reached=reached,
        remaining_tokens=max(0, monthly_limit - current_usage),
        upgrade_required=reached,
        upgrade_message=message,
    )


class UsageQuotaTracker:
    def __init__(
        self,
        companies: CompanyRepository,
        usage: UsageRepository,
        cache: UsageCache | None = None,
        *,
        trial_token_limit: int = TRIAL_TOKEN_LIMIT,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._companies = companies
        self._usage = usage
        self._cache: UsageCache = cache if cache is not None else UsageCache()
        self._trial_token_limit = trial_token_limit
        self._clock = clock

    def _current_usage(self, company_id: str, now: datetime) -> int:
        month = month_start(now)
        return self._cache.get_or_load(
            (company_id, month), lambda: self._usage.get_usage(company_id, month)
        )

    def _resolve_limit(self, billing, now: datetime) -> Optional[int]:
        override = billing.monthly_token_limit
        if billing.has_active_subscription(now):
            if override and override > 0:
                return override
            if billing.plan_max_tokens is not None:
                return billing.plan_max_tokens
            return self._trial_token_limit
        if billing.is_trial_active(now):
            if override and override > 0:
                return override
            return self._companies.get_trial_plan_limit() or self._trial_token_limit
        return None

    def check_token_limit(self, company_id: str) -> TokenUsageStatus:
        now = self._clock()
        try:
            billing = self._companies.get_billing(company_id)
            if billing is None:
                logger.error("Token limit check for unknown company %s", company_id)
                return _blocked(company_id, "Empresa não encontrada.")
            limit = self._resolve_limit(billing, now)
            if limit is None:
                return _blocked(
                    company_id,
                    "Seu período de teste expirou. Assine um plano para continuar atendendo.",
                )
            return build_status(company_id, self._current_usage(company_id, now), limit)
        except Exception:
            logger.exception("Error checking token limit for company %s", company_id)
            return _blocked(company_id, "Erro ao verificar limite. Entre em contato com o suporte.")

    def register_token_usage(
        self,
        company_id: str,
        input_tokens: int,
        output_tokens: int,
        turn_id: str | None = None,
    ) -> UsageRegistration:
        now = self._clock()
        month = month_start(now)
        try:
            added = self._usage.add_usage(
                company_id, month, max(0, input_tokens), max(0, output_tokens), turn_id=turn_id
            )
        except Exception:
            logger.exception("Error registering token usage for company %s", company_id)
            return UsageRegistration(registered=False, limit_reached=False)
        finally:
            self._cache.invalidate((company_id, month))

        if not added:
            logger.info("Turn %s already counted for company %s", turn_id, company_id)

        status = self.check_token_limit(company_id)
        warning = None
        if status.monthly_limit != UNLIMITED and status.percent_used >= WARNING_PERCENT:
            warning = f"Atenção: {status.percent_used:.1f}% do limite de tokens usado"
        logger.debug(
            "Token usage registered for company %s: +%d (total %d, %.1f%%)",
            company_id,
            input_tokens + output_tokens,
            status.current_usage,
            status.percent_used,
        )
        return UsageRegistration(registered=added, limit_reached=status.is_limit_reached, warning=warning)

    def update_company_token_limit(self, company_id: str, new_limit: int) -> bool:
        try:
            self._companies.set_token_limit(company_id, new_limit)
        except Exception:
            logger.exception("Error updating token limit for company %s", company_id)
            return False
        self._cache.invalidate((company_id, month_start(self._clock())))
        logger.info("Company %s token limit updated to %d", company_id, new_limit)
        return True

    def get_all_companies_usage(self) -> List[TokenUsageStatus]:
        """Usage overview for operators; companies without access appear as blocked."""

        try:
            companies = self._companies.list_companies()
        except Exception:
            logger.exception("Error listing companies for usage overview")
            return []
        return [self.check_token_limit(company.id) for company in companies]

    @staticmethod
    def get_limit_reached_message() -> str:
        return LIMIT_REACHED_MESSAGE
