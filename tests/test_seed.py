"""Tests for the seeding helpers."""

from __future__ import annotations

import pytest
from sqlalchemy import func, select

from atendebot.agents.repository import SqlAgentRepository
from atendebot.agents.selector import AgentSelector
from atendebot.catalog import SqlCatalogRepository
from atendebot.companies import SqlCompanyRepository
from atendebot.models import CompanyRecord, PlanRecord
from atendebot.quota.repository import SqlUsageRepository
from atendebot.quota.tracker import TRIAL_TOKEN_LIMIT, UsageQuotaTracker
from seed import SeedConfig, _safe_url, provision_company, wait_for_database


@pytest.fixture
def config() -> SeedConfig:
    return SeedConfig(
        db_url="sqlite+pysqlite:///:memory:",
        company_name="Loja Teste",
        session_name="loja-teste",
        niche="moda",
    )


def test_provision_company_is_idempotent(session_factory, config):
    first = provision_company(session_factory, config)
    second = provision_company(session_factory, config)

    assert first == second
    with session_factory() as session:
        assert session.scalar(select(func.count()).select_from(CompanyRecord)) == 1
        assert session.scalar(select(func.count()).select_from(PlanRecord)) == 1


def test_seeded_company_is_ready_for_the_pipeline(session_factory, config):
    company_id = provision_company(session_factory, config)

    companies = SqlCompanyRepository(session_factory)
    assert companies.get_by_session("loja-teste").id == company_id

    status = UsageQuotaTracker(companies, SqlUsageRepository(session_factory)).check_token_limit(company_id)
    assert status.monthly_limit == TRIAL_TOKEN_LIMIT
    assert status.is_limit_reached is False

    selector = AgentSelector(SqlAgentRepository(session_factory))
    assert selector.select_best_agent(company_id, "quero comprar").agent.name == "Bruno"
    assert selector.select_best_agent(company_id, "bom dia").agent.name == "Ana"

    products = SqlCatalogRepository(session_factory).search_products(company_id, "vestido")
    assert [product.name for product in products] == ["Vestido Floral"]


def test_safe_url_hides_password():
    rendered = _safe_url("postgresql+psycopg://bot:s3cr3t@db:5432/atendebot")

    assert "s3cr3t" not in rendered
    assert "***" in rendered


class _Connection:
    def __enter__(self) -> "_Connection":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        return None

    def execute(self, statement) -> None:
        return None


class _Engine:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.attempts = 0

    def connect(self) -> _Connection:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ConnectionError("database starting up")
        return _Connection()


def test_wait_for_database_retries_until_ready():
    engine = _Engine(failures=2)

    wait_for_database(engine, max_attempts=3, delay=0.0)

    assert engine.attempts == 3


def test_wait_for_database_raises_after_attempts():
    engine = _Engine(failures=5)

    with pytest.raises(RuntimeError, match="Database did not become ready in time"):
        wait_for_database(engine, max_attempts=2, delay=0.0)

    assert engine.attempts == 2
