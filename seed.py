"""Utility script to bootstrap the database with a demo company.

Creates the schema, the trial plan, one company bound to a WhatsApp session,
a default attendant persona, a sales persona triggered by purchase keywords
and a couple of catalog products. Running it twice is harmless.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from dotenv import load_dotenv
from sqlalchemy import select, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker

from atendebot.models import AgentPersonaRecord, CompanyRecord, PlanRecord, ProductRecord
from atendebot.models.session import create_schema, get_engine, get_sessionmaker
from atendebot.quota.tracker import TRIAL_TOKEN_LIMIT

logger = logging.getLogger("seed")

TRIAL_DAYS = 7


@dataclass(slots=True)
class SeedConfig:
    """Configuration derived from the environment for the seed process."""

    db_url: str
    company_name: str
    session_name: str
    niche: str | None


def _safe_url(db_url: str) -> str:
    """Return ``db_url`` with the password hidden for logging."""

    return make_url(db_url).render_as_string(hide_password=True)


def _load_config() -> SeedConfig:
    return SeedConfig(
        db_url=os.getenv("DATABASE_URL", "sqlite+pysqlite:///atendebot.db"),
        company_name=os.getenv("SEED_COMPANY_NAME", "Loja Demo"),
        session_name=os.getenv("SEED_SESSION_NAME", "loja-demo"),
        niche=os.getenv("SEED_COMPANY_NICHE", "moda feminina"),
    )


def wait_for_database(engine: Engine, max_attempts: int = 10, delay: float = 3.0) -> None:
    """Attempt to establish a database connection, retrying if necessary."""

    for attempt in range(1, max_attempts + 1):
        try:
            with engine.connect() as connection:
                connection.execute(text("SELECT 1"))
        except Exception as exc:  # pragma: no cover - depends on external DB
            logger.info(
                "Database not ready (attempt %d/%d): %s; retrying in %.1fs",
                attempt,
                max_attempts,
                exc,
                delay,
            )
            if attempt >= max_attempts:
                raise RuntimeError("Database did not become ready in time") from exc
            time.sleep(delay)
            continue

        logger.info("Database connection established after %d attempt(s)", attempt)
        return


def _ensure_trial_plan(session: Session) -> PlanRecord:
    plan = session.scalar(select(PlanRecord).where(PlanRecord.is_trial.is_(True)))
    if plan is None:
        plan = PlanRecord(name="Trial", max_tokens_month=TRIAL_TOKEN_LIMIT, is_trial=True)
        session.add(plan)
        session.flush()
    return plan


def provision_company(factory: sessionmaker[Session], config: SeedConfig) -> str:
    """Create the demo company (idempotent) and return its id."""

    with factory.begin() as session:
        _ensure_trial_plan(session)
        company = session.scalar(select(CompanyRecord).where(CompanyRecord.session_name == config.session_name))
        if company is not None:
            logger.info("Company already present for session %s", config.session_name)
            return company.id

        company = CompanyRecord(
            name=config.company_name,
            niche=config.niche,
            description="Loja de roupas com entrega para todo o Brasil.",
            session_name=config.session_name,
            trial_ends_at=datetime.now(timezone.utc) + timedelta(days=TRIAL_DAYS),
        )
        session.add(company)
        session.flush()
        session.add_all(
            [
                AgentPersonaRecord(
                    company_id=company.id,
                    name="Ana",
                    is_default=True,
                    personality="Simpática, objetiva e atenciosa.",
                    tone="amigável",
                ),
                AgentPersonaRecord(
                    company_id=company.id,
                    name="Bruno",
                    trigger_keywords=["comprar", "preço", "pedido", "pagamento"],
                    priority=10,
                    can_sell=True,
                    personality="Vendedor consultivo que ajuda o cliente a escolher.",
                    tone="entusiasmado",
                ),
                ProductRecord(
                    company_id=company.id,
                    name="Vestido Floral",
                    price=189.9,
                    description="Vestido midi de viscose com estampa floral.",
                    colors=["azul", "rosa"],
                ),
                ProductRecord(
                    company_id=company.id,
                    name="Camisa Linho",
                    price=149.0,
                    description="Camisa de linho manga longa.",
                    colors=["branca", "bege"],
                ),
            ]
        )
        logger.info("Created company %s for session %s", company.id, config.session_name)
        return company.id


def main() -> None:
    """Entrypoint for the seeding workflow."""

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    config = _load_config()
    logger.info("Starting seed process using %s", _safe_url(config.db_url))
    engine = get_engine(config.db_url)
    wait_for_database(engine)
    create_schema(engine)
    company_id = provision_company(get_sessionmaker(engine=engine), config)
    logger.info("Seed process completed. Company ID: %s", company_id)
    engine.dispose()


if __name__ == "__main__":
    main()
