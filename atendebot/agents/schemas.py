"""Pydantic schemas for AI agent personas."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import uuid4

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AgentPersona(BaseModel):
    """A configured AI persona a company can route conversations to."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    company_id: str
    name: str
    trigger_keywords: list[str] = Field(default_factory=list)
    priority: int = 0
    is_default: bool = False
    is_active: bool = True
    can_sell: bool = False
    can_negotiate: bool = False
    transfer_to_human: bool = True
    personality: str | None = None
    tone: str | None = None
    voice_enabled: bool = False
    voice: str | None = None
    created_at: datetime = Field(default_factory=_now)


class AgentDocument(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    agent_id: str
    title: str
    file_url: str
    file_name: str


@dataclass(frozen=True)
class AgentSelection:
    """Outcome of persona routing.

    ``reason`` is one of ``keyword_match:<score>``, ``default``, ``priority``,
    ``single_agent``, ``no_agents`` or ``error``.
    """

    agent: AgentPersona | None
    reason: str


class TrainingData(BaseModel):
    """A piece of company knowledge an agent was trained on (FAQ, policy, price list)."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    agent_id: str
    title: str
    content: str
    created_at: datetime = Field(default_factory=_now)
