"""Keyword-based routing of inbound messages to an agent persona."""
from __future__ import annotations

import logging
from typing import List, Sequence

from ..nlp import count_keyword_hits
from .repository import AgentRepository
from .schemas import AgentPersona, AgentSelection

logger = logging.getLogger(__name__)


def rank_agents(agents: Sequence[AgentPersona], message_text: str) -> List[tuple[int, AgentPersona]]:
    """Return ``(score, agent)`` pairs ordered best first.

    Order: score desc, priority desc, created_at asc, id asc. The last key
    makes the ranking total so equal inputs always produce the same winner.
    """

    scored = [(count_keyword_hits(message_text, agent.trigger_keywords), agent) for agent in agents]
    scored.sort(key=lambda item: (-item[0], -item[1].priority, item[1].created_at, item[1].id))
    return scored


def choose_agent(agents: Sequence[AgentPersona], message_text: str) -> AgentSelection:
    """Pure selection over an already loaded list of active personas."""

    if not agents:
        return AgentSelection(agent=None, reason="no_agents")
    if len(agents) == 1:
        return AgentSelection(agent=agents[0], reason="single_agent")

    ranked = rank_agents(agents, message_text or "")
    top_score, top_agent = ranked[0]
    if top_score > 0:
        return AgentSelection(agent=top_agent, reason=f"keyword_match:{top_score}")

    defaults = sorted(
        (agent for agent in agents if agent.is_default),
        key=lambda agent: (agent.created_at, agent.id),
    )
    if defaults:
        return AgentSelection(agent=defaults[0], reason="default")

    by_priority = sorted(agents, key=lambda agent: (-agent.priority, agent.created_at, agent.id))
    return AgentSelection(agent=by_priority[0], reason="priority")


class AgentSelector:
    """Pick the persona that should answer a conversation with no bound agent."""

    def __init__(self, repository: AgentRepository) -> None:
        self._repository = repository

    def select_best_agent(self, company_id: str, message_text: str) -> AgentSelection:
        try:
            agents = self._repository.list_active(company_id)
        except Exception:
            logger.exception("Failed to load agents for company %s", company_id)
            return AgentSelection(agent=None, reason="error")

        selection = choose_agent(agents, message_text)
        if selection.agent is not None:
            logger.info(
                "Agent %s selected for company %s (%s)",
                selection.agent.id,
                company_id,
                selection.reason,
            )
        else:
            logger.debug("No agent selected for company %s (%s)", company_id, selection.reason)
        return selection
