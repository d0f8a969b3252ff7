"""Agent personas: storage, routing and prompt assembly."""

from .repository import AgentNotFoundError, InMemoryAgentRepository, SqlAgentRepository
from .schemas import AgentDocument, AgentPersona, AgentSelection, TrainingData
from .selector import AgentSelector

__all__ = [
    "AgentDocument",
    "AgentNotFoundError",
    "AgentPersona",
    "AgentSelection",
    "AgentSelector",
    "InMemoryAgentRepository",
    "SqlAgentRepository",
    "TrainingData",
]
