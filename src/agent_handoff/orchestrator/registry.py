"""Agent registry: name resolution with lazy registration."""

from __future__ import annotations

from agent_handoff.orchestrator.errors import Outcome, attempt
from agent_handoff.orchestrator.models import AgentView
from agent_handoff.orchestrator.repository import HandoffRepository


class AgentRegistry:
    def __init__(self, repository: HandoffRepository) -> None:
        self.repository = repository

    def resolve(self, name: str) -> Outcome[AgentView]:
        """Active agent by case-insensitive name, created as ``agent:<name>`` if unknown."""

        return attempt(lambda: self.repository.resolve_agent(name))

    def find(self, name: str) -> AgentView | None:
        return self.repository.find_agent(name)

    def list_agents(self) -> list[AgentView]:
        return self.repository.list_agents()

    def deactivate(self, name: str) -> Outcome[AgentView]:
        return attempt(lambda: self.repository.set_agent_active(name, active=False))

    def activate(self, name: str) -> Outcome[AgentView]:
        return attempt(lambda: self.repository.set_agent_active(name, active=True))
