"""Idle detection from activity records."""

from __future__ import annotations

import logging

from agent_handoff.orchestrator.errors import Outcome, attempt
from agent_handoff.orchestrator.models import ActivityStatus, ActivityView
from agent_handoff.orchestrator.repository import HandoffRepository

logger = logging.getLogger(__name__)


class IdleOracle:
    """Answers "is this agent free?" from its most recent activity record.

    Nothing is cached: every dispatch decision reads the store again.
    """

    def __init__(self, repository: HandoffRepository) -> None:
        self.repository = repository

    def is_idle(self, agent_name: str) -> bool:
        latest = self.repository.latest_activity(agent_name)
        if latest is None:
            return True
        return latest.status == ActivityStatus.COMPLETED

    def record_start(self, agent_name: str, *, task_id: int | None = None) -> Outcome[ActivityView]:
        """Open an in-progress activity for an agent started outside the dispatcher."""

        outcome = attempt(
            lambda: self.repository.start_activity(agent_name=agent_name, task_id=task_id),
        )
        if outcome.ok and outcome.value is not None:
            logger.info("Activity %s started for %s", outcome.value.id, outcome.value.agent_name)
        return outcome

    def record_completion(self, activity_id: int) -> Outcome[ActivityView]:
        return attempt(lambda: self.repository.complete_activity(activity_id))

    def finish_agent(self, agent_name: str) -> ActivityView | None:
        """Close the agent's in-progress activity; ``None`` when it was already idle."""

        finished = self.repository.finish_agent_activity(agent_name)
        if finished is not None:
            logger.info("Activity %s finished for %s", finished.id, finished.agent_name)
        return finished

    def get_activity(self, activity_id: int) -> Outcome[ActivityView]:
        return attempt(lambda: self.repository.get_activity(activity_id))
