"""Recovery of activities left in progress by a crashed or restarted host."""

from __future__ import annotations

import logging

from agent_handoff.orchestrator.errors import DeliveryFailureError, Outcome, attempt
from agent_handoff.orchestrator.models import ActivityView, OrphanedTaskView
from agent_handoff.orchestrator.notifier import LoggingNotifier, Notifier
from agent_handoff.orchestrator.repository import HandoffRepository

logger = logging.getLogger(__name__)


class OrphanRecovery:
    """Finds orphaned activities and applies the resolution a human picked.

    Nothing here runs automatically except the startup report; resolution is
    always an explicit call.
    """

    def __init__(
        self,
        repository: HandoffRepository,
        *,
        notifier: Notifier | None = None,
        source_name: str = "orchestrator",
    ) -> None:
        self.repository = repository
        self.notifier = notifier or LoggingNotifier()
        self.source_name = source_name

    def find_orphaned(self) -> list[OrphanedTaskView]:
        return self.repository.list_orphaned_activities()

    def mark_completed(self, activity_id: int) -> Outcome[ActivityView]:
        """Close the activity; the linked task keeps its status."""

        return self._resolve(activity_id, reset_task=False, resolution="completed")

    def reset(self, activity_id: int) -> Outcome[ActivityView]:
        """Close the activity and return its task to ``pending`` for redelivery."""

        return self._resolve(activity_id, reset_task=True, resolution="reset")

    def ignore(self, activity_id: int) -> Outcome[ActivityView]:
        return self._resolve(activity_id, reset_task=False, resolution="ignored")

    def report_on_startup(self) -> list[OrphanedTaskView]:
        orphans = self.find_orphaned()
        if not orphans:
            return orphans

        for orphan in orphans:
            logger.warning(
                "Orphaned activity %s: agent=%s task=%s issue=%s started_at=%s",
                orphan.activity_id,
                orphan.agent_name,
                orphan.task_id,
                orphan.issue_number,
                orphan.started_at.isoformat(),
            )
        try:
            self.notifier.notify(_summary_text(orphans), source=self.source_name)
        except DeliveryFailureError as error:
            logger.warning("Could not send orphan report: %s", error.message)
        return orphans

    def _resolve(
        self,
        activity_id: int,
        *,
        reset_task: bool,
        resolution: str,
    ) -> Outcome[ActivityView]:
        outcome = attempt(
            lambda: self.repository.resolve_orphan(
                activity_id=activity_id,
                reset_task=reset_task,
            ),
        )
        if outcome.ok and outcome.value is not None:
            logger.info(
                "Orphaned activity %s %s (task=%s)",
                activity_id,
                resolution,
                outcome.value.task_id,
            )
        return outcome


def _summary_text(orphans: list[OrphanedTaskView]) -> str:
    if len(orphans) == 1:
        orphan = orphans[0]
        subject = (
            f"issue #{orphan.issue_number}"
            if orphan.issue_number is not None
            else f"activity {orphan.activity_id}"
        )
        return f"Found an unfinished task for {orphan.agent_name}: {subject}."
    agents = sorted({orphan.agent_name for orphan in orphans})
    return f"Found {len(orphans)} unfinished tasks ({', '.join(agents)})."
