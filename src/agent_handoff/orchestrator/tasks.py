"""Task queue: task lifecycle and ready-set selection."""

from __future__ import annotations

import logging

from agent_handoff.orchestrator.errors import ErrorKind, Outcome, attempt
from agent_handoff.orchestrator.idle import IdleOracle
from agent_handoff.orchestrator.models import (
    AcceptedTask,
    CompletionOutcome,
    DeliveryMethod,
    DeliveryView,
    TaskAction,
    TaskCreate,
    TaskStatus,
    TaskView,
)
from agent_handoff.orchestrator.prompts import build_task_prompt
from agent_handoff.orchestrator.repository import HandoffRepository

logger = logging.getLogger(__name__)

_RACE_KINDS = frozenset({ErrorKind.CONFLICT, ErrorKind.INVALID_STATE_TRANSITION})


class TaskQueue:
    """Lifecycle operations on tasks.

    ``pending -> approved -> notified -> sent -> completed``, with
    ``cancelled`` reachable from ``pending``, ``approved`` and ``notified``.
    Pull agents receive a task through ``mark_notified`` + ``accept``; push
    agents through ``mark_sent``.
    """

    def __init__(self, repository: HandoffRepository, *, idle: IdleOracle | None = None) -> None:
        self.repository = repository
        self.idle = idle or IdleOracle(repository)

    def create(self, source_agent: str, request: TaskCreate) -> Outcome[TaskView]:
        outcome = attempt(
            lambda: self.repository.create_task(source_agent=source_agent, payload=request),
        )
        if outcome.ok and outcome.value is not None:
            task = outcome.value
            logger.info(
                "Task %s created: %s -> %s (issue=%s, approval=%s)",
                task.id,
                task.created_by_agent,
                task.target_agent,
                task.issue_number,
                task.requires_approval,
            )
        return outcome

    def approve(self, task_id: int) -> Outcome[TaskView]:
        return self._transition(task_id, TaskAction.APPROVE)

    def cancel(self, task_id: int) -> Outcome[TaskView]:
        return self._transition(task_id, TaskAction.CANCEL)

    def mark_notified(self, task_id: int) -> Outcome[TaskView]:
        return self._transition(task_id, TaskAction.NOTIFY)

    def accept(self, task_id: int) -> Outcome[AcceptedTask]:
        """Hand a notified task to its pull agent and return the prompt."""

        def _accept() -> AcceptedTask:
            task = self.repository.mark_task_sent(
                task_id=task_id,
                method=DeliveryMethod.PULL,
                action=TaskAction.ACCEPT,
            )
            logger.info("Task %s accepted by %s", task.id, task.target_agent)
            return AcceptedTask(task=task, prompt=build_task_prompt(task))

        return attempt(_accept)

    def mark_sent(
        self,
        task_id: int,
        method: DeliveryMethod,
        response: str | None = None,
    ) -> Outcome[TaskView]:
        return attempt(
            lambda: self.repository.mark_task_sent(
                task_id=task_id,
                method=method,
                response=response,
            ),
        )

    def complete(
        self,
        task_id: int,
        result: str | None,
        outcome: CompletionOutcome = CompletionOutcome.COMPLETED,
    ) -> Outcome[TaskView]:
        completed = attempt(
            lambda: self.repository.complete_task(task_id=task_id, result=result, outcome=outcome),
        )
        if completed.ok:
            logger.info("Task %s finished with outcome %s", task_id, outcome.value)
        return completed

    def fetch_next(self, agent_name: str) -> Outcome[AcceptedTask | None]:
        """Accept the oldest notified task of ``agent_name``; ``None`` when there is none."""

        for task in self.repository.list_tasks_for_agent(
            agent_name=agent_name,
            status=TaskStatus.NOTIFIED,
        ):
            accepted = self.accept(task.id)
            if accepted.error is None:
                return Outcome.success(accepted.value)
            # Taken by a concurrent caller; try the next one.
            if accepted.error.kind not in _RACE_KINDS:
                return Outcome.failure(accepted.error)
        return Outcome.success(None)

    def get_ready_to_send(self) -> list[TaskView]:
        """Tasks that may be delivered now: ungated or approved, with an idle target."""

        ready = self.repository.list_ready_tasks()
        return [task for task in ready if self.idle.is_idle(task.target_agent)]

    def is_agent_idle(self, agent_name: str) -> bool:
        return self.idle.is_idle(agent_name)

    def get(self, task_id: int) -> Outcome[TaskView]:
        return attempt(lambda: self.repository.get_task(task_id))

    def get_all(self, *, limit: int = 100) -> list[TaskView]:
        return self.repository.list_tasks(limit=limit)

    def get_pending(self, agent_name: str) -> list[TaskView]:
        """Tasks already handed to the agent and not yet completed."""

        return self.repository.list_tasks_for_agent(agent_name=agent_name, status=TaskStatus.SENT)

    def get_notified(self, agent_name: str) -> list[TaskView]:
        return self.repository.list_tasks_for_agent(
            agent_name=agent_name,
            status=TaskStatus.NOTIFIED,
        )

    def get_awaiting_approval(self) -> list[TaskView]:
        return self.repository.list_tasks_awaiting_approval()

    def find_by_issue(self, issue_number: int) -> list[TaskView]:
        return self.repository.find_tasks_by_issue(issue_number)

    def get_deliveries(self, task_id: int) -> Outcome[list[DeliveryView]]:
        return attempt(lambda: self.repository.list_deliveries(task_id))

    def _transition(self, task_id: int, action: TaskAction) -> Outcome[TaskView]:
        outcome = attempt(
            lambda: self.repository.transition_task(task_id=task_id, action=action),
        )
        if outcome.ok and outcome.value is not None:
            logger.info("Task %s -> %s", task_id, outcome.value.status.value)
        return outcome
