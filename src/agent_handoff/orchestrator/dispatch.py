"""Dispatch gateway: the single path by which a task reaches an agent."""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from agent_handoff.orchestrator.errors import (
    AgentBusyError,
    ConflictError,
    DeliveryFailureError,
    HandoffError,
    InvalidStateTransitionError,
    Outcome,
    ValidationError,
    attempt,
)
from agent_handoff.orchestrator.hub import MessageHub
from agent_handoff.orchestrator.idle import IdleOracle
from agent_handoff.orchestrator.models import (
    TERMINAL_TASK_STATUSES,
    CompletionOutcome,
    CompletionResult,
    CreateAndDispatchResult,
    DeliveryMethod,
    DispatchKind,
    DispatchResult,
    MessagePhase,
    TaskAction,
    TaskCreate,
    TaskStatus,
    TaskView,
    extract_issue_number,
    next_task_status,
    normalize_agent_name,
)
from agent_handoff.orchestrator.notifier import LoggingNotifier, Notifier
from agent_handoff.orchestrator.prompts import build_notification, build_task_prompt
from agent_handoff.orchestrator.repository import HandoffRepository

logger = logging.getLogger(__name__)

IN_FLIGHT_TASK_STATUSES = frozenset({TaskStatus.NOTIFIED, TaskStatus.SENT})
_MAX_CANDIDATE_RETRIES = 5


def task_session_id(task_id: int) -> str:
    """Session id of the narration thread opened when a task is pushed."""

    return f"task-{task_id}"


class AgentLockRegistry:
    """One mutex per agent, shared by every gateway in the process."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def for_agent(self, agent_name: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(agent_name)
            if lock is None:
                lock = threading.Lock()
                self._locks[agent_name] = lock
            return lock

    @contextmanager
    def hold(self, agent_name: str) -> Iterator[None]:
        with self.for_agent(agent_name):
            yield


AGENT_LOCKS = AgentLockRegistry()


class DispatchGateway:
    """Hands tasks to agents while keeping at most one task in flight per agent.

    The idle read and the write that follows it run under the agent's mutex.
    The write itself is conditional on the task status, and the activity
    insert is guarded by a partial unique index, so a second process that
    slips past the mutex still cannot double-dispatch.
    """

    def __init__(  # noqa: PLR0913
        self,
        repository: HandoffRepository,
        *,
        idle: IdleOracle | None = None,
        hub: MessageHub | None = None,
        notifier: Notifier | None = None,
        locks: AgentLockRegistry = AGENT_LOCKS,
        hub_agent_name: str = "orchestrator",
    ) -> None:
        self.repository = repository
        self.idle = idle or IdleOracle(repository)
        self.hub = hub or MessageHub(repository)
        self.notifier = notifier or LoggingNotifier()
        self.locks = locks
        self.hub_agent_name = hub_agent_name

    def dispatch(
        self,
        target_agent: str,
        reference: int | str | None = None,
    ) -> Outcome[DispatchResult]:
        """Hand the next eligible task to ``target_agent`` if it is idle.

        ``reference`` narrows the choice to one issue, given either as a number
        or as an issue URL. Busy agents and empty queues are normal results,
        not errors.
        """

        return attempt(lambda: self._dispatch(target_agent, reference))

    def deliver(self, task: TaskView, *, pull: bool) -> DispatchResult:
        """Deliver one ready task for the distribution loop.

        Pull agents are only notified; push agents get a narration thread and
        the task is marked sent with an activity opened for them. Raises
        ``DeliveryFailureError`` when the operator notification fails. A pushed
        task stays sent; a pull task goes back to the ready set so the next
        tick announces it again.
        """

        agent = normalize_agent_name(task.target_agent)
        with self.locks.hold(agent):
            if not self.idle.is_idle(agent):
                return _busy(agent)
            if pull:
                delivered = self._notify(task)
            else:
                delivered = self._push(task)
        if delivered.task is not None:
            try:
                self.notifier.notify(
                    build_notification(delivered.task, pull=pull),
                    source=self.hub_agent_name,
                )
            except DeliveryFailureError:
                if pull:
                    self._withdraw_notification(delivered.task.id)
                raise
        return delivered

    def complete_and_continue(
        self,
        task_id: int,
        result: str | None,
        outcome: CompletionOutcome = CompletionOutcome.COMPLETED,
        *,
        auto_dispatch: bool = True,
    ) -> Outcome[CompletionResult]:
        """Complete a task and, after a successful one, dispatch the agent's next task."""

        def _complete() -> CompletionResult:
            task = self.repository.complete_task(task_id=task_id, result=result, outcome=outcome)
            logger.info("Task %s finished with outcome %s", task.id, outcome.value)
            thread = self.hub.find_open_start(task_session_id(task.id))
            if thread is not None:
                self.repository.append_to_thread(
                    parent_message_id=thread.id,
                    content=task.result or f"Task {task.id} {outcome.value}",
                    phase=MessagePhase.COMPLETE,
                )
            next_dispatch = None
            if auto_dispatch and outcome == CompletionOutcome.COMPLETED:
                next_dispatch = self._dispatch(task.target_agent, None)
                if next_dispatch.dispatched and next_dispatch.task is not None:
                    logger.info(
                        "Auto-dispatched task %s to %s",
                        next_dispatch.task.id,
                        next_dispatch.agent,
                    )
            return CompletionResult(task=task, next_dispatch=next_dispatch)

        return attempt(_complete)

    def create_and_dispatch(
        self,
        issue_number: int,
        *,
        summary: str | None = None,
        target_agent: str = "claude",
        issue_url: str | None = None,
    ) -> Outcome[CreateAndDispatchResult]:
        """Upsert a task by issue number and try to dispatch it right away.

        A pending or approved task is reused, a notified or sent one is left
        alone, and when only finished tasks exist (or none) a fresh ungated
        task is created. Finished tasks are never reopened.
        """

        return attempt(
            lambda: self._create_and_dispatch(
                issue_number,
                summary=summary,
                target_agent=target_agent,
                issue_url=issue_url,
            ),
        )

    def _dispatch(self, target_agent: str, reference: int | str | None) -> DispatchResult:
        agent = normalize_agent_name(target_agent)
        if not agent:
            raise ValidationError("Target agent is required")
        issue_number = _parse_reference(reference)

        with self.locks.hold(agent):
            if not self.idle.is_idle(agent):
                return _busy(agent)
            if self.repository.find_agent(agent) is None:
                return _no_pending(agent)

            for _ in range(_MAX_CANDIDATE_RETRIES):
                candidate = self.repository.select_dispatch_candidate(
                    agent_name=agent,
                    issue_number=issue_number,
                )
                if candidate is None:
                    break
                try:
                    task = self.repository.mark_task_sent(
                        task_id=candidate.id,
                        method=DeliveryMethod.DISPATCH,
                        action=TaskAction.DISPATCH,
                        open_activity=True,
                    )
                except AgentBusyError:
                    return _busy(agent)
                except (ConflictError, InvalidStateTransitionError):
                    # Candidate changed under us (cancelled, notified); pick again.
                    continue
                logger.info("Dispatched task %s to %s", task.id, agent)
                return DispatchResult(
                    kind=DispatchKind.DISPATCHED,
                    agent=agent,
                    message=f"Task {task.id} dispatched to {agent}",
                    task=task,
                    prompt=build_task_prompt(task),
                )

        if issue_number is not None:
            return DispatchResult(
                kind=DispatchKind.TASK_NOT_FOUND,
                agent=agent,
                message=f"No pending task found for issue #{issue_number}",
            )
        return _no_pending(agent)

    def _push(self, task: TaskView) -> DispatchResult:
        # The ready snapshot may be stale; nothing is written for a task that
        # left pending/approved in the meantime.
        next_task_status(TaskAction.DISPATCH, self.repository.get_task(task.id).status)
        session_id = task_session_id(task.id)
        # Reuse the thread left behind by an earlier attempt that did not commit.
        thread = self.hub.find_open_start(session_id)
        if thread is None:
            thread = self.repository.start_thread(
                source_agent=self.hub_agent_name,
                content=build_task_prompt(task),
                target_agent=task.target_agent,
                session_id=session_id,
            )
        try:
            sent = self.repository.mark_task_sent(
                task_id=task.id,
                method=DeliveryMethod.PUSH,
                action=TaskAction.DISPATCH,
                response=f"Message ID: {thread.id}",
                open_activity=True,
            )
        except HandoffError as error:
            self._withdraw_thread(task.id, thread.id)
            if isinstance(error, AgentBusyError):
                return _busy(task.target_agent)
            raise
        logger.info("Task %s sent to %s, hub message %s", sent.id, sent.target_agent, thread.id)
        return DispatchResult(
            kind=DispatchKind.DISPATCHED,
            agent=sent.target_agent,
            message=f"Task {sent.id} pushed to {sent.target_agent}",
            task=sent,
            prompt=thread.content,
        )

    def _withdraw_thread(self, task_id: int, thread_id: int) -> None:
        # Another process may have pushed the same task through this thread.
        if self.repository.get_task(task_id).status == TaskStatus.SENT:
            return
        try:
            self.repository.withdraw_thread(thread_id)
        except ConflictError as error:
            logger.warning("Task %s thread %s left open: %s", task_id, thread_id, error.message)
            return
        logger.info("Withdrew thread %s of undelivered task %s", thread_id, task_id)

    def _withdraw_notification(self, task_id: int) -> None:
        try:
            self.repository.withdraw_notification(task_id=task_id)
        except HandoffError as error:
            logger.warning("Task %s stays notified: %s", task_id, error.message)
            return
        logger.info("Task %s returned to the ready set after a failed notification", task_id)

    def _notify(self, task: TaskView) -> DispatchResult:
        notified = self.repository.transition_task(task_id=task.id, action=TaskAction.NOTIFY)
        logger.info("Task %s notified to %s (pull delivery)", notified.id, notified.target_agent)
        return DispatchResult(
            kind=DispatchKind.DISPATCHED,
            agent=notified.target_agent,
            message=f"Task {notified.id} announced to {notified.target_agent}",
            task=notified,
        )

    def _create_and_dispatch(
        self,
        issue_number: int,
        *,
        summary: str | None,
        target_agent: str,
        issue_url: str | None,
    ) -> CreateAndDispatchResult:
        agent = normalize_agent_name(target_agent)
        if self.repository.find_agent(agent) is None:
            raise ValidationError(f"Agent '{agent}' not found")

        existing = self.repository.find_tasks_by_issue(issue_number)
        live = [task for task in existing if task.status not in TERMINAL_TASK_STATUSES]
        in_flight = [task for task in live if task.status in IN_FLIGHT_TASK_STATUSES]
        if in_flight:
            task = in_flight[0]
            return CreateAndDispatchResult(
                action="in_flight",
                task=task,
                dispatch_status="in_flight",
                reason=f"Task {task.id} is already {task.status.value}",
            )

        if live:
            task = live[-1]
            action = "dispatched"
            # Reused tasks may point at a different agent; dispatch to theirs.
            agent = task.target_agent
        else:
            self.repository.resolve_agent(self.hub_agent_name)
            task = self.repository.create_task(
                source_agent=self.hub_agent_name,
                payload=TaskCreate(
                    target_agent=agent,
                    summary=summary or f"Task for issue #{issue_number}",
                    issue_url=issue_url,
                    issue_number=issue_number,
                    requires_approval=False,
                ),
            )
            action = "created"
            logger.info("Created task %s for issue #%s", task.id, issue_number)

        dispatched = self._dispatch(agent, issue_number)
        if dispatched.dispatched and dispatched.task is not None:
            return CreateAndDispatchResult(
                action=action,
                task=dispatched.task,
                dispatch_status="sent",
                dispatch=dispatched,
            )
        logger.info("Task %s queued: %s", task.id, dispatched.kind.value)
        return CreateAndDispatchResult(
            action=action,
            task=self.repository.get_task(task.id),
            dispatch_status="queued",
            reason=dispatched.kind.value,
            dispatch=dispatched,
        )


def _parse_reference(reference: int | str | None) -> int | None:
    if reference is None:
        return None
    if isinstance(reference, int):
        return reference
    text = reference.strip().lstrip("#").strip()
    if re.fullmatch(r"\d+", text):
        return int(text)
    issue_number = extract_issue_number(text)
    if issue_number is None:
        raise ValidationError(f"Cannot read an issue number from '{reference}'")
    return issue_number


def _busy(agent: str) -> DispatchResult:
    return DispatchResult(
        kind=DispatchKind.AGENT_BUSY,
        agent=agent,
        message=f"{agent} is currently working on another task",
    )


def _no_pending(agent: str) -> DispatchResult:
    return DispatchResult(
        kind=DispatchKind.NO_PENDING_TASKS,
        agent=agent,
        message=f"No pending tasks for {agent}",
    )
