"""Persistent hand-off repository backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import and_, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, col, select

from agent_handoff.orchestrator.errors import (
    AgentBusyError,
    ConflictError,
    InvalidStateTransitionError,
    NotFoundError,
    StorageUnavailableError,
    ValidationError,
)
from agent_handoff.orchestrator.models import (
    DISPATCHABLE_TASK_STATUSES,
    ActivityStatus,
    ActivityView,
    AgentView,
    CompletionOutcome,
    DeliveryMethod,
    DeliveryView,
    MessageAction,
    MessageCreate,
    MessagePhase,
    MessageStatus,
    MessageView,
    OrphanedTaskView,
    TaskAction,
    TaskCreate,
    TaskStatus,
    TaskView,
    extract_issue_number,
    next_message_status,
    next_task_status,
    normalize_agent_name,
)
from agent_handoff.storage.alembic_runner import upgrade_head
from agent_handoff.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_handoff.storage.sqlmodel_models import (
    Agent,
    AgentActivity,
    AgentMessage,
    AgentTask,
    TaskDelivery,
)

logger = logging.getLogger(__name__)

THREAD_MESSAGE_TYPES = {
    MessagePhase.START: "task_start",
    MessagePhase.PROGRESS: "task_progress",
    MessagePhase.COMPLETE: "task_complete",
}

_RESULT_PREFIXES = {
    CompletionOutcome.FAILED: "[FAILED]",
    CompletionOutcome.BLOCKED: "[BLOCKED]",
}


class HandoffRepository:
    """Agents, messages, tasks and activities persisted in one SQLite file.

    Every status change is a compare-and-swap: the row is read, the transition
    is validated against the explicit tables in ``models``, and the UPDATE is
    conditioned on the status that was read. A lost race surfaces as
    ``ConflictError`` and leaves nothing written.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.sqlite_busy_timeout_ms = sqlite_busy_timeout_ms
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except OperationalError as error:
            raise StorageUnavailableError(f"SQLite store unavailable: {error}") from error

    # -- agents ----------------------------------------------------------------

    def find_agent(self, name: str) -> AgentView | None:
        """Active agent by case-insensitive name."""

        normalized = normalize_agent_name(name)
        with self._session() as session:
            row = _active_agent_row(session, normalized)
            return _to_agent_view(row) if row is not None else None

    def resolve_agent(self, name: str) -> AgentView:
        """Return the active agent, registering it on first contact."""

        normalized = normalize_agent_name(name)
        if not normalized:
            raise ValidationError("Agent name is required")
        existing = self.find_agent(normalized)
        if existing is not None:
            return existing

        with self._session() as session:
            row = Agent(
                name=normalized,
                label=f"agent:{normalized}",
                is_active=True,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                # Registered concurrently by another caller.
                session.rollback()
                found = _active_agent_row(session, normalized)
                if found is None:
                    raise
                return _to_agent_view(found)
            session.refresh(row)
            logger.info("Registered agent %s", normalized)
            return _to_agent_view(row)

    def list_agents(self) -> list[AgentView]:
        with self._session() as session:
            rows = session.exec(select(Agent).order_by(col(Agent.name).asc())).all()
        return [_to_agent_view(row) for row in rows]

    def set_agent_active(self, name: str, *, active: bool) -> AgentView:
        """Activate or deactivate the most recent agent row with this name."""

        normalized = normalize_agent_name(name)
        with self._session() as session:
            row = session.exec(
                select(Agent)
                .where(Agent.name == normalized)
                .order_by(col(Agent.is_active).desc(), col(Agent.id).desc())
                .limit(1),
            ).one_or_none()
            if row is None:
                raise NotFoundError(f"Agent '{normalized}' not found")
            row.is_active = active
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise ConflictError(f"Agent '{normalized}' is already active") from error
            session.refresh(row)
            return _to_agent_view(row)

    # -- messages --------------------------------------------------------------

    def add_message(self, payload: MessageCreate) -> MessageView:
        """Persist a standalone message in ``pending``."""

        source = normalize_agent_name(payload.source_agent)
        target = normalize_agent_name(payload.target_agent)
        if not source:
            raise ValidationError("Source agent is required")
        if not target:
            raise ValidationError("Target agent is required")
        if not payload.message_type.strip():
            raise ValidationError("Message type is required")
        if not payload.content.strip():
            raise ValidationError("Message content is required")

        with self._session() as session:
            row = AgentMessage(
                source_agent=source,
                target_agent=target,
                message_type=payload.message_type.strip(),
                content=payload.content,
                metadata_json=(
                    json.dumps(payload.metadata, ensure_ascii=False, sort_keys=True)
                    if payload.metadata
                    else None
                ),
                requires_approval=payload.requires_approval,
                status=MessageStatus.PENDING.value,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_message_view(row)

    def get_message(self, message_id: int) -> MessageView:
        with self._session() as session:
            row = session.get(AgentMessage, message_id)
            if row is None:
                raise NotFoundError(f"Message {message_id} not found")
            return _to_message_view(row)

    def list_pending_messages(self, target_agent: str) -> list[MessageView]:
        """Messages visible to ``target_agent``; approval-gated ones only once approved."""

        target = normalize_agent_name(target_agent)
        with self._session() as session:
            rows = session.exec(
                select(AgentMessage)
                .where(
                    AgentMessage.target_agent == target,
                    col(AgentMessage.status).in_(
                        [MessageStatus.PENDING.value, MessageStatus.APPROVED.value],
                    ),
                    or_(
                        col(AgentMessage.requires_approval).is_(False),
                        col(AgentMessage.approved_at).is_not(None),
                    ),
                )
                .order_by(col(AgentMessage.created_at).asc(), col(AgentMessage.id).asc()),
            ).all()
        return [_to_message_view(row) for row in rows]

    def list_messages(self, *, limit: int = 100) -> list[MessageView]:
        """Most recent messages first."""

        with self._session() as session:
            rows = session.exec(
                select(AgentMessage)
                .order_by(col(AgentMessage.created_at).desc(), col(AgentMessage.id).desc())
                .limit(limit),
            ).all()
        return [_to_message_view(row) for row in rows]

    def list_messages_awaiting_approval(self) -> list[MessageView]:
        with self._session() as session:
            rows = session.exec(
                select(AgentMessage)
                .where(
                    col(AgentMessage.requires_approval).is_(True),
                    AgentMessage.status == MessageStatus.PENDING.value,
                )
                .order_by(col(AgentMessage.created_at).asc(), col(AgentMessage.id).asc()),
            ).all()
        return [_to_message_view(row) for row in rows]

    def transition_message(self, *, message_id: int, action: MessageAction) -> MessageView:
        """Apply ``action`` to a message if its current status allows it."""

        now = to_db_datetime(utc_now())
        with self._session() as session:
            row = session.get(AgentMessage, message_id)
            if row is None:
                raise NotFoundError(f"Message {message_id} not found")
            previous = MessageStatus(row.status)
            target = next_message_status(action, previous)

            values: dict[str, Any] = {"status": target.value}
            if action == MessageAction.APPROVE:
                values["approved_at"] = now
            elif action == MessageAction.DELIVER and row.delivered_at is None:
                values["delivered_at"] = now
            elif action == MessageAction.PROCESS:
                values["processed_at"] = now
                if row.delivered_at is None:
                    values["delivered_at"] = now

            result = session.exec(
                sa_update(AgentMessage)
                .where(
                    col(AgentMessage.id) == message_id,
                    col(AgentMessage.status) == previous.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise ConflictError(
                    "Message state changed concurrently; "
                    f"please retry command (message_id={message_id}).",
                    current_status=previous.value,
                )
            session.commit()
            return _to_message_view(_message_row(session, message_id))

    # -- narration threads -----------------------------------------------------

    def start_thread(
        self,
        *,
        source_agent: str,
        content: str,
        target_agent: str | None = None,
        session_id: str | None = None,
    ) -> MessageView:
        """Open a narration thread; a session may hold one open thread at a time."""

        source = normalize_agent_name(source_agent)
        target = normalize_agent_name(target_agent) if target_agent else None
        if not source:
            raise ValidationError("Source agent is required")
        if not content.strip():
            raise ValidationError("Message content is required")

        with self._session() as session:
            if session_id is not None and _open_start_row(session, session_id) is not None:
                raise ConflictError(f"Session '{session_id}' already has an open task thread")
            row = AgentMessage(
                source_agent=source,
                target_agent=target or None,
                message_type=THREAD_MESSAGE_TYPES[MessagePhase.START],
                content=content,
                requires_approval=False,
                status=MessageStatus.PENDING.value,
                phase=MessagePhase.START.value,
                session_id=session_id,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise ConflictError(
                    f"Session '{session_id}' already has an open task thread",
                ) from error
            session.refresh(row)
            return _to_message_view(row)

    def append_to_thread(
        self,
        *,
        parent_message_id: int,
        content: str,
        phase: MessagePhase,
    ) -> MessageView:
        """Add a progress or completion message; completion closes the thread."""

        if phase == MessagePhase.START:
            raise ValidationError("Use start_thread to open a task thread")
        if not content.strip():
            raise ValidationError("Message content is required")

        now = to_db_datetime(utc_now())
        with self._session() as session:
            parent = session.get(AgentMessage, parent_message_id)
            if parent is None or parent.phase != MessagePhase.START.value:
                raise NotFoundError(f"Task thread {parent_message_id} not found")
            if parent.closed_at is not None:
                raise InvalidStateTransitionError(
                    f"Task thread {parent_message_id} is already completed",
                    current_status="closed",
                )

            if phase == MessagePhase.COMPLETE:
                result = session.exec(
                    sa_update(AgentMessage)
                    .where(
                        col(AgentMessage.id) == parent_message_id,
                        col(AgentMessage.closed_at).is_(None),
                    )
                    .values(closed_at=now),
                )
                if result.rowcount != 1:
                    session.rollback()
                    raise InvalidStateTransitionError(
                        f"Task thread {parent_message_id} is already completed",
                        current_status="closed",
                    )

            row = AgentMessage(
                source_agent=parent.source_agent,
                target_agent=parent.target_agent,
                message_type=THREAD_MESSAGE_TYPES[phase],
                content=content,
                requires_approval=False,
                status=MessageStatus.PENDING.value,
                phase=phase.value,
                parent_message_id=parent_message_id,
                session_id=parent.session_id,
                created_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_message_view(row)

    def withdraw_thread(self, start_message_id: int) -> MessageView:
        """Cancel and close a start message whose hand-over never committed."""

        now = to_db_datetime(utc_now())
        with self._session() as session:
            result = session.exec(
                sa_update(AgentMessage)
                .where(
                    col(AgentMessage.id) == start_message_id,
                    col(AgentMessage.phase) == MessagePhase.START.value,
                    col(AgentMessage.closed_at).is_(None),
                    col(AgentMessage.status).in_(
                        [MessageStatus.PENDING.value, MessageStatus.APPROVED.value],
                    ),
                )
                .values(status=MessageStatus.CANCELLED.value, closed_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                raise ConflictError(
                    f"Task thread {start_message_id} can no longer be withdrawn",
                )
            session.commit()
            return _to_message_view(_message_row(session, start_message_id))

    def find_open_start(self, session_id: str) -> MessageView | None:
        with self._session() as session:
            row = _open_start_row(session, session_id)
            return _to_message_view(row) if row is not None else None

    def list_open_starts(self, *, source_agent: str | None = None) -> list[MessageView]:
        with self._session() as session:
            statement = (
                select(AgentMessage)
                .where(
                    AgentMessage.phase == MessagePhase.START.value,
                    col(AgentMessage.closed_at).is_(None),
                )
                .order_by(col(AgentMessage.created_at).asc(), col(AgentMessage.id).asc())
            )
            if source_agent is not None:
                statement = statement.where(
                    AgentMessage.source_agent == normalize_agent_name(source_agent),
                )
            rows = session.exec(statement).all()
        return [_to_message_view(row) for row in rows]

    def get_thread(self, start_message_id: int) -> list[MessageView]:
        """Start message followed by its children in creation order."""

        with self._session() as session:
            start = session.get(AgentMessage, start_message_id)
            if start is None or start.phase != MessagePhase.START.value:
                raise NotFoundError(f"Task thread {start_message_id} not found")
            rows = session.exec(
                select(AgentMessage)
                .where(
                    or_(
                        col(AgentMessage.id) == start_message_id,
                        col(AgentMessage.parent_message_id) == start_message_id,
                    ),
                )
                .order_by(col(AgentMessage.created_at).asc(), col(AgentMessage.id).asc()),
            ).all()
        return [_to_message_view(row) for row in rows]

    # -- tasks -----------------------------------------------------------------

    def create_task(self, *, source_agent: str, payload: TaskCreate) -> TaskView:
        """Persist a new ``pending`` task between two active agents."""

        source = normalize_agent_name(source_agent)
        target = normalize_agent_name(payload.target_agent)
        summary = payload.summary.strip()
        if not source:
            raise ValidationError("Source agent is required")
        if not target:
            raise ValidationError("Target agent is required")
        if not summary:
            raise ValidationError("Task summary is required")
        issue_number = payload.issue_number
        if issue_number is None:
            issue_number = extract_issue_number(payload.issue_url)

        with self._session() as session:
            creator = _active_agent_row(session, source)
            if creator is None:
                raise ValidationError(f"Agent '{source}' not found")
            target_row = _active_agent_row(session, target)
            if target_row is None:
                raise ValidationError(f"Agent '{target}' not found")

            row = AgentTask(
                created_by_agent_id=creator.id,
                target_agent_id=target_row.id,
                summary=summary,
                issue_url=payload.issue_url,
                issue_number=issue_number,
                requires_approval=payload.requires_approval,
                status=TaskStatus.PENDING.value,
                session_id=payload.session_id,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_views(session, [row])[0]

    def get_task(self, task_id: int) -> TaskView:
        with self._session() as session:
            return _to_task_views(session, [_task_row(session, task_id)])[0]

    def transition_task(self, *, task_id: int, action: TaskAction) -> TaskView:
        """Apply a stamp-only transition (approve, cancel, notify)."""

        now = to_db_datetime(utc_now())
        with self._session() as session:
            row = _task_row(session, task_id)
            previous = TaskStatus(row.status)
            target = next_task_status(action, previous)

            values: dict[str, Any] = {"status": target.value}
            if action == TaskAction.APPROVE:
                values["approved_at"] = now
            elif action == TaskAction.NOTIFY:
                values["notified_at"] = now
            _swap_task_status(session, task_id=task_id, previous=previous, values=values)
            session.commit()
            return _to_task_views(session, [_task_row(session, task_id)])[0]

    def withdraw_notification(self, *, task_id: int) -> TaskView:
        """Return an unacknowledged ``notified`` task to the ready set.

        The task goes back to ``approved`` when it was approved before being
        announced, otherwise to ``pending``.
        """

        with self._session() as session:
            row = _task_row(session, task_id)
            previous = TaskStatus(row.status)
            if previous != TaskStatus.NOTIFIED:
                raise InvalidStateTransitionError(
                    f"Cannot withdraw notification of task with status '{previous.value}'",
                    current_status=previous.value,
                )
            target = TaskStatus.APPROVED if row.approved_at is not None else TaskStatus.PENDING
            _swap_task_status(
                session,
                task_id=task_id,
                previous=previous,
                values={"status": target.value, "notified_at": None},
            )
            session.commit()
            return _to_task_views(session, [_task_row(session, task_id)])[0]

    def mark_task_sent(
        self,
        *,
        task_id: int,
        method: DeliveryMethod,
        action: TaskAction = TaskAction.MARK_SENT,
        response: str | None = None,
        open_activity: bool = False,
    ) -> TaskView:
        """Stamp ``sent`` and append the delivery record in one transaction.

        With ``open_activity`` the target agent also gets an in-progress
        activity linked to the task; if it already has one the whole hand-over
        is rolled back with ``AgentBusyError``.
        """

        now = to_db_datetime(utc_now())
        with self._session() as session:
            row = _task_row(session, task_id)
            previous = TaskStatus(row.status)
            target = next_task_status(action, previous)
            agent_id = row.target_agent_id
            agent = session.get(Agent, agent_id)
            agent_name = agent.name if agent is not None else str(agent_id)

            _swap_task_status(
                session,
                task_id=task_id,
                previous=previous,
                values={"status": target.value, "sent_at": now},
            )
            session.add(
                TaskDelivery(
                    task_id=task_id,
                    agent_id=agent_id,
                    method=method.value,
                    response=response,
                    sent_at=now,
                ),
            )
            if open_activity:
                session.add(
                    AgentActivity(
                        agent_name=agent_name,
                        status=ActivityStatus.IN_PROGRESS.value,
                        task_id=task_id,
                        started_at=now,
                    ),
                )
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise AgentBusyError(
                    f"{agent_name} is currently working on another task",
                    current_status=previous.value,
                ) from error
            return _to_task_views(session, [_task_row(session, task_id)])[0]

    def complete_task(
        self,
        *,
        task_id: int,
        result: str | None,
        outcome: CompletionOutcome = CompletionOutcome.COMPLETED,
    ) -> TaskView:
        """Finish a ``sent`` task and close the activity linked to it."""

        now = to_db_datetime(utc_now())
        result_text = (result or "").strip()
        prefix = _RESULT_PREFIXES.get(outcome)
        if prefix is not None:
            result_text = f"{prefix} {result_text}".rstrip()

        with self._session() as session:
            row = _task_row(session, task_id)
            previous = TaskStatus(row.status)
            target = next_task_status(TaskAction.COMPLETE, previous)
            _swap_task_status(
                session,
                task_id=task_id,
                previous=previous,
                values={
                    "status": target.value,
                    "completed_at": now,
                    "result": result_text or None,
                },
            )
            session.exec(
                sa_update(AgentActivity)
                .where(
                    col(AgentActivity.task_id) == task_id,
                    col(AgentActivity.status) == ActivityStatus.IN_PROGRESS.value,
                )
                .values(status=ActivityStatus.COMPLETED.value, completed_at=now),
            )
            session.commit()
            return _to_task_views(session, [_task_row(session, task_id)])[0]

    def list_ready_tasks(self) -> list[TaskView]:
        """Approved tasks plus pending ones that need no approval, oldest first."""

        with self._session() as session:
            rows = session.exec(
                select(AgentTask)
                .where(
                    or_(
                        col(AgentTask.status) == TaskStatus.APPROVED.value,
                        and_(
                            col(AgentTask.status) == TaskStatus.PENDING.value,
                            col(AgentTask.requires_approval).is_(False),
                        ),
                    ),
                )
                .order_by(col(AgentTask.created_at).asc(), col(AgentTask.id).asc()),
            ).all()
            return _to_task_views(session, rows)

    def select_dispatch_candidate(
        self,
        *,
        agent_name: str,
        issue_number: int | None = None,
    ) -> TaskView | None:
        """Oldest pending/approved task for the agent, optionally for one issue."""

        with self._session() as session:
            agent = _active_agent_row(session, normalize_agent_name(agent_name))
            if agent is None:
                return None
            statement = (
                select(AgentTask)
                .where(
                    AgentTask.target_agent_id == agent.id,
                    col(AgentTask.status).in_(
                        [status.value for status in DISPATCHABLE_TASK_STATUSES],
                    ),
                )
                .order_by(col(AgentTask.created_at).asc(), col(AgentTask.id).asc())
                .limit(1)
            )
            if issue_number is not None:
                statement = statement.where(AgentTask.issue_number == issue_number)
            row = session.exec(statement).one_or_none()
            return _to_task_views(session, [row])[0] if row is not None else None

    def list_tasks(self, *, limit: int = 100) -> list[TaskView]:
        """Most recent tasks first."""

        with self._session() as session:
            rows = session.exec(
                select(AgentTask)
                .order_by(col(AgentTask.created_at).desc(), col(AgentTask.id).desc())
                .limit(limit),
            ).all()
            return _to_task_views(session, rows)

    def list_tasks_for_agent(self, *, agent_name: str, status: TaskStatus) -> list[TaskView]:
        with self._session() as session:
            agent = _active_agent_row(session, normalize_agent_name(agent_name))
            if agent is None:
                return []
            rows = session.exec(
                select(AgentTask)
                .where(
                    AgentTask.target_agent_id == agent.id,
                    AgentTask.status == status.value,
                )
                .order_by(col(AgentTask.created_at).asc(), col(AgentTask.id).asc()),
            ).all()
            return _to_task_views(session, rows)

    def list_tasks_awaiting_approval(self) -> list[TaskView]:
        with self._session() as session:
            rows = session.exec(
                select(AgentTask)
                .where(
                    col(AgentTask.requires_approval).is_(True),
                    AgentTask.status == TaskStatus.PENDING.value,
                )
                .order_by(col(AgentTask.created_at).asc(), col(AgentTask.id).asc()),
            ).all()
            return _to_task_views(session, rows)

    def find_tasks_by_issue(self, issue_number: int) -> list[TaskView]:
        """Tasks for an issue, newest first."""

        with self._session() as session:
            rows = session.exec(
                select(AgentTask)
                .where(AgentTask.issue_number == issue_number)
                .order_by(col(AgentTask.created_at).desc(), col(AgentTask.id).desc()),
            ).all()
            return _to_task_views(session, rows)

    def list_deliveries(self, task_id: int) -> list[DeliveryView]:
        with self._session() as session:
            _task_row(session, task_id)
            rows = session.exec(
                select(TaskDelivery, Agent)
                .join(Agent, col(TaskDelivery.agent_id) == col(Agent.id))
                .where(TaskDelivery.task_id == task_id)
                .order_by(col(TaskDelivery.sent_at).asc(), col(TaskDelivery.id).asc()),
            ).all()
        return [
            DeliveryView(
                id=delivery.id or 0,
                task_id=delivery.task_id,
                agent=agent.name,
                method=DeliveryMethod(delivery.method),
                response=delivery.response,
                sent_at=to_utc_aware_datetime(delivery.sent_at),
            )
            for delivery, agent in rows
        ]

    # -- activities ------------------------------------------------------------

    def latest_activity(self, agent_name: str) -> ActivityView | None:
        """Most recently started activity of the agent."""

        with self._session() as session:
            row = session.exec(
                select(AgentActivity)
                .where(AgentActivity.agent_name == normalize_agent_name(agent_name))
                .order_by(col(AgentActivity.started_at).desc(), col(AgentActivity.id).desc())
                .limit(1),
            ).one_or_none()
            return _to_activity_view(row) if row is not None else None

    def start_activity(self, *, agent_name: str, task_id: int | None = None) -> ActivityView:
        normalized = normalize_agent_name(agent_name)
        if not normalized:
            raise ValidationError("Agent name is required")
        with self._session() as session:
            if task_id is not None:
                _task_row(session, task_id)
            row = AgentActivity(
                agent_name=normalized,
                status=ActivityStatus.IN_PROGRESS.value,
                task_id=task_id,
                started_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise AgentBusyError(
                    f"{normalized} is currently working on another task",
                    current_status=ActivityStatus.IN_PROGRESS.value,
                ) from error
            session.refresh(row)
            return _to_activity_view(row)

    def get_activity(self, activity_id: int) -> ActivityView:
        with self._session() as session:
            return _to_activity_view(_activity_row(session, activity_id))

    def complete_activity(self, activity_id: int) -> ActivityView:
        """Stamp completion; completing an already completed activity is a no-op."""

        with self._session() as session:
            row = _activity_row(session, activity_id)
            if row.status == ActivityStatus.COMPLETED.value:
                return _to_activity_view(row)
            session.exec(
                sa_update(AgentActivity)
                .where(
                    col(AgentActivity.id) == activity_id,
                    col(AgentActivity.status) == ActivityStatus.IN_PROGRESS.value,
                )
                .values(
                    status=ActivityStatus.COMPLETED.value,
                    completed_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()
            return _to_activity_view(_activity_row(session, activity_id))

    def finish_agent_activity(self, agent_name: str) -> ActivityView | None:
        """Close whatever the agent has in progress, if anything."""

        with self._session() as session:
            row = session.exec(
                select(AgentActivity).where(
                    AgentActivity.agent_name == normalize_agent_name(agent_name),
                    AgentActivity.status == ActivityStatus.IN_PROGRESS.value,
                ),
            ).one_or_none()
            activity_id = row.id if row is not None else None
        if activity_id is None:
            return None
        return self.complete_activity(activity_id)

    def list_orphaned_activities(self) -> list[OrphanedTaskView]:
        """In-progress activities with no completion, joined with their task."""

        with self._session() as session:
            rows = session.exec(
                select(AgentActivity, AgentTask)
                .join(
                    AgentTask,
                    col(AgentActivity.task_id) == col(AgentTask.id),
                    isouter=True,
                )
                .where(
                    AgentActivity.status == ActivityStatus.IN_PROGRESS.value,
                    col(AgentActivity.completed_at).is_(None),
                )
                .order_by(col(AgentActivity.started_at).asc(), col(AgentActivity.id).asc()),
            ).all()
        return [
            OrphanedTaskView(
                activity_id=activity.id or 0,
                agent_name=activity.agent_name,
                started_at=to_utc_aware_datetime(activity.started_at),
                task_id=task.id if task is not None else None,
                issue_number=task.issue_number if task is not None else None,
                summary=task.summary if task is not None else None,
                task_status=TaskStatus(task.status) if task is not None else None,
            )
            for activity, task in rows
        ]

    def resolve_orphan(self, *, activity_id: int, reset_task: bool = False) -> ActivityView:
        """Close an in-progress activity, optionally returning its task to ``pending``.

        The reset and the close share one transaction: a terminal task makes
        the whole call fail with nothing written.
        """

        now = to_db_datetime(utc_now())
        with self._session() as session:
            activity = _activity_row(session, activity_id)
            if activity.status != ActivityStatus.IN_PROGRESS.value:
                raise InvalidStateTransitionError(
                    f"Activity {activity_id} is not in progress",
                    current_status=activity.status,
                )

            if reset_task and activity.task_id is not None:
                task = _task_row(session, activity.task_id)
                previous = TaskStatus(task.status)
                target = next_task_status(TaskAction.RESET, previous)
                _swap_task_status(
                    session,
                    task_id=task.id or 0,
                    previous=previous,
                    values={
                        "status": target.value,
                        "approved_at": None,
                        "notified_at": None,
                        "sent_at": None,
                        "completed_at": None,
                        "result": None,
                    },
                )

            result = session.exec(
                sa_update(AgentActivity)
                .where(
                    col(AgentActivity.id) == activity_id,
                    col(AgentActivity.status) == ActivityStatus.IN_PROGRESS.value,
                )
                .values(status=ActivityStatus.COMPLETED.value, completed_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                raise ConflictError(
                    "Activity state changed concurrently; "
                    f"please retry command (activity_id={activity_id}).",
                    current_status=ActivityStatus.IN_PROGRESS.value,
                )
            session.commit()
            return _to_activity_view(_activity_row(session, activity_id))


def _swap_task_status(
    session: Session,
    *,
    task_id: int,
    previous: TaskStatus,
    values: dict[str, Any],
) -> None:
    result = session.exec(
        sa_update(AgentTask)
        .where(
            col(AgentTask.id) == task_id,
            col(AgentTask.status) == previous.value,
        )
        .values(**values),
    )
    if result.rowcount != 1:
        session.rollback()
        raise ConflictError(
            f"Task state changed concurrently; please retry command (task_id={task_id}).",
            current_status=previous.value,
        )


def _active_agent_row(session: Session, normalized_name: str) -> Agent | None:
    return session.exec(
        select(Agent).where(Agent.name == normalized_name, col(Agent.is_active).is_(True)),
    ).one_or_none()


def _task_row(session: Session, task_id: int) -> AgentTask:
    row = session.exec(select(AgentTask).where(AgentTask.id == task_id)).one_or_none()
    if row is None:
        raise NotFoundError(f"Task {task_id} not found")
    return row


def _message_row(session: Session, message_id: int) -> AgentMessage:
    row = session.exec(select(AgentMessage).where(AgentMessage.id == message_id)).one_or_none()
    if row is None:
        raise NotFoundError(f"Message {message_id} not found")
    return row


def _activity_row(session: Session, activity_id: int) -> AgentActivity:
    row = session.exec(
        select(AgentActivity).where(AgentActivity.id == activity_id),
    ).one_or_none()
    if row is None:
        raise NotFoundError(f"Activity {activity_id} not found")
    return row


def _open_start_row(session: Session, session_id: str) -> AgentMessage | None:
    return session.exec(
        select(AgentMessage).where(
            AgentMessage.session_id == session_id,
            AgentMessage.phase == MessagePhase.START.value,
            col(AgentMessage.closed_at).is_(None),
        ),
    ).one_or_none()


def _optional_datetime(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_agent_view(row: Agent) -> AgentView:
    return AgentView(
        id=row.id or 0,
        name=row.name,
        label=row.label,
        is_active=row.is_active,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_message_view(row: AgentMessage) -> MessageView:
    metadata: dict[str, Any] = {}
    if row.metadata_json:
        parsed = json.loads(row.metadata_json)
        if isinstance(parsed, dict):
            metadata = parsed
    return MessageView(
        id=row.id or 0,
        source_agent=row.source_agent,
        target_agent=row.target_agent,
        message_type=row.message_type,
        content=row.content,
        metadata=metadata,
        requires_approval=row.requires_approval,
        status=MessageStatus(row.status),
        phase=MessagePhase(row.phase) if row.phase is not None else None,
        parent_message_id=row.parent_message_id,
        session_id=row.session_id,
        created_at=to_utc_aware_datetime(row.created_at),
        approved_at=_optional_datetime(row.approved_at),
        delivered_at=_optional_datetime(row.delivered_at),
        processed_at=_optional_datetime(row.processed_at),
        closed_at=_optional_datetime(row.closed_at),
    )


def _to_task_views(session: Session, rows: Sequence[AgentTask]) -> list[TaskView]:
    agent_ids = {row.created_by_agent_id for row in rows} | {row.target_agent_id for row in rows}
    names: dict[int, str] = {}
    if agent_ids:
        agents = session.exec(select(Agent).where(col(Agent.id).in_(agent_ids))).all()
        names = {agent.id or 0: agent.name for agent in agents}
    return [
        TaskView(
            id=row.id or 0,
            created_by_agent=names.get(row.created_by_agent_id, ""),
            target_agent=names.get(row.target_agent_id, ""),
            summary=row.summary,
            issue_url=row.issue_url,
            issue_number=row.issue_number,
            requires_approval=row.requires_approval,
            status=TaskStatus(row.status),
            result=row.result,
            session_id=row.session_id,
            created_at=to_utc_aware_datetime(row.created_at),
            approved_at=_optional_datetime(row.approved_at),
            notified_at=_optional_datetime(row.notified_at),
            sent_at=_optional_datetime(row.sent_at),
            completed_at=_optional_datetime(row.completed_at),
        )
        for row in rows
    ]


def _to_activity_view(row: AgentActivity) -> ActivityView:
    return ActivityView(
        id=row.id or 0,
        agent_name=row.agent_name,
        status=ActivityStatus(row.status),
        task_id=row.task_id,
        started_at=to_utc_aware_datetime(row.started_at),
        completed_at=_optional_datetime(row.completed_at),
    )
