"""Domain models for agents, messages, tasks and activity tracking."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from agent_handoff.orchestrator.errors import InvalidStateTransitionError

ISSUE_NUMBER_PATTERN = re.compile(r"/issues/(\d+)")


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    APPROVED = "approved"
    NOTIFIED = "notified"
    SENT = "sent"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class MessageStatus(str, Enum):
    """Message lifecycle states."""

    PENDING = "pending"
    APPROVED = "approved"
    DELIVERED = "delivered"
    PROCESSED = "processed"
    CANCELLED = "cancelled"


class MessagePhase(str, Enum):
    """Position of a message inside a narration thread."""

    START = "start"
    PROGRESS = "progress"
    COMPLETE = "complete"


class ActivityStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class DeliveryMethod(str, Enum):
    """How a task was handed to its agent."""

    PUSH = "push"
    PULL = "pull"
    DISPATCH = "dispatch"
    MANUAL = "manual"


class CompletionOutcome(str, Enum):
    """Result reported by the agent that worked on a task."""

    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"


class TaskAction(str, Enum):
    APPROVE = "approve"
    CANCEL = "cancel"
    NOTIFY = "notify"
    ACCEPT = "accept"
    MARK_SENT = "mark_sent"
    DISPATCH = "dispatch"
    COMPLETE = "complete"
    RESET = "reset"


class MessageAction(str, Enum):
    APPROVE = "approve"
    CANCEL = "cancel"
    DELIVER = "deliver"
    PROCESS = "process"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED})
DISPATCHABLE_TASK_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.APPROVED})

TASK_TRANSITIONS: dict[TaskAction, tuple[frozenset[TaskStatus], TaskStatus]] = {
    TaskAction.APPROVE: (frozenset({TaskStatus.PENDING}), TaskStatus.APPROVED),
    TaskAction.CANCEL: (
        frozenset({TaskStatus.PENDING, TaskStatus.APPROVED, TaskStatus.NOTIFIED}),
        TaskStatus.CANCELLED,
    ),
    TaskAction.NOTIFY: (DISPATCHABLE_TASK_STATUSES, TaskStatus.NOTIFIED),
    TaskAction.ACCEPT: (frozenset({TaskStatus.NOTIFIED}), TaskStatus.SENT),
    TaskAction.MARK_SENT: (
        frozenset({TaskStatus.PENDING, TaskStatus.APPROVED, TaskStatus.NOTIFIED}),
        TaskStatus.SENT,
    ),
    TaskAction.DISPATCH: (DISPATCHABLE_TASK_STATUSES, TaskStatus.SENT),
    TaskAction.COMPLETE: (frozenset({TaskStatus.SENT}), TaskStatus.COMPLETED),
    TaskAction.RESET: (
        frozenset(
            {TaskStatus.PENDING, TaskStatus.APPROVED, TaskStatus.NOTIFIED, TaskStatus.SENT},
        ),
        TaskStatus.PENDING,
    ),
}

MESSAGE_TRANSITIONS: dict[MessageAction, tuple[frozenset[MessageStatus], MessageStatus]] = {
    MessageAction.APPROVE: (frozenset({MessageStatus.PENDING}), MessageStatus.APPROVED),
    MessageAction.CANCEL: (
        frozenset({MessageStatus.PENDING, MessageStatus.APPROVED}),
        MessageStatus.CANCELLED,
    ),
    MessageAction.DELIVER: (
        frozenset({MessageStatus.PENDING, MessageStatus.APPROVED, MessageStatus.DELIVERED}),
        MessageStatus.DELIVERED,
    ),
    MessageAction.PROCESS: (
        frozenset(
            {
                MessageStatus.PENDING,
                MessageStatus.APPROVED,
                MessageStatus.DELIVERED,
                MessageStatus.PROCESSED,
            },
        ),
        MessageStatus.PROCESSED,
    ),
}

_ACTION_VERBS: dict[str, str] = {
    "mark_sent": "mark as sent",
    "notify": "notify",
    "deliver": "mark as delivered",
    "process": "mark as processed",
}


def next_task_status(action: TaskAction, current: TaskStatus) -> TaskStatus:
    """Return the target status or raise if ``action`` is illegal from ``current``."""

    allowed, target = TASK_TRANSITIONS[action]
    if current not in allowed:
        raise InvalidStateTransitionError(
            f"Cannot {_ACTION_VERBS.get(action.value, action.value)} task "
            f"with status '{current.value}'",
            current_status=current.value,
        )
    return target


def next_message_status(action: MessageAction, current: MessageStatus) -> MessageStatus:
    allowed, target = MESSAGE_TRANSITIONS[action]
    if current not in allowed:
        raise InvalidStateTransitionError(
            f"Cannot {_ACTION_VERBS.get(action.value, action.value)} message "
            f"with status '{current.value}'",
            current_status=current.value,
        )
    return target


def extract_issue_number(url: str | None) -> int | None:
    """Pull the issue number out of an issue URL such as ``.../issues/42``."""

    if not url:
        return None
    match = ISSUE_NUMBER_PATTERN.search(url)
    return int(match.group(1)) if match else None


def normalize_agent_name(name: str) -> str:
    return name.strip().lower()


@dataclass(slots=True)
class AgentView:
    id: int
    name: str
    label: str
    is_active: bool
    created_at: datetime


@dataclass(slots=True)
class MessageCreate:
    """Input payload for a standalone inter-agent message."""

    source_agent: str
    target_agent: str
    message_type: str
    content: str
    metadata: dict[str, Any] | None = None
    requires_approval: bool = False


@dataclass(slots=True)
class MessageView:
    id: int
    source_agent: str
    target_agent: str | None
    message_type: str
    content: str
    metadata: dict[str, Any]
    requires_approval: bool
    status: MessageStatus
    phase: MessagePhase | None
    parent_message_id: int | None
    session_id: str | None
    created_at: datetime
    approved_at: datetime | None
    delivered_at: datetime | None
    processed_at: datetime | None
    closed_at: datetime | None


@dataclass(slots=True)
class TaskCreate:
    """Input payload for a new task handed to ``target_agent``."""

    target_agent: str
    summary: str
    issue_url: str | None = None
    issue_number: int | None = None
    requires_approval: bool = False
    session_id: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for services, loop and CLI."""

    id: int
    created_by_agent: str
    target_agent: str
    summary: str
    issue_url: str | None
    issue_number: int | None
    requires_approval: bool
    status: TaskStatus
    result: str | None
    session_id: str | None
    created_at: datetime
    approved_at: datetime | None
    notified_at: datetime | None
    sent_at: datetime | None
    completed_at: datetime | None


@dataclass(slots=True)
class DeliveryView:
    """Append-only hand-over audit entry."""

    id: int
    task_id: int
    agent: str
    method: DeliveryMethod
    response: str | None
    sent_at: datetime


@dataclass(slots=True)
class ActivityView:
    id: int
    agent_name: str
    status: ActivityStatus
    task_id: int | None
    started_at: datetime
    completed_at: datetime | None


@dataclass(slots=True)
class OrphanedTaskView:
    """In-progress activity left behind, with the task it was working on."""

    activity_id: int
    agent_name: str
    started_at: datetime
    task_id: int | None = None
    issue_number: int | None = None
    summary: str | None = None
    task_status: TaskStatus | None = None


@dataclass(slots=True)
class AcceptedTask:
    """Task handed over through pull delivery together with its prompt."""

    task: TaskView
    prompt: str


class DispatchKind(str, Enum):
    DISPATCHED = "dispatched"
    AGENT_BUSY = "agent_busy"
    NO_PENDING_TASKS = "no_pending_tasks"
    TASK_NOT_FOUND = "task_not_found"


@dataclass(slots=True)
class DispatchResult:
    """Outcome of one dispatch attempt; every kind is a normal result."""

    kind: DispatchKind
    agent: str
    message: str
    task: TaskView | None = None
    prompt: str | None = None

    @property
    def dispatched(self) -> bool:
        return self.kind == DispatchKind.DISPATCHED


@dataclass(slots=True)
class CreateAndDispatchResult:
    """Result of the issue-number upsert followed by dispatch."""

    action: str
    task: TaskView
    dispatch_status: str
    reason: str | None = None
    dispatch: DispatchResult | None = None


@dataclass(slots=True)
class CompletionResult:
    """Completed task and the follow-up dispatch when auto-chaining ran."""

    task: TaskView
    next_dispatch: DispatchResult | None = None


@dataclass(slots=True)
class DistributionSummary:
    """Aggregate loop counters for CLI reporting."""

    ticks: int = 0
    ready: int = 0
    pushed: int = 0
    notified: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def add(self, other: DistributionSummary) -> None:
        self.ticks += other.ticks
        self.ready += other.ready
        self.pushed += other.pushed
        self.notified += other.notified
        self.skipped += other.skipped
        self.failed += other.failed
        self.errors.extend(other.errors)
