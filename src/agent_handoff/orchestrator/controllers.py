"""Controllers for hand-off CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agent_handoff.config import Settings
from agent_handoff.orchestrator.distribution import DistributionLoop
from agent_handoff.orchestrator.errors import ValidationError
from agent_handoff.orchestrator.models import (
    ActivityView,
    AgentView,
    CompletionOutcome,
    DispatchResult,
    MessageCreate,
    MessageView,
    OrphanedTaskView,
    TaskCreate,
    TaskView,
)
from agent_handoff.orchestrator.notifier import HttpNotifier, Notifier
from agent_handoff.orchestrator.repository import HandoffRepository
from agent_handoff.orchestrator.services import HandoffServices, build_notifier, build_services

TASK_LIST_FILTERS = ("all", "ready", "awaiting-approval", "notified", "sent")
MESSAGE_ACTIONS = ("approve", "cancel", "delivered", "processed")
TASK_ACTIONS = ("approve", "cancel", "notify", "accept")
ORPHAN_RESOLUTIONS = ("complete", "reset", "ignore")


@dataclass(slots=True)
class AgentListCommand:
    db_path: Path | None


@dataclass(slots=True)
class AgentNameCommand:
    """CLI input for register/deactivate/activate."""

    db_path: Path | None
    name: str


@dataclass(slots=True)
class MessageSendCommand:
    db_path: Path | None
    source_agent: str
    target_agent: str
    message_type: str
    content: str
    metadata_json: str | None
    requires_approval: bool


@dataclass(slots=True)
class MessageActionCommand:
    db_path: Path | None
    message_id: int
    action: str


@dataclass(slots=True)
class MessageListCommand:
    """CLI input for message queue inspection."""

    db_path: Path | None
    target_agent: str | None
    awaiting_approval: bool
    limit: int


@dataclass(slots=True)
class NarrationStartCommand:
    db_path: Path | None
    source_agent: str
    content: str
    target_agent: str | None
    session_id: str | None


@dataclass(slots=True)
class NarrationUpdateCommand:
    db_path: Path | None
    parent_message_id: int
    content: str


@dataclass(slots=True)
class NarrationListCommand:
    db_path: Path | None
    source_agent: str | None


@dataclass(slots=True)
class NarrationHistoryCommand:
    db_path: Path | None
    start_message_id: int


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for task creation."""

    db_path: Path | None
    source_agent: str
    target_agent: str
    summary: str
    issue_url: str | None
    requires_approval: bool


@dataclass(slots=True)
class TaskActionCommand:
    db_path: Path | None
    task_id: int
    action: str


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    agent: str | None
    list_filter: str
    limit: int


@dataclass(slots=True)
class TaskCompleteCommand:
    """CLI input for task completion reported by an agent."""

    db_path: Path | None
    task_id: int
    result: str | None
    outcome: str
    auto_dispatch: bool | None


@dataclass(slots=True)
class TaskFetchCommand:
    db_path: Path | None
    agent: str


@dataclass(slots=True)
class TaskStatusCommand:
    """CLI input for task lookup by id or issue number."""

    db_path: Path | None
    task_id: int | None
    issue_number: int | None


@dataclass(slots=True)
class DispatchCommand:
    db_path: Path | None
    agent: str | None
    reference: str | None


@dataclass(slots=True)
class CreateAndDispatchCommand:
    db_path: Path | None
    issue_number: int
    summary: str | None
    agent: str | None


@dataclass(slots=True)
class LoopCommand:
    """CLI input for the distribution loop."""

    db_path: Path | None
    once: bool
    max_ticks: int | None


@dataclass(slots=True)
class OrphanListCommand:
    db_path: Path | None


@dataclass(slots=True)
class OrphanResolveCommand:
    db_path: Path | None
    activity_id: int
    resolution: str


@dataclass(slots=True)
class ActivityStartCommand:
    db_path: Path | None
    agent: str
    task_id: int | None


@dataclass(slots=True)
class ActivityFinishCommand:
    db_path: Path | None
    agent: str


class HandoffCliController:
    """Coordinates agents, messages, tasks, dispatch and recovery CLI operations.

    Domain failures are raised as ``HandoffError`` via ``Outcome.unwrap`` and
    turned into CLI errors by the entrypoint.
    """

    # -- agents ----------------------------------------------------------------

    def list_agents(self, command: AgentListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as services:
            agents = services.registry.list_agents()
        if not agents:
            return ["No agents registered."]
        return [_agent_line(agent) for agent in agents]

    def register_agent(self, command: AgentNameCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as services:
            agent = services.registry.resolve(command.name).unwrap()
        return [f"Agent ready: {_agent_line(agent)}"]

    def set_agent_active(self, command: AgentNameCommand, *, active: bool) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as services:
            outcome = (
                services.registry.activate(command.name)
                if active
                else services.registry.deactivate(command.name)
            )
            agent = outcome.unwrap()
        return [f"Agent updated: {_agent_line(agent)}"]

    # -- messages --------------------------------------------------------------

    def send_message(self, command: MessageSendCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        metadata = _parse_metadata(command.metadata_json)
        with _services(settings) as services:
            message = services.hub.send(
                MessageCreate(
                    source_agent=command.source_agent,
                    target_agent=command.target_agent,
                    message_type=command.message_type,
                    content=command.content,
                    metadata=metadata,
                    requires_approval=command.requires_approval,
                ),
            ).unwrap()
        return [f"Message queued: {_message_line(message)}"]

    def message_action(self, command: MessageActionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as services:
            handlers = {
                "approve": services.hub.approve,
                "cancel": services.hub.cancel,
                "delivered": services.hub.mark_delivered,
                "processed": services.hub.mark_processed,
            }
            handler = handlers.get(command.action)
            if handler is None:
                raise ValidationError(f"Unsupported message action: {command.action}")
            message = handler(command.message_id).unwrap()
        return [f"Message updated: {_message_line(message)}"]

    def list_messages(self, command: MessageListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as services:
            if command.awaiting_approval:
                messages = services.hub.get_awaiting_approval()
            elif command.target_agent:
                messages = services.hub.get_pending(command.target_agent)
            else:
                messages = services.hub.get_queue(limit=command.limit)
        if not messages:
            return ["No messages found."]
        return [_message_line(message) for message in messages[: command.limit]]

    # -- narration -------------------------------------------------------------

    def start_narration(self, command: NarrationStartCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as services:
            message = services.hub.start_task(
                command.source_agent,
                command.content,
                target_agent=command.target_agent,
                session_id=command.session_id,
            ).unwrap()
        return [f"Task thread started: {_message_line(message)}"]

    def narration_progress(self, command: NarrationUpdateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as services:
            message = services.hub.send_progress(
                command.parent_message_id,
                command.content,
            ).unwrap()
        return [f"Progress recorded: {_message_line(message)}"]

    def narration_complete(self, command: NarrationUpdateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as services:
            message = services.hub.complete_task(
                command.parent_message_id,
                command.content,
            ).unwrap()
        return [f"Task thread completed: {_message_line(message)}"]

    def list_narrations(self, command: NarrationListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as services:
            active = services.hub.get_active_tasks(command.source_agent)
        if not active:
            return ["No active task threads."]
        return [_message_line(message) for message in active]

    def narration_history(self, command: NarrationHistoryCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as services:
            thread = services.hub.get_task_history(command.start_message_id).unwrap()
        return [_message_line(message) for message in thread]

    # -- tasks -----------------------------------------------------------------

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as services:
            task = services.tasks.create(
                command.source_agent,
                TaskCreate(
                    target_agent=command.target_agent,
                    summary=command.summary,
                    issue_url=command.issue_url,
                    requires_approval=command.requires_approval,
                ),
            ).unwrap()
        return [f"Task created: {_task_line(task)}"]

    def task_action(self, command: TaskActionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as services:
            if command.action == "accept":
                accepted = services.tasks.accept(command.task_id).unwrap()
                return [f"Task accepted: {_task_line(accepted.task)}", "", accepted.prompt]
            handlers = {
                "approve": services.tasks.approve,
                "cancel": services.tasks.cancel,
                "notify": services.tasks.mark_notified,
            }
            handler = handlers.get(command.action)
            if handler is None:
                raise ValidationError(f"Unsupported task action: {command.action}")
            task = handler(command.task_id).unwrap()
        return [f"Task updated: {_task_line(task)}"]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as services:
            tasks = _filtered_tasks(services, command)
        if not tasks:
            return ["No tasks found."]
        return [_task_line(task) for task in tasks[: command.limit]]

    def complete_task(self, command: TaskCompleteCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        auto_dispatch = (
            settings.distribution.auto_dispatch
            if command.auto_dispatch is None
            else command.auto_dispatch
        )
        with _services(settings) as services:
            completed = services.gateway.complete_and_continue(
                command.task_id,
                command.result,
                CompletionOutcome(command.outcome),
                auto_dispatch=auto_dispatch,
            ).unwrap()
        lines = [f"Task completed: {_task_line(completed.task)}"]
        if completed.next_dispatch is not None:
            lines.append(f"Next dispatch: {_dispatch_line(completed.next_dispatch)}")
        return lines

    def fetch_task(self, command: TaskFetchCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as services:
            accepted = services.tasks.fetch_next(command.agent).unwrap()
        if accepted is None:
            return [f"No notified tasks for {command.agent.strip().lower()}."]
        return [f"Task accepted: {_task_line(accepted.task)}", "", accepted.prompt]

    def task_status(self, command: TaskStatusCommand) -> list[str]:
        if (command.task_id is None) == (command.issue_number is None):
            raise ValidationError("Provide exactly one of --task-id or --issue.")
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as services:
            if command.issue_number is not None:
                tasks = services.tasks.find_by_issue(command.issue_number)
                if not tasks:
                    return [f"No tasks found for issue #{command.issue_number}."]
            else:
                tasks = [services.tasks.get(command.task_id).unwrap()]
            lines: list[str] = []
            for task in tasks:
                lines.append(_task_line(task))
                if task.result:
                    lines.append(f"  result: {task.result}")
                for delivery in services.tasks.get_deliveries(task.id).unwrap():
                    lines.append(
                        f"  delivery: method={delivery.method.value} agent={delivery.agent} "
                        f"sent_at={delivery.sent_at.isoformat()}"
                        + (f" response={delivery.response}" if delivery.response else ""),
                    )
        return lines

    # -- dispatch --------------------------------------------------------------

    def dispatch(self, command: DispatchCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        agent = command.agent or settings.distribution.default_target_agent
        with _services(settings) as services:
            result = services.gateway.dispatch(agent, command.reference).unwrap()
        lines = [_dispatch_line(result)]
        if result.prompt:
            lines.extend(["", result.prompt])
        return lines

    def create_and_dispatch(self, command: CreateAndDispatchCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        agent = command.agent or settings.distribution.default_target_agent
        with _services(settings) as services:
            result = services.gateway.create_and_dispatch(
                command.issue_number,
                summary=command.summary,
                target_agent=agent,
                issue_url=settings.distribution.issue_url(command.issue_number),
            ).unwrap()
        line = (
            f"action={result.action} dispatch_status={result.dispatch_status} "
            f"task_id={result.task.id} issue=#{command.issue_number} "
            f"status={result.task.status.value}"
        )
        if result.reason:
            line += f" reason={result.reason}"
        return [line]

    def run_loop(self, command: LoopCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        notifier = build_notifier(settings)
        try:
            with _services(settings, notifier=notifier) as services:
                orphans = services.orphans.report_on_startup()

            loop = DistributionLoop(
                repository_factory=lambda: HandoffRepository(
                    settings.db_path,
                    sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
                ),
                interval_seconds=settings.distribution.interval_seconds,
                pull_agents=settings.distribution.pull_agents,
                hub_agent_name=settings.distribution.hub_agent_name,
                notifier=notifier,
            )
            summary = loop.run_once() if command.once else loop.run_loop(max_ticks=command.max_ticks)
        finally:
            if isinstance(notifier, HttpNotifier):
                notifier.close()

        lines = []
        if orphans:
            lines.append(f"Orphaned activities found: {len(orphans)} (see 'orphans list').")
        lines.append(
            "Distribution summary: "
            f"ticks={summary.ticks} ready={summary.ready} pushed={summary.pushed} "
            f"notified={summary.notified} skipped={summary.skipped} failed={summary.failed}",
        )
        lines.extend(f"  error: {error}" for error in summary.errors)
        return lines

    # -- orphans and activity --------------------------------------------------

    def list_orphans(self, command: OrphanListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as services:
            orphans = services.orphans.find_orphaned()
        if not orphans:
            return ["No orphaned activities."]
        return [_orphan_line(orphan) for orphan in orphans]

    def resolve_orphan(self, command: OrphanResolveCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as services:
            handlers = {
                "complete": services.orphans.mark_completed,
                "reset": services.orphans.reset,
                "ignore": services.orphans.ignore,
            }
            handler = handlers.get(command.resolution)
            if handler is None:
                raise ValidationError(f"Unsupported resolution: {command.resolution}")
            activity = handler(command.activity_id).unwrap()
        return [f"Orphan resolved ({command.resolution}): {_activity_line(activity)}"]

    def start_activity(self, command: ActivityStartCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as services:
            activity = services.idle.record_start(command.agent, task_id=command.task_id).unwrap()
        return [f"Activity started: {_activity_line(activity)}"]

    def finish_activity(self, command: ActivityFinishCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _services(settings) as services:
            activity = services.idle.finish_agent(command.agent)
        if activity is None:
            return [f"{command.agent.strip().lower()} has no activity in progress."]
        return [f"Activity finished: {_activity_line(activity)}"]


@contextmanager
def _services(
    settings: Settings,
    *,
    notifier: Notifier | None = None,
) -> Iterator[HandoffServices]:
    repository = HandoffRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    owned_notifier = notifier is None
    notifier = notifier or build_notifier(settings)
    try:
        yield build_services(repository, settings, notifier=notifier)
    finally:
        if owned_notifier and isinstance(notifier, HttpNotifier):
            notifier.close()
        repository.close()


def _filtered_tasks(services: HandoffServices, command: TaskListCommand) -> list[TaskView]:
    if command.list_filter == "ready":
        return services.tasks.get_ready_to_send()
    if command.list_filter == "awaiting-approval":
        return services.tasks.get_awaiting_approval()
    if command.list_filter in {"notified", "sent"}:
        if not command.agent:
            raise ValidationError(f"--agent is required with the '{command.list_filter}' filter.")
        if command.list_filter == "notified":
            return services.tasks.get_notified(command.agent)
        return services.tasks.get_pending(command.agent)
    tasks = services.tasks.get_all(limit=command.limit)
    if command.agent:
        agent = command.agent.strip().lower()
        tasks = [task for task in tasks if task.target_agent == agent]
    return tasks


def _parse_metadata(raw: str | None) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValidationError(f"Metadata must be valid JSON: {error.msg}") from error
    if not isinstance(parsed, dict):
        raise ValidationError("Metadata must be a JSON object.")
    return parsed


def _agent_line(agent: AgentView) -> str:
    state = "active" if agent.is_active else "inactive"
    return f"{agent.name} label={agent.label} {state}"


def _message_line(message: MessageView) -> str:
    line = (
        f"message_id={message.id} status={message.status.value} "
        f"{message.source_agent}->{message.target_agent or '-'} type={message.message_type}"
    )
    if message.session_id:
        line += f" session={message.session_id}"
    if message.parent_message_id is not None:
        line += f" parent={message.parent_message_id}"
    if message.requires_approval:
        line += " gated"
    return f"{line} | {_preview(message.content)}"


def _task_line(task: TaskView) -> str:
    issue = f"#{task.issue_number}" if task.issue_number is not None else "-"
    return (
        f"task_id={task.id} status={task.status.value} "
        f"{task.created_by_agent}->{task.target_agent} issue={issue} "
        f"created_at={task.created_at.isoformat()} | {_preview(task.summary)}"
    )


def _dispatch_line(result: DispatchResult) -> str:
    line = f"{result.kind.value}: {result.message}"
    if result.task is not None:
        line += f" (task_id={result.task.id})"
    return line


def _orphan_line(orphan: OrphanedTaskView) -> str:
    issue = f"#{orphan.issue_number}" if orphan.issue_number is not None else "-"
    status = orphan.task_status.value if orphan.task_status is not None else "-"
    return (
        f"activity_id={orphan.activity_id} agent={orphan.agent_name} "
        f"started_at={orphan.started_at.isoformat()} task_id={orphan.task_id or '-'} "
        f"task_status={status} issue={issue}"
        + (f" | {_preview(orphan.summary)}" if orphan.summary else "")
    )


def _activity_line(activity: ActivityView) -> str:
    return (
        f"activity_id={activity.id} agent={activity.agent_name} "
        f"status={activity.status.value} task_id={activity.task_id or '-'}"
    )


def _preview(text: str, limit: int = 80) -> str:
    single_line = " ".join(text.split())
    if len(single_line) <= limit:
        return single_line
    return single_line[: limit - 3] + "..."
