"""CLI entrypoint for agent-handoff."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from agent_handoff import __version__
from agent_handoff.orchestrator.controllers import (
    MESSAGE_ACTIONS,
    ORPHAN_RESOLUTIONS,
    TASK_LIST_FILTERS,
    ActivityFinishCommand,
    ActivityStartCommand,
    AgentListCommand,
    AgentNameCommand,
    CreateAndDispatchCommand,
    DispatchCommand,
    HandoffCliController,
    LoopCommand,
    MessageActionCommand,
    MessageListCommand,
    MessageSendCommand,
    NarrationHistoryCommand,
    NarrationListCommand,
    NarrationStartCommand,
    NarrationUpdateCommand,
    OrphanListCommand,
    OrphanResolveCommand,
    TaskActionCommand,
    TaskCompleteCommand,
    TaskCreateCommand,
    TaskFetchCommand,
    TaskListCommand,
    TaskStatusCommand,
)
from agent_handoff.orchestrator.errors import HandoffError, StorageUnavailableError
from agent_handoff.orchestrator.models import CompletionOutcome

click.rich_click.USE_MARKDOWN = True
CONTROLLER = HandoffCliController()

DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-handoff")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    envvar="AGENT_HANDOFF_LOG_LEVEL",
    default="INFO",
    show_default=True,
    help="Logging verbosity.",
)
def agent_handoff(log_level: str) -> None:
    """Hand work between coding agents: messages, tasks, dispatch and recovery."""

    configure_logging(log_level)


# -- agents ---------------------------------------------------------------------


@agent_handoff.group()
def agents() -> None:
    """Agent registry commands."""


@agents.command("list")
@DB_PATH_OPTION
def agents_list(db_path: Path | None) -> None:
    """List registered agents."""

    _run(lambda: CONTROLLER.list_agents(AgentListCommand(db_path=db_path)))


@agents.command("register")
@DB_PATH_OPTION
@click.argument("name")
def agents_register(db_path: Path | None, name: str) -> None:
    """Register an agent (no-op when it is already active)."""

    _run(lambda: CONTROLLER.register_agent(AgentNameCommand(db_path=db_path, name=name)))


@agents.command("deactivate")
@DB_PATH_OPTION
@click.argument("name")
def agents_deactivate(db_path: Path | None, name: str) -> None:
    """Deactivate an agent so no new tasks can target it."""

    _run(
        lambda: CONTROLLER.set_agent_active(
            AgentNameCommand(db_path=db_path, name=name),
            active=False,
        ),
    )


@agents.command("activate")
@DB_PATH_OPTION
@click.argument("name")
def agents_activate(db_path: Path | None, name: str) -> None:
    """Re-activate a deactivated agent."""

    _run(
        lambda: CONTROLLER.set_agent_active(
            AgentNameCommand(db_path=db_path, name=name),
            active=True,
        ),
    )


# -- messages -------------------------------------------------------------------


@agent_handoff.group()
def messages() -> None:
    """Inter-agent message commands."""


@messages.command("send")
@DB_PATH_OPTION
@click.option("--from", "source_agent", required=True, help="Sending agent.")
@click.option("--to", "target_agent", required=True, help="Receiving agent.")
@click.option("--type", "message_type", default="note", show_default=True, help="Message type.")
@click.option("--metadata", "metadata_json", default=None, help="JSON object with metadata.")
@click.option(
    "--requires-approval/--no-requires-approval",
    default=False,
    show_default=True,
    help="Hold the message until a human approves it.",
)
@click.argument("content")
def messages_send(  # noqa: PLR0913
    db_path: Path | None,
    source_agent: str,
    target_agent: str,
    message_type: str,
    metadata_json: str | None,
    requires_approval: bool,
    content: str,
) -> None:
    """Queue a message from one agent to another."""

    _run(
        lambda: CONTROLLER.send_message(
            MessageSendCommand(
                db_path=db_path,
                source_agent=source_agent,
                target_agent=target_agent,
                message_type=message_type,
                content=content,
                metadata_json=metadata_json,
                requires_approval=requires_approval,
            ),
        ),
    )


@messages.command("list")
@DB_PATH_OPTION
@click.option("--for", "target_agent", default=None, help="Pending messages for this agent.")
@click.option("--awaiting-approval", is_flag=True, help="Only messages held for approval.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=100,
    show_default=True,
    help="Max messages to display.",
)
def messages_list(
    db_path: Path | None,
    target_agent: str | None,
    awaiting_approval: bool,
    limit: int,
) -> None:
    """Show the message queue, newest first."""

    _run(
        lambda: CONTROLLER.list_messages(
            MessageListCommand(
                db_path=db_path,
                target_agent=target_agent,
                awaiting_approval=awaiting_approval,
                limit=limit,
            ),
        ),
    )


@messages.command("mark")
@DB_PATH_OPTION
@click.argument("message_id", type=int)
@click.argument("action", type=click.Choice(MESSAGE_ACTIONS))
def messages_mark(db_path: Path | None, message_id: int, action: str) -> None:
    """Approve, cancel or acknowledge a message."""

    _run(
        lambda: CONTROLLER.message_action(
            MessageActionCommand(db_path=db_path, message_id=message_id, action=action),
        ),
    )


# -- narration threads ----------------------------------------------------------


@agent_handoff.group()
def narration() -> None:
    """Start/progress/complete narration threads."""


@narration.command("start")
@DB_PATH_OPTION
@click.option("--from", "source_agent", required=True, help="Agent starting the work.")
@click.option("--to", "target_agent", default=None, help="Optional addressee.")
@click.option("--session", "session_id", default=None, help="Correlation/session id.")
@click.argument("content")
def narration_start(
    db_path: Path | None,
    source_agent: str,
    target_agent: str | None,
    session_id: str | None,
    content: str,
) -> None:
    """Open a narration thread."""

    _run(
        lambda: CONTROLLER.start_narration(
            NarrationStartCommand(
                db_path=db_path,
                source_agent=source_agent,
                content=content,
                target_agent=target_agent,
                session_id=session_id,
            ),
        ),
    )


@narration.command("progress")
@DB_PATH_OPTION
@click.argument("parent_message_id", type=int)
@click.argument("content")
def narration_progress(db_path: Path | None, parent_message_id: int, content: str) -> None:
    """Append a progress message to an open thread."""

    _run(
        lambda: CONTROLLER.narration_progress(
            NarrationUpdateCommand(
                db_path=db_path,
                parent_message_id=parent_message_id,
                content=content,
            ),
        ),
    )


@narration.command("complete")
@DB_PATH_OPTION
@click.argument("parent_message_id", type=int)
@click.argument("summary")
def narration_complete(db_path: Path | None, parent_message_id: int, summary: str) -> None:
    """Close a thread with a completion summary."""

    _run(
        lambda: CONTROLLER.narration_complete(
            NarrationUpdateCommand(
                db_path=db_path,
                parent_message_id=parent_message_id,
                content=summary,
            ),
        ),
    )


@narration.command("active")
@DB_PATH_OPTION
@click.option("--from", "source_agent", default=None, help="Only threads started by this agent.")
def narration_active(db_path: Path | None, source_agent: str | None) -> None:
    """List open threads."""

    _run(
        lambda: CONTROLLER.list_narrations(
            NarrationListCommand(db_path=db_path, source_agent=source_agent),
        ),
    )


@narration.command("history")
@DB_PATH_OPTION
@click.argument("start_message_id", type=int)
def narration_history(db_path: Path | None, start_message_id: int) -> None:
    """Show a thread in creation order."""

    _run(
        lambda: CONTROLLER.narration_history(
            NarrationHistoryCommand(db_path=db_path, start_message_id=start_message_id),
        ),
    )


# -- tasks ----------------------------------------------------------------------


@agent_handoff.group()
def tasks() -> None:
    """Task queue commands."""


@tasks.command("create")
@DB_PATH_OPTION
@click.option("--from", "source_agent", required=True, help="Creating agent.")
@click.option("--to", "target_agent", required=True, help="Agent that should do the work.")
@click.option("--issue-url", default=None, help="Issue URL; the issue number is extracted.")
@click.option(
    "--requires-approval/--no-requires-approval",
    default=False,
    show_default=True,
    help="Hold the task until a human approves it.",
)
@click.argument("summary")
def tasks_create(  # noqa: PLR0913
    db_path: Path | None,
    source_agent: str,
    target_agent: str,
    issue_url: str | None,
    requires_approval: bool,
    summary: str,
) -> None:
    """Create a pending task."""

    _run(
        lambda: CONTROLLER.create_task(
            TaskCreateCommand(
                db_path=db_path,
                source_agent=source_agent,
                target_agent=target_agent,
                summary=summary,
                issue_url=issue_url,
                requires_approval=requires_approval,
            ),
        ),
    )


@tasks.command("list")
@DB_PATH_OPTION
@click.option("--agent", default=None, help="Target agent filter.")
@click.option(
    "--filter",
    "list_filter",
    type=click.Choice(TASK_LIST_FILTERS),
    default="all",
    show_default=True,
    help="Which tasks to show.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=100,
    show_default=True,
    help="Max tasks to display.",
)
def tasks_list(db_path: Path | None, agent: str | None, list_filter: str, limit: int) -> None:
    """List tasks."""

    _run(
        lambda: CONTROLLER.list_tasks(
            TaskListCommand(db_path=db_path, agent=agent, list_filter=list_filter, limit=limit),
        ),
    )


@tasks.command("approve")
@DB_PATH_OPTION
@click.argument("task_id", type=int)
def tasks_approve(db_path: Path | None, task_id: int) -> None:
    """Approve a pending task."""

    _task_action(db_path, task_id, "approve")


@tasks.command("cancel")
@DB_PATH_OPTION
@click.argument("task_id", type=int)
def tasks_cancel(db_path: Path | None, task_id: int) -> None:
    """Cancel a task that has not been handed over yet."""

    _task_action(db_path, task_id, "cancel")


@tasks.command("notify")
@DB_PATH_OPTION
@click.argument("task_id", type=int)
def tasks_notify(db_path: Path | None, task_id: int) -> None:
    """Mark a task as announced to its pull agent."""

    _task_action(db_path, task_id, "notify")


@tasks.command("accept")
@DB_PATH_OPTION
@click.argument("task_id", type=int)
def tasks_accept(db_path: Path | None, task_id: int) -> None:
    """Accept a notified task and print its prompt."""

    _task_action(db_path, task_id, "accept")


@tasks.command("fetch")
@DB_PATH_OPTION
@click.argument("agent")
def tasks_fetch(db_path: Path | None, agent: str) -> None:
    """Accept the oldest notified task of AGENT."""

    _run(lambda: CONTROLLER.fetch_task(TaskFetchCommand(db_path=db_path, agent=agent)))


@tasks.command("complete")
@DB_PATH_OPTION
@click.argument("task_id", type=int)
@click.option("--result", default=None, help="Result summary reported by the agent.")
@click.option(
    "--outcome",
    type=click.Choice([outcome.value for outcome in CompletionOutcome]),
    default=CompletionOutcome.COMPLETED.value,
    show_default=True,
    help="How the work ended.",
)
@click.option(
    "--auto-dispatch/--no-auto-dispatch",
    envvar="AGENT_HANDOFF_AUTO_DISPATCH",
    default=True,
    show_default=True,
    help="Dispatch the agent's next task after a successful completion.",
)
def tasks_complete(
    db_path: Path | None,
    task_id: int,
    result: str | None,
    outcome: str,
    auto_dispatch: bool,
) -> None:
    """Complete a sent task."""

    _run(
        lambda: CONTROLLER.complete_task(
            TaskCompleteCommand(
                db_path=db_path,
                task_id=task_id,
                result=result,
                outcome=outcome,
                auto_dispatch=auto_dispatch,
            ),
        ),
    )


@tasks.command("status")
@DB_PATH_OPTION
@click.option("--task-id", type=int, default=None, help="Task id.")
@click.option("--issue", "issue_number", type=int, default=None, help="Issue number.")
def tasks_status(db_path: Path | None, task_id: int | None, issue_number: int | None) -> None:
    """Show a task with its delivery records."""

    _run(
        lambda: CONTROLLER.task_status(
            TaskStatusCommand(db_path=db_path, task_id=task_id, issue_number=issue_number),
        ),
    )


# -- dispatch -------------------------------------------------------------------


@agent_handoff.command("dispatch")
@DB_PATH_OPTION
@click.option("--agent", default=None, help="Target agent (defaults to the configured one).")
@click.option("--issue", "reference", default=None, help="Issue number or issue URL.")
def dispatch(db_path: Path | None, agent: str | None, reference: str | None) -> None:
    """Hand the next pending task to an idle agent."""

    _run(
        lambda: CONTROLLER.dispatch(
            DispatchCommand(db_path=db_path, agent=agent, reference=reference),
        ),
    )


@agent_handoff.command("create-and-dispatch")
@DB_PATH_OPTION
@click.argument("issue_number", type=click.IntRange(min=1))
@click.option("--summary", default=None, help="Task summary for a newly created task.")
@click.option("--agent", default=None, help="Target agent (defaults to the configured one).")
def create_and_dispatch(
    db_path: Path | None,
    issue_number: int,
    summary: str | None,
    agent: str | None,
) -> None:
    """Create or reuse the task for an issue and dispatch it."""

    _run(
        lambda: CONTROLLER.create_and_dispatch(
            CreateAndDispatchCommand(
                db_path=db_path,
                issue_number=issue_number,
                summary=summary,
                agent=agent,
            ),
        ),
    )


@agent_handoff.group()
def loop() -> None:
    """Distribution loop commands."""


@loop.command("run")
@DB_PATH_OPTION
@click.option("--once", is_flag=True, help="Run a single tick.")
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many ticks.",
)
def loop_run(db_path: Path | None, once: bool, max_ticks: int | None) -> None:
    """Deliver ready tasks every interval until interrupted."""

    _run(
        lambda: CONTROLLER.run_loop(
            LoopCommand(db_path=db_path, once=once, max_ticks=max_ticks),
        ),
    )


# -- orphans and activity -------------------------------------------------------


@agent_handoff.group()
def orphans() -> None:
    """Orphaned task recovery commands."""


@orphans.command("list")
@DB_PATH_OPTION
def orphans_list(db_path: Path | None) -> None:
    """List activities left in progress."""

    _run(lambda: CONTROLLER.list_orphans(OrphanListCommand(db_path=db_path)))


@orphans.command("resolve")
@DB_PATH_OPTION
@click.argument("activity_id", type=int)
@click.argument("resolution", type=click.Choice(ORPHAN_RESOLUTIONS))
def orphans_resolve(db_path: Path | None, activity_id: int, resolution: str) -> None:
    """Complete, reset or ignore an orphaned activity."""

    _run(
        lambda: CONTROLLER.resolve_orphan(
            OrphanResolveCommand(db_path=db_path, activity_id=activity_id, resolution=resolution),
        ),
    )


@agent_handoff.group()
def activity() -> None:
    """Activity records for agents launched outside the dispatcher."""


@activity.command("start")
@DB_PATH_OPTION
@click.argument("agent")
@click.option("--task-id", type=int, default=None, help="Task the agent is working on.")
def activity_start(db_path: Path | None, agent: str, task_id: int | None) -> None:
    """Mark AGENT as busy."""

    _run(
        lambda: CONTROLLER.start_activity(
            ActivityStartCommand(db_path=db_path, agent=agent, task_id=task_id),
        ),
    )


@activity.command("finish")
@DB_PATH_OPTION
@click.argument("agent")
def activity_finish(db_path: Path | None, agent: str) -> None:
    """Mark AGENT as idle again."""

    _run(lambda: CONTROLLER.finish_activity(ActivityFinishCommand(db_path=db_path, agent=agent)))


def configure_logging(level: str) -> None:
    """Send log records to stderr; a no-op when the root logger is already configured."""

    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _task_action(db_path: Path | None, task_id: int, action: str) -> None:
    _run(
        lambda: CONTROLLER.task_action(
            TaskActionCommand(db_path=db_path, task_id=task_id, action=action),
        ),
    )


def _run(produce: Callable[[], list[str]]) -> None:
    try:
        lines = produce()
    except HandoffError as error:
        raise click.ClickException(error.message) from error
    except (StorageUnavailableError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_handoff()
