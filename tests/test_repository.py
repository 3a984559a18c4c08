from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_handoff.orchestrator.errors import (
    AgentBusyError,
    ConflictError,
    InvalidStateTransitionError,
    NotFoundError,
    StorageUnavailableError,
    ValidationError,
)
from agent_handoff.orchestrator.models import (
    ActivityStatus,
    CompletionOutcome,
    DeliveryMethod,
    MessageAction,
    MessageCreate,
    MessageStatus,
    TaskAction,
    TaskCreate,
    TaskStatus,
)
from agent_handoff.orchestrator.repository import HandoffRepository

pytestmark = [
    allure.epic("Hand-off Storage"),
    allure.feature("Repository Transitions"),
]


def _create_task(
    repository: HandoffRepository,
    *,
    summary: str = "Fix login redirect",
    target: str = "claude",
    issue_url: str | None = "https://github.com/acme/app/issues/42",
    requires_approval: bool = False,
):
    repository.resolve_agent("orchestrator")
    repository.resolve_agent(target)
    return repository.create_task(
        source_agent="orchestrator",
        payload=TaskCreate(
            target_agent=target,
            summary=summary,
            issue_url=issue_url,
            requires_approval=requires_approval,
        ),
    )


def test_resolve_agent_registers_once_case_insensitively(repository: HandoffRepository) -> None:
    first = repository.resolve_agent("  Claude ")
    second = repository.resolve_agent("CLAUDE")

    assert first.id == second.id
    assert first.name == "claude"
    assert first.label == "agent:claude"
    assert first.is_active is True
    assert [agent.name for agent in repository.list_agents()] == ["claude"]


def test_deactivated_agent_is_replaced_by_a_new_row(repository: HandoffRepository) -> None:
    original = repository.resolve_agent("claude")

    deactivated = repository.set_agent_active("claude", active=False)
    assert deactivated.is_active is False
    assert repository.find_agent("claude") is None

    replacement = repository.resolve_agent("claude")
    assert replacement.id != original.id
    assert len(repository.list_agents()) == 2


def test_set_agent_active_unknown_agent_raises_not_found(repository: HandoffRepository) -> None:
    with pytest.raises(NotFoundError, match="Agent 'ghost' not found"):
        repository.set_agent_active("ghost", active=False)


def test_create_task_extracts_issue_number_from_url(repository: HandoffRepository) -> None:
    task = _create_task(repository)

    assert task.status == TaskStatus.PENDING
    assert task.issue_number == 42
    assert task.created_by_agent == "orchestrator"
    assert task.target_agent == "claude"
    assert task.sent_at is None


def test_create_task_rejects_unknown_target_agent(repository: HandoffRepository) -> None:
    repository.resolve_agent("orchestrator")

    with pytest.raises(ValidationError, match="Agent 'ghost' not found"):
        repository.create_task(
            source_agent="orchestrator",
            payload=TaskCreate(target_agent="ghost", summary="Nobody home"),
        )


def test_task_transition_rejects_illegal_action_with_current_status(
    repository: HandoffRepository,
) -> None:
    task = _create_task(repository, requires_approval=True)

    approved = repository.transition_task(task_id=task.id, action=TaskAction.APPROVE)
    assert approved.status == TaskStatus.APPROVED
    assert approved.approved_at is not None

    with pytest.raises(InvalidStateTransitionError) as exc_info:
        repository.transition_task(task_id=task.id, action=TaskAction.APPROVE)
    assert exc_info.value.message == "Cannot approve task with status 'approved'"
    assert exc_info.value.current_status == "approved"

    with pytest.raises(InvalidStateTransitionError, match="Cannot complete task"):
        repository.complete_task(task_id=task.id, result="done")


def test_transition_unknown_task_raises_not_found(repository: HandoffRepository) -> None:
    with pytest.raises(NotFoundError, match="Task 999 not found"):
        repository.transition_task(task_id=999, action=TaskAction.CANCEL)


def test_mark_task_sent_records_delivery(repository: HandoffRepository) -> None:
    task = _create_task(repository)

    sent = repository.mark_task_sent(
        task_id=task.id,
        method=DeliveryMethod.MANUAL,
        response="handed over in chat",
    )

    assert sent.status == TaskStatus.SENT
    assert sent.sent_at is not None
    deliveries = repository.list_deliveries(task.id)
    assert len(deliveries) == 1
    assert deliveries[0].method == DeliveryMethod.MANUAL
    assert deliveries[0].agent == "claude"
    assert deliveries[0].response == "handed over in chat"


def test_mark_task_sent_rolls_back_when_agent_is_busy(repository: HandoffRepository) -> None:
    task = _create_task(repository)
    repository.start_activity(agent_name="claude")

    with pytest.raises(AgentBusyError, match="claude is currently working on another task"):
        repository.mark_task_sent(
            task_id=task.id,
            method=DeliveryMethod.DISPATCH,
            action=TaskAction.DISPATCH,
            open_activity=True,
        )

    assert repository.get_task(task.id).status == TaskStatus.PENDING
    assert repository.list_deliveries(task.id) == []


def test_complete_task_prefixes_non_success_outcomes_and_closes_activity(
    repository: HandoffRepository,
) -> None:
    task = _create_task(repository)
    repository.mark_task_sent(
        task_id=task.id,
        method=DeliveryMethod.DISPATCH,
        action=TaskAction.DISPATCH,
        open_activity=True,
    )

    completed = repository.complete_task(
        task_id=task.id,
        result="tests keep failing",
        outcome=CompletionOutcome.FAILED,
    )

    assert completed.status == TaskStatus.COMPLETED
    assert completed.result == "[FAILED] tests keep failing"
    latest = repository.latest_activity("claude")
    assert latest is not None
    assert latest.status == ActivityStatus.COMPLETED
    assert latest.completed_at is not None


def test_ready_tasks_exclude_gated_until_approved(repository: HandoffRepository) -> None:
    open_task = _create_task(repository, summary="Ungated", issue_url=None)
    gated = _create_task(repository, summary="Gated", issue_url=None, requires_approval=True)

    assert [task.id for task in repository.list_ready_tasks()] == [open_task.id]
    assert [task.id for task in repository.list_tasks_awaiting_approval()] == [gated.id]

    repository.transition_task(task_id=gated.id, action=TaskAction.APPROVE)
    assert [task.id for task in repository.list_ready_tasks()] == [open_task.id, gated.id]


def test_find_tasks_by_issue_returns_newest_first(repository: HandoffRepository) -> None:
    older = _create_task(repository, summary="First attempt")
    newer = _create_task(repository, summary="Second attempt")

    assert [task.id for task in repository.find_tasks_by_issue(42)] == [newer.id, older.id]
    assert repository.find_tasks_by_issue(7) == []


def test_message_transition_error_names_status(repository: HandoffRepository) -> None:
    message = repository.add_message(
        MessageCreate(
            source_agent="claude",
            target_agent="opencode",
            message_type="note",
            content="Deployed to staging",
            metadata={"env": "staging"},
        ),
    )
    assert message.metadata == {"env": "staging"}

    approved = repository.transition_message(message_id=message.id, action=MessageAction.APPROVE)
    assert approved.status == MessageStatus.APPROVED

    with pytest.raises(InvalidStateTransitionError) as exc_info:
        repository.transition_message(message_id=message.id, action=MessageAction.APPROVE)
    assert exc_info.value.message == "Cannot approve message with status 'approved'"


def test_process_stamps_delivery_when_skipped(repository: HandoffRepository) -> None:
    message = repository.add_message(
        MessageCreate(
            source_agent="claude",
            target_agent="opencode",
            message_type="note",
            content="Ready for review",
        ),
    )

    processed = repository.transition_message(message_id=message.id, action=MessageAction.PROCESS)

    assert processed.status == MessageStatus.PROCESSED
    assert processed.delivered_at is not None
    assert processed.processed_at is not None


def test_add_message_requires_content(repository: HandoffRepository) -> None:
    with pytest.raises(ValidationError, match="Message content is required"):
        repository.add_message(
            MessageCreate(
                source_agent="claude",
                target_agent="opencode",
                message_type="note",
                content="   ",
            ),
        )


def test_complete_activity_is_idempotent(repository: HandoffRepository) -> None:
    activity = repository.start_activity(agent_name="claude")

    first = repository.complete_activity(activity.id)
    second = repository.complete_activity(activity.id)

    assert first.status == ActivityStatus.COMPLETED
    assert second.completed_at == first.completed_at


def test_unreachable_store_raises_storage_unavailable(tmp_path: Path) -> None:
    repository = HandoffRepository(tmp_path / "missing-dir" / "handoff.db")
    try:
        with pytest.raises(StorageUnavailableError, match="SQLite store unavailable"):
            repository.list_agents()
    finally:
        repository.close()


def _apply_task_action(repository: HandoffRepository, task_id: int, action: TaskAction) -> None:
    if action == TaskAction.COMPLETE:
        repository.complete_task(task_id=task_id, result="done again")
    elif action in {TaskAction.ACCEPT, TaskAction.MARK_SENT, TaskAction.DISPATCH}:
        repository.mark_task_sent(
            task_id=task_id,
            method=DeliveryMethod.MANUAL,
            action=action,
            open_activity=True,
        )
    else:
        repository.transition_task(task_id=task_id, action=action)


def _finished_task(repository: HandoffRepository, status: TaskStatus):
    task = _create_task(repository)
    if status == TaskStatus.CANCELLED:
        return repository.transition_task(task_id=task.id, action=TaskAction.CANCEL)
    repository.mark_task_sent(task_id=task.id, method=DeliveryMethod.MANUAL)
    return repository.complete_task(task_id=task.id, result="Shipped")


@pytest.mark.parametrize("status", [TaskStatus.COMPLETED, TaskStatus.CANCELLED])
@pytest.mark.parametrize("action", list(TaskAction))
def test_finished_task_rejects_every_action(
    repository: HandoffRepository,
    status: TaskStatus,
    action: TaskAction,
) -> None:
    task = _finished_task(repository, status)
    deliveries = repository.list_deliveries(task.id)

    with pytest.raises(InvalidStateTransitionError) as exc_info:
        _apply_task_action(repository, task.id, action)

    assert exc_info.value.current_status == status.value
    unchanged = repository.get_task(task.id)
    assert unchanged.status == status
    assert unchanged.result == task.result
    assert repository.list_deliveries(task.id) == deliveries
    assert repository.latest_activity("claude") is None


@pytest.mark.parametrize("action", list(MessageAction))
def test_cancelled_message_rejects_every_action(
    repository: HandoffRepository,
    action: MessageAction,
) -> None:
    message = repository.add_message(
        MessageCreate(
            source_agent="claude",
            target_agent="opencode",
            message_type="note",
            content="Ready for review",
        ),
    )
    repository.transition_message(message_id=message.id, action=MessageAction.CANCEL)

    with pytest.raises(InvalidStateTransitionError) as exc_info:
        repository.transition_message(message_id=message.id, action=action)

    assert exc_info.value.current_status == "cancelled"
    assert repository.get_message(message.id).status == MessageStatus.CANCELLED


@pytest.mark.parametrize("requires_approval", [False, True])
def test_withdraw_notification_restores_ready_status(
    repository: HandoffRepository,
    requires_approval: bool,
) -> None:
    task = _create_task(repository, target="opencode", requires_approval=requires_approval)
    if requires_approval:
        repository.transition_task(task_id=task.id, action=TaskAction.APPROVE)
    repository.transition_task(task_id=task.id, action=TaskAction.NOTIFY)

    withdrawn = repository.withdraw_notification(task_id=task.id)

    assert withdrawn.status == (TaskStatus.APPROVED if requires_approval else TaskStatus.PENDING)
    assert withdrawn.notified_at is None
    assert [ready.id for ready in repository.list_ready_tasks()] == [task.id]

    with pytest.raises(InvalidStateTransitionError, match="status 'pending'|status 'approved'"):
        repository.withdraw_notification(task_id=task.id)


def test_withdraw_thread_cancels_and_closes_start_message(repository: HandoffRepository) -> None:
    start = repository.start_thread(
        source_agent="orchestrator",
        content="New task to implement",
        target_agent="claude",
        session_id="task-1",
    )

    withdrawn = repository.withdraw_thread(start.id)

    assert withdrawn.status == MessageStatus.CANCELLED
    assert repository.find_open_start("task-1") is None
    assert repository.list_pending_messages("claude") == []
    with pytest.raises(ConflictError, match="can no longer be withdrawn"):
        repository.withdraw_thread(start.id)
