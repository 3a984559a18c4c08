from __future__ import annotations

import allure
import pytest

from agent_handoff.orchestrator.dispatch import (
    AgentLockRegistry,
    DispatchGateway,
    _parse_reference,
    task_session_id,
)
from agent_handoff.orchestrator.errors import (
    AgentBusyError,
    ConflictError,
    ErrorKind,
    InvalidStateTransitionError,
    ValidationError,
)
from agent_handoff.orchestrator.hub import MessageHub
from agent_handoff.orchestrator.idle import IdleOracle
from agent_handoff.orchestrator.models import (
    CompletionOutcome,
    DeliveryMethod,
    DispatchKind,
    MessageStatus,
    TaskCreate,
    TaskStatus,
    TaskView,
)
from agent_handoff.orchestrator.repository import HandoffRepository
from agent_handoff.orchestrator.tasks import TaskQueue

pytestmark = [
    allure.epic("Dispatch"),
    allure.feature("Single Task In Flight"),
]


def _gateway(repository, notifier, locks: AgentLockRegistry) -> DispatchGateway:
    return DispatchGateway(repository, notifier=notifier, locks=locks)


def _task(
    repository: HandoffRepository,
    *,
    issue_number: int | None = 42,
    target: str = "claude",
    summary: str = "Fix login redirect",
) -> TaskView:
    repository.resolve_agent("orchestrator")
    repository.resolve_agent(target)
    return repository.create_task(
        source_agent="orchestrator",
        payload=TaskCreate(
            target_agent=target,
            summary=summary,
            issue_url=(
                f"https://github.com/acme/app/issues/{issue_number}"
                if issue_number is not None
                else None
            ),
        ),
    )


def test_dispatch_by_issue_marks_sent_and_blocks_second_dispatch(
    repository: HandoffRepository,
    notifier,
    locks: AgentLockRegistry,
) -> None:
    task = _task(repository)
    gateway = _gateway(repository, notifier, locks)

    result = gateway.dispatch("claude", 42).unwrap()

    assert result.kind == DispatchKind.DISPATCHED
    assert result.task is not None
    assert result.task.id == task.id
    assert result.task.status == TaskStatus.SENT
    assert result.prompt is not None
    assert "New task to implement" in result.prompt
    assert not IdleOracle(repository).is_idle("claude")
    deliveries = repository.list_deliveries(task.id)
    assert [delivery.method for delivery in deliveries] == [DeliveryMethod.DISPATCH]

    _task(repository, issue_number=43, summary="Another")
    second = gateway.dispatch("claude").unwrap()
    assert second.kind == DispatchKind.AGENT_BUSY
    assert second.message == "claude is currently working on another task"


def test_dispatch_accepts_issue_url_and_hash_references(
    repository: HandoffRepository,
    notifier,
    locks: AgentLockRegistry,
) -> None:
    task = _task(repository)
    gateway = _gateway(repository, notifier, locks)

    result = gateway.dispatch("Claude", "https://github.com/acme/app/issues/42").unwrap()

    assert result.dispatched
    assert result.task is not None
    assert result.task.id == task.id
    assert _parse_reference("#42") == 42
    assert _parse_reference(" 42 ") == 42
    assert _parse_reference(None) is None
    with pytest.raises(ValidationError, match="Cannot read an issue number"):
        _parse_reference("not-an-issue")


@pytest.mark.parametrize("reference", ["#", "  ", "", "# "])
def test_blank_reference_is_rejected_instead_of_matching_any_task(
    repository: HandoffRepository,
    notifier,
    locks: AgentLockRegistry,
    reference: str,
) -> None:
    task = _task(repository)

    outcome = _gateway(repository, notifier, locks).dispatch("claude", reference)

    assert outcome.error is not None
    assert outcome.error.kind == ErrorKind.VALIDATION
    assert repository.get_task(task.id).status == TaskStatus.PENDING


def test_dispatch_reports_missing_issue_and_empty_queue(
    repository: HandoffRepository,
    notifier,
    locks: AgentLockRegistry,
) -> None:
    _task(repository)
    gateway = _gateway(repository, notifier, locks)

    missing = gateway.dispatch("claude", 99).unwrap()
    assert missing.kind == DispatchKind.TASK_NOT_FOUND
    assert missing.message == "No pending task found for issue #99"

    empty = gateway.dispatch("opencode").unwrap()
    assert empty.kind == DispatchKind.NO_PENDING_TASKS
    assert empty.task is None


def test_dispatch_rejects_bad_reference(
    repository: HandoffRepository,
    notifier,
    locks: AgentLockRegistry,
) -> None:
    outcome = _gateway(repository, notifier, locks).dispatch("claude", "tomorrow")

    assert outcome.error is not None
    assert outcome.error.kind == ErrorKind.VALIDATION


def test_dispatch_skips_cancelled_and_takes_oldest(
    repository: HandoffRepository,
    notifier,
    locks: AgentLockRegistry,
) -> None:
    cancelled = _task(repository, issue_number=None, summary="Dropped")
    oldest = _task(repository, issue_number=None, summary="Oldest live")
    _task(repository, issue_number=None, summary="Newest")
    gateway = _gateway(repository, notifier, locks)
    TaskQueue(repository).cancel(cancelled.id).unwrap()

    result = gateway.dispatch("claude").unwrap()

    assert result.task is not None
    assert result.task.id == oldest.id


def test_complete_and_continue_dispatches_next_task(
    repository: HandoffRepository,
    notifier,
    locks: AgentLockRegistry,
) -> None:
    first = _task(repository, issue_number=1, summary="First")
    second = _task(repository, issue_number=2, summary="Second")
    gateway = _gateway(repository, notifier, locks)
    gateway.dispatch("claude").unwrap()

    completed = gateway.complete_and_continue(first.id, "Shipped").unwrap()

    assert completed.task.status == TaskStatus.COMPLETED
    assert completed.task.result == "Shipped"
    assert completed.next_dispatch is not None
    assert completed.next_dispatch.kind == DispatchKind.DISPATCHED
    assert completed.next_dispatch.task is not None
    assert completed.next_dispatch.task.id == second.id


@pytest.mark.parametrize("outcome", [CompletionOutcome.FAILED, CompletionOutcome.BLOCKED])
def test_unsuccessful_completion_does_not_chain(
    repository: HandoffRepository,
    notifier,
    locks: AgentLockRegistry,
    outcome: CompletionOutcome,
) -> None:
    first = _task(repository, issue_number=1, summary="First")
    second = _task(repository, issue_number=2, summary="Second")
    gateway = _gateway(repository, notifier, locks)
    gateway.dispatch("claude").unwrap()

    completed = gateway.complete_and_continue(first.id, "Need credentials", outcome).unwrap()

    assert completed.next_dispatch is None
    assert completed.task.result == f"[{outcome.value.upper()}] Need credentials"
    assert repository.get_task(second.id).status == TaskStatus.PENDING
    assert IdleOracle(repository).is_idle("claude")


def test_complete_and_continue_rejects_unsent_task(
    repository: HandoffRepository,
    notifier,
    locks: AgentLockRegistry,
) -> None:
    task = _task(repository)

    outcome = _gateway(repository, notifier, locks).complete_and_continue(task.id, "done")

    assert outcome.error is not None
    assert outcome.error.kind == ErrorKind.INVALID_STATE_TRANSITION
    assert outcome.error.current_status == "pending"


def test_push_delivery_opens_thread_and_completion_closes_it(
    repository: HandoffRepository,
    notifier,
    locks: AgentLockRegistry,
) -> None:
    task = _task(repository)
    gateway = _gateway(repository, notifier, locks)
    hub = MessageHub(repository)

    delivered = gateway.deliver(task, pull=False)

    assert delivered.kind == DispatchKind.DISPATCHED
    thread = hub.find_open_start(task_session_id(task.id))
    assert thread is not None
    assert thread.source_agent == "orchestrator"
    assert thread.target_agent == "claude"
    deliveries = repository.list_deliveries(task.id)
    assert deliveries[0].method == DeliveryMethod.PUSH
    assert deliveries[0].response == f"Message ID: {thread.id}"
    assert notifier.sent == [("orchestrator", "Sending task to claude: issue #42.")]

    gateway.complete_and_continue(task.id, "Deployed", auto_dispatch=False).unwrap()

    assert hub.find_open_start(task_session_id(task.id)) is None
    history = hub.get_task_history(thread.id).unwrap()
    assert history[-1].content == "Deployed"


def test_pull_delivery_only_notifies(
    repository: HandoffRepository,
    notifier,
    locks: AgentLockRegistry,
) -> None:
    task = _task(repository, target="opencode")

    delivered = _gateway(repository, notifier, locks).deliver(task, pull=True)

    assert delivered.task is not None
    assert delivered.task.status == TaskStatus.NOTIFIED
    assert IdleOracle(repository).is_idle("opencode")
    assert notifier.sent == [
        ("orchestrator", "New task for opencode from orchestrator: issue #42."),
    ]


def test_deliver_to_busy_agent_changes_nothing(
    repository: HandoffRepository,
    notifier,
    locks: AgentLockRegistry,
) -> None:
    task = _task(repository)
    IdleOracle(repository).record_start("claude").unwrap()

    delivered = _gateway(repository, notifier, locks).deliver(task, pull=False)

    assert delivered.kind == DispatchKind.AGENT_BUSY
    assert repository.get_task(task.id).status == TaskStatus.PENDING
    assert notifier.sent == []


def test_create_and_dispatch_creates_then_reports_in_flight(
    repository: HandoffRepository,
    notifier,
    locks: AgentLockRegistry,
) -> None:
    repository.resolve_agent("claude")
    gateway = _gateway(repository, notifier, locks)

    created = gateway.create_and_dispatch(7, summary="Add dark mode").unwrap()

    assert created.action == "created"
    assert created.dispatch_status == "sent"
    assert created.task.status == TaskStatus.SENT
    assert created.task.created_by_agent == "orchestrator"
    assert created.task.issue_number == 7

    again = gateway.create_and_dispatch(7).unwrap()
    assert again.action == "in_flight"
    assert again.dispatch_status == "in_flight"
    assert again.task.id == created.task.id


def test_create_and_dispatch_never_reopens_finished_task(
    repository: HandoffRepository,
    notifier,
    locks: AgentLockRegistry,
) -> None:
    repository.resolve_agent("claude")
    gateway = _gateway(repository, notifier, locks)
    first = gateway.create_and_dispatch(7, summary="Add dark mode").unwrap()
    gateway.complete_and_continue(first.task.id, "Done", auto_dispatch=False).unwrap()

    second = gateway.create_and_dispatch(7, summary="Dark mode follow-up").unwrap()

    assert second.action == "created"
    assert second.task.id != first.task.id
    assert repository.get_task(first.task.id).status == TaskStatus.COMPLETED


def test_create_and_dispatch_reuses_pending_task_and_queues_when_busy(
    repository: HandoffRepository,
    notifier,
    locks: AgentLockRegistry,
) -> None:
    existing = _task(repository, issue_number=8)
    IdleOracle(repository).record_start("claude").unwrap()
    gateway = _gateway(repository, notifier, locks)

    result = gateway.create_and_dispatch(8).unwrap()

    assert result.action == "dispatched"
    assert result.dispatch_status == "queued"
    assert result.reason == "agent_busy"
    assert result.task.id == existing.id
    assert result.task.status == TaskStatus.PENDING


def test_create_and_dispatch_requires_known_agent(
    repository: HandoffRepository,
    notifier,
    locks: AgentLockRegistry,
) -> None:
    outcome = _gateway(repository, notifier, locks).create_and_dispatch(5, target_agent="ghost")

    assert outcome.error is not None
    assert outcome.error.kind == ErrorKind.VALIDATION
    assert repository.find_tasks_by_issue(5) == []


def test_lock_registry_returns_one_lock_per_agent() -> None:
    locks = AgentLockRegistry()

    assert locks.for_agent("claude") is locks.for_agent("claude")
    assert locks.for_agent("claude") is not locks.for_agent("opencode")


def test_push_of_task_cancelled_after_selection_writes_nothing(
    repository: HandoffRepository,
    notifier,
    locks: AgentLockRegistry,
) -> None:
    task = _task(repository)
    queue = TaskQueue(repository)
    [stale] = queue.get_ready_to_send()
    queue.cancel(task.id).unwrap()
    hub = MessageHub(repository)

    with pytest.raises(InvalidStateTransitionError, match="status 'cancelled'"):
        _gateway(repository, notifier, locks).deliver(stale, pull=False)

    assert repository.get_task(task.id).status == TaskStatus.CANCELLED
    assert hub.get_pending("claude") == []
    assert hub.get_active_tasks() == []
    assert repository.list_deliveries(task.id) == []
    assert IdleOracle(repository).is_idle("claude")
    assert notifier.sent == []


def test_failed_push_withdraws_the_thread_it_opened(
    repository: HandoffRepository,
    notifier,
    locks: AgentLockRegistry,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    task = _task(repository)
    hub = MessageHub(repository)

    def _lost_race(**_kwargs):
        raise ConflictError("Task state changed concurrently; please retry command")

    monkeypatch.setattr(repository, "mark_task_sent", _lost_race)

    with pytest.raises(ConflictError):
        _gateway(repository, notifier, locks).deliver(task, pull=False)

    assert hub.get_pending("claude") == []
    assert hub.find_open_start(task_session_id(task.id)) is None
    [withdrawn] = repository.list_messages()
    assert withdrawn.message_type == "task_start"
    assert withdrawn.status == MessageStatus.CANCELLED
    assert repository.get_task(task.id).status == TaskStatus.PENDING
    assert notifier.sent == []


def test_push_to_agent_that_became_busy_withdraws_thread_and_retries_later(
    repository: HandoffRepository,
    notifier,
    locks: AgentLockRegistry,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    task = _task(repository)
    gateway = _gateway(repository, notifier, locks)
    mark_task_sent = repository.mark_task_sent

    def _busy_once(**_kwargs):
        monkeypatch.setattr(repository, "mark_task_sent", mark_task_sent)
        raise AgentBusyError("claude is currently working on another task")

    monkeypatch.setattr(repository, "mark_task_sent", _busy_once)

    busy = gateway.deliver(task, pull=False)

    assert busy.kind == DispatchKind.AGENT_BUSY
    assert MessageHub(repository).get_pending("claude") == []

    delivered = gateway.deliver(task, pull=False)

    assert delivered.kind == DispatchKind.DISPATCHED
    [pending] = MessageHub(repository).get_pending("claude")
    assert pending.message_type == "task_start"
    assert repository.list_deliveries(task.id)[0].response == f"Message ID: {pending.id}"
