from __future__ import annotations

import logging

import allure
import pytest

from agent_handoff.orchestrator.dispatch import AgentLockRegistry, DispatchGateway
from agent_handoff.orchestrator.errors import ErrorKind
from agent_handoff.orchestrator.idle import IdleOracle
from agent_handoff.orchestrator.models import ActivityStatus, TaskCreate, TaskStatus, TaskView
from agent_handoff.orchestrator.orphans import OrphanRecovery
from agent_handoff.orchestrator.repository import HandoffRepository
from agent_handoff.orchestrator.tasks import TaskQueue

pytestmark = [
    allure.epic("Recovery"),
    allure.feature("Orphaned Tasks"),
]


def _dispatched_task(repository: HandoffRepository, locks: AgentLockRegistry) -> TaskView:
    for name in ("orchestrator", "claude"):
        repository.resolve_agent(name)
    task = repository.create_task(
        source_agent="orchestrator",
        payload=TaskCreate(
            target_agent="claude",
            summary="Fix login redirect",
            issue_url="https://github.com/acme/app/issues/42",
        ),
    )
    DispatchGateway(repository, locks=locks).dispatch("claude", 42).unwrap()
    return task


def test_reset_returns_task_to_pending_for_redispatch(
    repository: HandoffRepository,
    locks: AgentLockRegistry,
) -> None:
    task = _dispatched_task(repository, locks)
    recovery = OrphanRecovery(repository)

    orphans = recovery.find_orphaned()
    assert len(orphans) == 1
    orphan = orphans[0]
    assert orphan.agent_name == "claude"
    assert orphan.task_id == task.id
    assert orphan.issue_number == 42
    assert orphan.task_status == TaskStatus.SENT

    activity = recovery.reset(orphan.activity_id).unwrap()

    assert activity.status == ActivityStatus.COMPLETED
    reset_task = repository.get_task(task.id)
    assert reset_task.status == TaskStatus.PENDING
    assert reset_task.sent_at is None
    assert recovery.find_orphaned() == []
    assert IdleOracle(repository).is_idle("claude")

    redispatched = DispatchGateway(repository, locks=locks).dispatch("claude", 42).unwrap()
    assert redispatched.dispatched
    assert len(repository.list_deliveries(task.id)) == 2


def test_mark_completed_leaves_task_untouched(
    repository: HandoffRepository,
    locks: AgentLockRegistry,
) -> None:
    task = _dispatched_task(repository, locks)
    recovery = OrphanRecovery(repository)
    activity_id = recovery.find_orphaned()[0].activity_id

    recovery.mark_completed(activity_id).unwrap()

    assert repository.get_task(task.id).status == TaskStatus.SENT
    assert recovery.find_orphaned() == []


def test_ignore_closes_activity(repository: HandoffRepository) -> None:
    activity = IdleOracle(repository).record_start("opencode").unwrap()
    recovery = OrphanRecovery(repository)

    closed = recovery.ignore(activity.id).unwrap()

    assert closed.status == ActivityStatus.COMPLETED
    assert closed.task_id is None


def test_reset_of_terminal_task_fails_without_side_effects(
    repository: HandoffRepository,
) -> None:
    for name in ("orchestrator", "claude"):
        repository.resolve_agent(name)
    queue = TaskQueue(repository)
    task = queue.create(
        "orchestrator",
        TaskCreate(target_agent="claude", summary="Dropped work"),
    ).unwrap()
    queue.cancel(task.id).unwrap()
    activity = IdleOracle(repository).record_start("claude", task_id=task.id).unwrap()
    recovery = OrphanRecovery(repository)

    outcome = recovery.reset(activity.id)

    assert outcome.error is not None
    assert outcome.error.kind == ErrorKind.INVALID_STATE_TRANSITION
    assert outcome.error.message == "Cannot reset task with status 'cancelled'"
    assert [orphan.activity_id for orphan in recovery.find_orphaned()] == [activity.id]
    assert repository.get_task(task.id).status == TaskStatus.CANCELLED


def test_resolving_twice_is_rejected(repository: HandoffRepository) -> None:
    activity = IdleOracle(repository).record_start("claude").unwrap()
    recovery = OrphanRecovery(repository)
    recovery.mark_completed(activity.id).unwrap()

    again = recovery.mark_completed(activity.id)
    missing = recovery.reset(999)

    assert again.error is not None
    assert again.error.kind == ErrorKind.INVALID_STATE_TRANSITION
    assert again.error.message == f"Activity {activity.id} is not in progress"
    assert missing.error is not None
    assert missing.error.kind == ErrorKind.NOT_FOUND


def test_startup_report_logs_and_notifies_once(
    repository: HandoffRepository,
    locks: AgentLockRegistry,
    notifier,
    caplog: pytest.LogCaptureFixture,
) -> None:
    _dispatched_task(repository, locks)
    recovery = OrphanRecovery(repository, notifier=notifier)

    with caplog.at_level(logging.WARNING, logger="agent_handoff.orchestrator.orphans"):
        orphans = recovery.report_on_startup()

    assert len(orphans) == 1
    assert "Orphaned activity" in caplog.text
    assert notifier.sent == [
        ("orchestrator", "Found an unfinished task for claude: issue #42."),
    ]


def test_startup_report_summarises_several_orphans(
    repository: HandoffRepository,
    notifier,
) -> None:
    idle = IdleOracle(repository)
    idle.record_start("opencode").unwrap()
    idle.record_start("claude").unwrap()

    OrphanRecovery(repository, notifier=notifier).report_on_startup()

    assert notifier.sent == [
        ("orchestrator", "Found 2 unfinished tasks (claude, opencode)."),
    ]


def test_startup_report_survives_notification_failure(
    repository: HandoffRepository,
    flaky_notifier,
) -> None:
    IdleOracle(repository).record_start("claude").unwrap()

    orphans = OrphanRecovery(repository, notifier=flaky_notifier).report_on_startup()

    assert len(orphans) == 1
    assert flaky_notifier.sent == []


def test_startup_report_is_silent_without_orphans(
    repository: HandoffRepository,
    notifier,
) -> None:
    assert OrphanRecovery(repository, notifier=notifier).report_on_startup() == []
    assert notifier.sent == []
