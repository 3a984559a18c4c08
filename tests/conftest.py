"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from agent_handoff.orchestrator.dispatch import AgentLockRegistry
from agent_handoff.orchestrator.errors import DeliveryFailureError
from agent_handoff.orchestrator.repository import HandoffRepository


class RecordingNotifier:
    """Keeps every notification; fails the first ``fail_times`` calls."""

    def __init__(self, *, fail_times: int = 0) -> None:
        self.sent: list[tuple[str, str]] = []
        self.fail_times = fail_times

    def notify(self, text: str, *, source: str) -> None:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise DeliveryFailureError("Notification endpoint returned HTTP 503")
        self.sent.append((source, text))


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "handoff.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[HandoffRepository]:
    repo = HandoffRepository(db_path)
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def flaky_notifier() -> RecordingNotifier:
    return RecordingNotifier(fail_times=1)


@pytest.fixture()
def locks() -> AgentLockRegistry:
    return AgentLockRegistry()
