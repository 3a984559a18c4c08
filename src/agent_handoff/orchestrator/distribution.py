"""Periodic distribution loop delivering ready tasks to their agents."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from agent_handoff.orchestrator.dispatch import AGENT_LOCKS, AgentLockRegistry, DispatchGateway
from agent_handoff.orchestrator.errors import (
    ConflictError,
    HandoffError,
    InvalidStateTransitionError,
)
from agent_handoff.orchestrator.models import DispatchKind, DistributionSummary
from agent_handoff.orchestrator.notifier import LoggingNotifier, Notifier
from agent_handoff.orchestrator.repository import HandoffRepository
from agent_handoff.orchestrator.tasks import TaskQueue

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 10.0
DEFAULT_PULL_AGENTS = ("opencode",)


class DistributionLoop:
    """Ticks on a fixed interval and delivers every ready task.

    Each tick opens its own repository through ``repository_factory`` and
    closes it afterwards. Ticks never overlap. A failure on one task is logged
    and the tick moves on to the next one; the task stays ready and is tried
    again on the following tick.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository_factory: Callable[[], HandoffRepository],
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        pull_agents: tuple[str, ...] = DEFAULT_PULL_AGENTS,
        hub_agent_name: str = "orchestrator",
        notifier: Notifier | None = None,
        locks: AgentLockRegistry = AGENT_LOCKS,
    ) -> None:
        self.repository_factory = repository_factory
        self.interval_seconds = interval_seconds
        self.pull_agents = frozenset(agent.lower() for agent in pull_agents)
        self.hub_agent_name = hub_agent_name
        self.notifier = notifier or LoggingNotifier()
        self.locks = locks
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def request_stop(self) -> None:
        self._stop.set()

    def run_once(self) -> DistributionSummary:
        """Run a single tick."""

        summary = DistributionSummary(ticks=1)
        repository = self.repository_factory()
        try:
            queue = TaskQueue(repository)
            gateway = DispatchGateway(
                repository,
                idle=queue.idle,
                notifier=self.notifier,
                locks=self.locks,
                hub_agent_name=self.hub_agent_name,
            )
            ready = queue.get_ready_to_send()
            summary.ready = len(ready)
            for task in ready:
                if self._stop.is_set():
                    break
                pull = task.target_agent.lower() in self.pull_agents
                try:
                    delivered = gateway.deliver(task, pull=pull)
                except (ConflictError, InvalidStateTransitionError) as error:
                    logger.info("Task %s skipped: %s", task.id, error.message)
                    summary.skipped += 1
                    continue
                except HandoffError as error:
                    logger.warning("Task %s delivery failed: %s", task.id, error.message)
                    summary.failed += 1
                    summary.errors.append(f"task {task.id}: {error.message}")
                    continue
                if delivered.kind != DispatchKind.DISPATCHED:
                    summary.skipped += 1
                elif pull:
                    summary.notified += 1
                else:
                    summary.pushed += 1
        finally:
            repository.close()

        if summary.ready:
            logger.info(
                "Distribution tick: ready=%d pushed=%d notified=%d skipped=%d failed=%d",
                summary.ready,
                summary.pushed,
                summary.notified,
                summary.skipped,
                summary.failed,
            )
        return summary

    def run_loop(self, *, max_ticks: int | None = None) -> DistributionSummary:
        """Tick until stopped or ``max_ticks`` ticks have run.

        Args:
            max_ticks: Stop after this many ticks (None = until SIGINT/SIGTERM).
        """

        aggregate = DistributionSummary()
        with self._signal_handlers():
            while not self._stop.is_set():
                aggregate.add(self._guarded_tick())
                if max_ticks is not None and aggregate.ticks >= max_ticks:
                    break
                self._stop.wait(timeout=self.interval_seconds)
        return aggregate

    def start(self) -> None:
        """Run the loop on a daemon thread."""

        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._thread_loop,
            daemon=True,
            name="handoff-distribution",
        )
        self._thread.start()
        logger.info("Distribution loop started (interval=%.1fs)", self.interval_seconds)

    def stop(self, *, timeout: float = 15.0) -> None:
        self._stop.set()
        if self._thread is None:
            return
        self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("Distribution loop stopped")

    def _thread_loop(self) -> None:
        while not self._stop.is_set():
            self._guarded_tick()
            self._stop.wait(timeout=self.interval_seconds)

    def _guarded_tick(self) -> DistributionSummary:
        try:
            return self.run_once()
        except Exception:
            logger.exception("Distribution tick failed")
            return DistributionSummary(ticks=1, failed=1)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s, stopping distribution loop", name)
            self._stop.set()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
