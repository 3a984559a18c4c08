"""Wiring of the orchestration components around one repository."""

from __future__ import annotations

from dataclasses import dataclass

from agent_handoff.config import Settings
from agent_handoff.orchestrator.dispatch import DispatchGateway
from agent_handoff.orchestrator.hub import MessageHub
from agent_handoff.orchestrator.idle import IdleOracle
from agent_handoff.orchestrator.notifier import HttpNotifier, LoggingNotifier, Notifier
from agent_handoff.orchestrator.orphans import OrphanRecovery
from agent_handoff.orchestrator.registry import AgentRegistry
from agent_handoff.orchestrator.repository import HandoffRepository
from agent_handoff.orchestrator.tasks import TaskQueue


@dataclass(slots=True)
class HandoffServices:
    """Components sharing one repository (one unit of work)."""

    repository: HandoffRepository
    registry: AgentRegistry
    idle: IdleOracle
    hub: MessageHub
    tasks: TaskQueue
    gateway: DispatchGateway
    orphans: OrphanRecovery


def build_notifier(settings: Settings) -> Notifier:
    if settings.notification.url is None:
        return LoggingNotifier()
    return HttpNotifier(
        settings.notification.url,
        timeout_seconds=settings.notification.timeout_seconds,
        max_retries=settings.notification.max_retries,
    )


def build_services(
    repository: HandoffRepository,
    settings: Settings,
    *,
    notifier: Notifier | None = None,
) -> HandoffServices:
    notifier = notifier or build_notifier(settings)
    hub_agent_name = settings.distribution.hub_agent_name
    idle = IdleOracle(repository)
    hub = MessageHub(repository)
    return HandoffServices(
        repository=repository,
        registry=AgentRegistry(repository),
        idle=idle,
        hub=hub,
        tasks=TaskQueue(repository, idle=idle),
        gateway=DispatchGateway(
            repository,
            idle=idle,
            hub=hub,
            notifier=notifier,
            hub_agent_name=hub_agent_name,
        ),
        orphans=OrphanRecovery(repository, notifier=notifier, source_name=hub_agent_name),
    )
