"""Message hub: free-form inter-agent messages and narration threads."""

from __future__ import annotations

import logging

from agent_handoff.orchestrator.errors import Outcome, attempt
from agent_handoff.orchestrator.models import (
    MessageAction,
    MessageCreate,
    MessagePhase,
    MessageView,
)
from agent_handoff.orchestrator.repository import HandoffRepository

logger = logging.getLogger(__name__)


class MessageHub:
    """Routes messages between agents.

    Standalone messages follow ``pending -> approved -> delivered -> processed``
    with cancellation from ``pending`` or ``approved``. Narration threads are a
    start message followed by progress messages and one completion message
    that closes the thread.
    """

    def __init__(self, repository: HandoffRepository) -> None:
        self.repository = repository

    def send(self, message: MessageCreate) -> Outcome[MessageView]:
        def _send() -> MessageView:
            created = self.repository.add_message(message)
            self.repository.resolve_agent(created.source_agent)
            if created.target_agent:
                self.repository.resolve_agent(created.target_agent)
            logger.info(
                "Message %s queued: %s -> %s (%s)",
                created.id,
                created.source_agent,
                created.target_agent,
                created.message_type,
            )
            return created

        return attempt(_send)

    def get_pending(self, target_agent: str) -> list[MessageView]:
        return self.repository.list_pending_messages(target_agent)

    def approve(self, message_id: int) -> Outcome[MessageView]:
        return self._transition(message_id, MessageAction.APPROVE)

    def cancel(self, message_id: int) -> Outcome[MessageView]:
        return self._transition(message_id, MessageAction.CANCEL)

    def mark_delivered(self, message_id: int) -> Outcome[MessageView]:
        return self._transition(message_id, MessageAction.DELIVER)

    def mark_processed(self, message_id: int) -> Outcome[MessageView]:
        return self._transition(message_id, MessageAction.PROCESS)

    def start_task(
        self,
        source_agent: str,
        content: str,
        *,
        target_agent: str | None = None,
        session_id: str | None = None,
    ) -> Outcome[MessageView]:
        """Open a narration thread for work ``source_agent`` is starting."""

        def _start() -> MessageView:
            started = self.repository.start_thread(
                source_agent=source_agent,
                content=content,
                target_agent=target_agent,
                session_id=session_id,
            )
            self.repository.resolve_agent(started.source_agent)
            logger.info(
                "Task thread %s started by %s (session=%s)",
                started.id,
                started.source_agent,
                started.session_id,
            )
            return started

        return attempt(_start)

    def send_progress(self, parent_message_id: int, content: str) -> Outcome[MessageView]:
        return attempt(
            lambda: self.repository.append_to_thread(
                parent_message_id=parent_message_id,
                content=content,
                phase=MessagePhase.PROGRESS,
            ),
        )

    def complete_task(self, parent_message_id: int, summary: str) -> Outcome[MessageView]:
        outcome = attempt(
            lambda: self.repository.append_to_thread(
                parent_message_id=parent_message_id,
                content=summary,
                phase=MessagePhase.COMPLETE,
            ),
        )
        if outcome.ok:
            logger.info("Task thread %s completed", parent_message_id)
        return outcome

    def get_active_tasks(self, source_agent: str | None = None) -> list[MessageView]:
        return self.repository.list_open_starts(source_agent=source_agent)

    def get_task_history(self, start_message_id: int) -> Outcome[list[MessageView]]:
        return attempt(lambda: self.repository.get_thread(start_message_id))

    def find_open_start(self, session_id: str) -> MessageView | None:
        return self.repository.find_open_start(session_id)

    def get_queue(self, *, limit: int = 100) -> list[MessageView]:
        return self.repository.list_messages(limit=limit)

    def get_awaiting_approval(self) -> list[MessageView]:
        return self.repository.list_messages_awaiting_approval()

    def _transition(self, message_id: int, action: MessageAction) -> Outcome[MessageView]:
        return attempt(
            lambda: self.repository.transition_message(message_id=message_id, action=action),
        )
