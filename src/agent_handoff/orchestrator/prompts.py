"""Prompt templates handed to agents together with their task."""

from __future__ import annotations

from agent_handoff.orchestrator.models import TaskView

IMPLEMENTATION_PROMPT = """\
New task to implement:
{summary}

Issue: {issue}

Read the issue for details, implement it, test it and deploy it.
When you are done, report the result with the task completion call for task {task_id}.
"""

VERIFICATION_PROMPT = """\
The implementation is finished:
{summary}

Issue: {issue}

Verify the behaviour together with the user. If the service needs a restart, ask the user.
"""

DEFAULT_PROMPT = """\
New task:
{summary}

Issue: {issue}
"""

AGENT_PROMPTS = {
    "claude": IMPLEMENTATION_PROMPT,
    "opencode": VERIFICATION_PROMPT,
}


def build_task_prompt(task: TaskView) -> str:
    """Render the prompt for ``task`` using the template of its target agent."""

    template = AGENT_PROMPTS.get(task.target_agent.lower(), DEFAULT_PROMPT)
    return template.format(
        summary=task.summary,
        issue=task.issue_url or "(none)",
        task_id=task.id,
    )


def build_notification(task: TaskView, *, pull: bool) -> str:
    """Short operator-facing line announcing a hand-over."""

    subject = (
        f"issue #{task.issue_number}" if task.issue_number is not None else f"task {task.id}"
    )
    if pull:
        return f"New task for {task.target_agent} from {task.created_by_agent}: {subject}."
    return f"Sending task to {task.target_agent}: {subject}."
