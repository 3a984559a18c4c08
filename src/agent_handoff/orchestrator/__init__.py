"""Agent orchestration engine: message hub, task queue, dispatch and recovery."""
