"""SQLModel ORM tables for hand-off storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, text
from sqlmodel import Field, SQLModel


class Agent(SQLModel, table=True):
    __tablename__ = "agents"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_agents_active_name",
            "name",
            unique=True,
            sqlite_where=text("is_active = 1"),
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    label: str
    is_active: bool = Field(default=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentMessage(SQLModel, table=True):
    __tablename__ = "agent_messages"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_agent_messages_target_status", "target_agent", "status"),
        Index(
            "uq_agent_messages_open_session_start",
            "session_id",
            unique=True,
            sqlite_where=text("phase = 'start' AND closed_at IS NULL AND session_id IS NOT NULL"),
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    source_agent: str = Field(index=True)
    target_agent: str | None = Field(default=None)
    message_type: str
    content: str = Field(sa_column=Column(Text, nullable=False))
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    requires_approval: bool = Field(default=False)
    status: str = Field(index=True)
    phase: str | None = Field(default=None)
    parent_message_id: int | None = Field(
        default=None,
        sa_column=Column(ForeignKey("agent_messages.id", ondelete="CASCADE"), index=True),
    )
    session_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    approved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    delivered_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    processed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    closed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class AgentTask(SQLModel, table=True):
    __tablename__ = "agent_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_agent_tasks_target_status_created", "target_agent_id", "status", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    created_by_agent_id: int = Field(
        sa_column=Column(ForeignKey("agents.id"), nullable=False),
    )
    target_agent_id: int = Field(
        sa_column=Column(ForeignKey("agents.id"), nullable=False),
    )
    summary: str = Field(sa_column=Column(Text, nullable=False))
    issue_url: str | None = Field(default=None)
    issue_number: int | None = Field(default=None, index=True)
    requires_approval: bool = Field(default=False)
    status: str = Field(index=True)
    result: str | None = Field(default=None, sa_column=Column(Text))
    session_id: str | None = Field(default=None)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    approved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    notified_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    sent_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class TaskDelivery(SQLModel, table=True):
    __tablename__ = "task_deliveries"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    task_id: int = Field(
        sa_column=Column(
            ForeignKey("agent_tasks.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    agent_id: int = Field(sa_column=Column(ForeignKey("agents.id"), nullable=False))
    method: str
    response: str | None = Field(default=None, sa_column=Column(Text))
    sent_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentActivity(SQLModel, table=True):
    __tablename__ = "agent_activities"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_agent_activities_agent_started", "agent_name", "started_at"),
        Index(
            "uq_agent_activities_agent_in_progress",
            "agent_name",
            unique=True,
            sqlite_where=text("status = 'in_progress'"),
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    agent_name: str
    status: str = Field(index=True)
    task_id: int | None = Field(
        default=None,
        sa_column=Column(ForeignKey("agent_tasks.id", ondelete="SET NULL"), index=True),
    )
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
