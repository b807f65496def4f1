"""SQLModel ORM tables for the workspace store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Text,
    UniqueConstraint,
)
from sqlmodel import Field, SQLModel


class Project(SQLModel, table=True):
    __tablename__ = "projects"  # type: ignore[bad-override]

    project_id: str = Field(primary_key=True)
    key: str = Field(unique=True, index=True)
    name: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Epic(SQLModel, table=True):
    __tablename__ = "epics"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("project_id", "key", name="uq_epics_project_key"),)

    epic_id: str = Field(primary_key=True)
    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    key: str = Field(index=True)
    title: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class UserStory(SQLModel, table=True):
    __tablename__ = "user_stories"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("project_id", "key", name="uq_user_stories_project_key"),)

    story_id: str = Field(primary_key=True)
    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    epic_id: str = Field(
        sa_column=Column(
            ForeignKey("epics.epic_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    key: str = Field(index=True)
    title: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkTask(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("project_id", "key", name="uq_tasks_project_key"),
        Index("idx_tasks_project_status", "project_id", "status"),
    )

    task_id: str = Field(primary_key=True)
    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    epic_id: str = Field(
        sa_column=Column(
            ForeignKey("epics.epic_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    story_id: str = Field(
        sa_column=Column(
            ForeignKey("user_stories.story_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    key: str = Field(index=True)
    title: str
    task_type: str | None = Field(default=None, index=True)
    status: str = Field(index=True)
    priority: int | None = None
    story_points: int | None = None
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskDependency(SQLModel, table=True):
    __tablename__ = "task_dependencies"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "task_id",
            "depends_on_task_id",
            "relation_type",
            name="uq_task_dependencies_edge",
        ),
        CheckConstraint("task_id <> depends_on_task_id", name="ck_task_dependencies_no_self_loop"),
    )

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    # Not a foreign key: edges may outlive or precede the task they point at.
    depends_on_task_id: str = Field(index=True)
    relation_type: str = Field(default="blocks", index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskComment(SQLModel, table=True):
    __tablename__ = "task_comments"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_comments_task_category", "task_id", "category"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    category: str
    status: str = Field(default="open", index=True)
    body: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    resolved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_jobs_state_updated", "state", "updated_at"),)

    job_id: str = Field(primary_key=True)
    workspace_id: str = Field(index=True)
    job_type: str = Field(index=True)
    command_name: str = Field(index=True)
    state: str = Field(index=True)
    state_detail: str | None = Field(default=None, sa_column=Column(Text))
    project_key: str | None = Field(default=None, index=True)
    total_units: int | None = None
    completed_units: int | None = None
    last_checkpoint_seq: int | None = None
    last_checkpoint_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    resume_supported: bool = True
    payload_json: str | None = Field(default=None, sa_column=Column(Text))
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class JobCheckpoint(SQLModel, table=True):
    __tablename__ = "job_checkpoints"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("job_id", "seq", name="uq_job_checkpoints_job_seq"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    seq: int
    stage: str
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobLog(SQLModel, table=True):
    __tablename__ = "job_logs"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("job_id", "sequence", name="uq_job_logs_job_sequence"),
        Index("idx_job_logs_job_time", "job_id", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    sequence: int
    level: str = Field(default="info")
    source: str | None = None
    message: str | None = Field(default=None, sa_column=Column(Text))
    task_id: str | None = None
    task_key: str | None = None
    phase: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CommandRun(SQLModel, table=True):
    __tablename__ = "command_runs"  # type: ignore[bad-override]

    command_run_id: str = Field(primary_key=True)
    command_name: str = Field(index=True)
    job_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    workspace_id: str
    status: str = Field(index=True)
    error: str | None = Field(default=None, sa_column=Column(Text))
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    duration_seconds: float | None = None


class TaskRun(SQLModel, table=True):
    __tablename__ = "task_runs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_runs_job_status", "job_id", "status"),)

    task_run_id: str = Field(primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    command_run_id: str | None = Field(default=None, index=True)
    task_id: str = Field(index=True)
    task_key: str
    status: str = Field(index=True)
    phase: str | None = None
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class TokenUsage(SQLModel, table=True):
    __tablename__ = "token_usage"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_token_usage_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str | None = Field(default=None, index=True)
    command_run_id: str | None = Field(default=None, index=True)
    task_id: str | None = None
    command_name: str | None = None
    agent: str | None = None
    model: str | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cached_tokens: int = 0
    duration_ms: int | None = None
    cost_usd: float | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
