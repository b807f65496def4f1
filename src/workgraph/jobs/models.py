"""Domain models for jobs, checkpoints, command runs, and job telemetry."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from workgraph.scheduler.models import SelectionPlan


class JobState(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PARTIAL = "partial"


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED})

ALLOWED_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.QUEUED: frozenset({JobState.RUNNING, JobState.CANCELLED}),
    JobState.RUNNING: frozenset(
        {
            JobState.PAUSED,
            JobState.COMPLETED,
            JobState.FAILED,
            JobState.CANCELLED,
            JobState.PARTIAL,
        },
    ),
    JobState.PAUSED: frozenset({JobState.RUNNING, JobState.CANCELLED}),
    JobState.PARTIAL: frozenset({JobState.CANCELLED}),
    JobState.COMPLETED: frozenset(),
    JobState.FAILED: frozenset(),
    JobState.CANCELLED: frozenset(),
}

# Only the resume path may restart a job from these states.
RESUMABLE_STATES = frozenset({JobState.PARTIAL, JobState.PAUSED, JobState.FAILED})


class CommandRunStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


JOB_TYPE_BY_COMMAND = {
    "create-tasks": "task_creation",
    "refine-tasks": "task_refinement",
    "order-tasks": "task_ordering",
    "work-on-tasks": "work",
    "code-review": "review",
    "qa-tasks": "qa",
}


def job_type_for_command(command_name: str) -> str:
    return JOB_TYPE_BY_COMMAND.get(command_name.strip().lower(), "other")


@dataclass(slots=True)
class Job:
    """Readable job view for engine, insights, and CLI."""

    job_id: str
    workspace_id: str
    job_type: str
    command_name: str
    state: JobState
    state_detail: str | None
    project_key: str | None
    total_units: int | None
    completed_units: int | None
    last_checkpoint_seq: int | None
    last_checkpoint_at: datetime | None
    resume_supported: bool
    error_summary: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


@dataclass(slots=True)
class Checkpoint:
    job_id: str
    seq: int
    stage: str
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class CommandRunView:
    command_run_id: str
    command_name: str
    job_id: str | None
    workspace_id: str
    status: CommandRunStatus
    error: str | None
    started_at: datetime
    finished_at: datetime | None
    duration_seconds: float | None


@dataclass(slots=True)
class TaskRunView:
    task_run_id: str
    job_id: str
    command_run_id: str | None
    task_id: str
    task_key: str
    status: str
    phase: str | None
    started_at: datetime
    finished_at: datetime | None


@dataclass(slots=True)
class JobLogEntry:
    """One job log line in its wire-stable shape."""

    timestamp: str
    sequence: int | None = None
    level: str | None = None
    source: str | None = None
    message: str | None = None
    task_id: str | None = None
    task_key: str | None = None
    phase: str | None = None
    details: dict[str, Any] | None = None


@dataclass(slots=True, frozen=True)
class LogCursor:
    """Opaque resume point for log polling; pass back exactly as received."""

    timestamp: str
    sequence: int | None = None


@dataclass(slots=True)
class JobLogsPage:
    entries: list[JobLogEntry]
    cursor: LogCursor | None = None


@dataclass(slots=True)
class TokenUsageWrite:
    """Token usage captured for one agent invocation."""

    job_id: str | None = None
    command_run_id: str | None = None
    task_id: str | None = None
    command_name: str | None = None
    agent: str | None = None
    model: str | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cached_tokens: int = 0
    duration_ms: int | None = None
    cost_usd: float | None = None


@dataclass(slots=True)
class TokenUsageSummary:
    command_name: str | None
    agent: str | None
    model: str | None
    calls: int
    prompt_tokens: int
    completion_tokens: int
    cached_tokens: int
    total_tokens: int
    cost_usd: float | None = None


@dataclass(slots=True)
class TaskRunSummary:
    totals: dict[str, int]
    tasks: list[TaskRunView] = field(default_factory=list)


@dataclass(slots=True)
class JobSummary:
    job: Job
    progress_pct: int | None


@dataclass(slots=True)
class JobListFilters:
    state: JobState | None = None
    job_type: str | None = None
    project_key: str | None = None
    since: datetime | None = None
    limit: int = 50


@dataclass(slots=True)
class ResumeResult:
    """What a caller needs to re-enter execution after the resumed stage."""

    job: Job
    checkpoint: Checkpoint
    resume_from_stage: str
    plan: SelectionPlan | None = None
