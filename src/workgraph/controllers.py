"""Controllers for workgraph CLI commands."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from workgraph.config import Settings
from workgraph.errors import JobNotFoundError
from workgraph.jobs.backend import build_jobs_backend
from workgraph.jobs.engine import JobLifecycleEngine
from workgraph.jobs.insights import JobInsightsService, parse_since
from workgraph.jobs.models import (
    Job,
    JobListFilters,
    JobLogEntry,
    JobState,
    JobSummary,
)
from workgraph.jobs.repository import JobRepository
from workgraph.jobs.resume import JobResumeService
from workgraph.scheduler.models import (
    DependencyPolicy,
    MissingContextPolicy,
    SelectionFilters,
    SelectionPlan,
)
from workgraph.scheduler.repository import TaskRepository
from workgraph.scheduler.selection import TaskSelectionService


FAILED_STATES = frozenset({JobState.FAILED, JobState.CANCELLED})
WORK_COMMAND = "work-on-tasks"


@dataclass(slots=True)
class TaskSelectCommand:
    """CLI input for task selection."""

    db_path: Path | None
    project_key: str
    epic_key: str | None = None
    story_key: str | None = None
    task_keys: tuple[str, ...] = ()
    statuses: tuple[str, ...] = ()
    ignore_status_filter: bool = False
    include_types: tuple[str, ...] = ()
    exclude_types: tuple[str, ...] = ()
    limit: int | None = None
    parallel: int | None = None
    ignore_dependencies: bool = False
    missing_context_policy: str | None = None
    dependency_policy: str = DependencyPolicy.ENFORCE.value
    create_job: bool = False


@dataclass(slots=True)
class JobListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    state: str | None
    job_type: str | None
    project_key: str | None
    since: str | None
    limit: int


@dataclass(slots=True)
class JobInspectCommand:
    """CLI input for single-job reads and resume."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobLogsCommand:
    """CLI input for job logs, one-shot or follow."""

    db_path: Path | None
    job_id: str
    since: str | None = None
    follow: bool = False
    interval_seconds: float | None = None
    max_polls: int | None = None


@dataclass(slots=True)
class JobCancelCommand:
    """CLI input for job cancel."""

    db_path: Path | None
    job_id: str
    force: bool
    reason: str | None


@dataclass(slots=True)
class CommandResult:
    """Lines to render plus whether the command should exit zero."""

    lines: list[str]
    success: bool = True


@dataclass(slots=True)
class _Workspace:
    settings: Settings
    tasks: TaskRepository
    jobs: JobRepository

    @property
    def engine(self) -> JobLifecycleEngine:
        return JobLifecycleEngine(self.jobs)

    def selection(self) -> TaskSelectionService:
        return TaskSelectionService(self.tasks)


class WorkgraphCliController:
    """Coordinates selection, job inspection, cancel, and resume CLI operations."""

    def select_tasks(self, command: TaskSelectCommand) -> CommandResult:
        settings = _settings(command.db_path)
        filters = _selection_filters(command, settings=settings)
        with _workspace(settings) as workspace:
            engine = workspace.engine
            with engine.command_run("tasks-select"):
                plan = workspace.selection().select_tasks(filters)
            lines = _render_plan(plan)
            if command.create_job:
                job = _create_work_job(engine, filters=filters, plan=plan)
                lines.append(
                    f"Job created: job_id={job.job_id} type={job.job_type} "
                    f"state={job.state.value} total_units={job.total_units}",
                )
        return CommandResult(lines=lines)

    def list_jobs(self, command: JobListCommand) -> CommandResult:
        settings = _settings(command.db_path)
        filters = JobListFilters(
            state=JobState(command.state) if command.state else None,
            job_type=command.job_type,
            project_key=command.project_key,
            since=parse_since(command.since),
            limit=command.limit,
        )
        with _insights(settings) as insights:
            summaries = insights.list_jobs(filters)
        lines = [f"Jobs: {len(summaries)}"]
        for summary in summaries:
            job = summary.job
            lines.append(
                f"  {job.job_id} type={job.job_type} command={job.command_name} "
                f"state={job.state.value} progress={_render_progress(summary)} "
                f"updated_at={job.updated_at.isoformat()}",
            )
        return CommandResult(lines=lines)

    def job_status(self, command: JobInspectCommand) -> CommandResult:
        settings = _settings(command.db_path)
        with _insights(settings) as insights:
            summary = insights.get_job(command.job_id)
            checkpoint = insights.latest_checkpoint(command.job_id) if summary else None
        if summary is None:
            raise JobNotFoundError(f"Job not found: {command.job_id}")

        job = summary.job
        lines = [
            f"Job: {job.job_id}",
            f"Type: {job.job_type}",
            f"Command: {job.command_name}",
            f"State: {job.state.value}",
            f"Detail: {job.state_detail or '-'}",
            f"Project: {job.project_key or '-'}",
            f"Progress: {_render_progress(summary)}",
            f"Resume supported: {'yes' if job.resume_supported else 'no'}",
            f"Error: {job.error_summary or '-'}",
        ]
        if checkpoint is not None:
            lines.append(
                f"Last checkpoint: seq={checkpoint.seq} stage={checkpoint.stage} "
                f"at={checkpoint.created_at.isoformat()}",
            )
        else:
            lines.append("Last checkpoint: -")
        return CommandResult(lines=lines, success=job.state not in FAILED_STATES)

    def job_checkpoint(self, command: JobInspectCommand) -> CommandResult:
        settings = _settings(command.db_path)
        with _insights(settings) as insights:
            checkpoint = insights.latest_checkpoint(command.job_id)
        if checkpoint is None:
            return CommandResult(lines=[f"No checkpoints for job {command.job_id}."])
        lines = [
            f"Checkpoint: job={checkpoint.job_id} seq={checkpoint.seq} stage={checkpoint.stage}",
            f"Created: {checkpoint.created_at.isoformat()}",
        ]
        for key in sorted(checkpoint.details):
            lines.append(f"  {key}={checkpoint.details[key]}")
        return CommandResult(lines=lines)

    def job_logs(
        self,
        command: JobLogsCommand,
        *,
        emit: Callable[[str], None],
    ) -> CommandResult:
        """Print logs; with ``follow`` stream until the job stops.

        A followed job that ends failed or cancelled makes the command fail.
        """

        settings = _settings(command.db_path)
        with _insights(settings) as insights:
            if not command.follow:
                page = insights.get_job_logs(command.job_id, since=command.since)
                return CommandResult(lines=[_render_log_entry(entry) for entry in page.entries])

            since_page = None
            if command.since:
                since_page = insights.get_job_logs(command.job_id, since=command.since)
                for entry in since_page.entries:
                    emit(_render_log_entry(entry))
            interval = (
                command.interval_seconds
                if command.interval_seconds is not None
                else settings.jobs_backend.follow_interval_seconds
            )
            for entry in insights.follow_logs(
                command.job_id,
                interval_seconds=interval,
                max_polls=command.max_polls,
                after=since_page.cursor if since_page is not None else None,
            ):
                emit(_render_log_entry(entry))
            summary = insights.get_job(command.job_id)
        if summary is None:
            raise JobNotFoundError(f"Job not found: {command.job_id}")
        state = summary.job.state
        if state in FAILED_STATES:
            return CommandResult(
                lines=[f"Job {command.job_id} ended {state.value}."],
                success=False,
            )
        return CommandResult(lines=[f"Job {command.job_id} state: {state.value}"])

    def job_tasks(self, command: JobInspectCommand) -> CommandResult:
        settings = _settings(command.db_path)
        with _insights(settings) as insights:
            summary = insights.summarize_tasks(command.job_id)
        if summary is None:
            raise JobNotFoundError(f"Job not found: {command.job_id}")
        totals = " ".join(f"{status}={count}" for status, count in sorted(summary.totals.items()))
        lines = [f"Task runs: {len(summary.tasks)} {totals}".rstrip()]
        for task in summary.tasks:
            lines.append(
                f"  {task.task_key} status={task.status} phase={task.phase or '-'} "
                f"started_at={task.started_at.isoformat()}",
            )
        return CommandResult(lines=lines)

    def job_tokens(self, command: JobInspectCommand) -> CommandResult:
        settings = _settings(command.db_path)
        with _insights(settings) as insights:
            summaries = insights.summarize_token_usage(command.job_id)
        lines = [f"Token usage groups: {len(summaries)}"]
        for item in summaries:
            cost = f"{item.cost_usd:.4f}" if item.cost_usd is not None else "-"
            lines.append(
                f"  command={item.command_name or '-'} agent={item.agent or '-'} "
                f"model={item.model or '-'} calls={item.calls} "
                f"prompt={item.prompt_tokens} completion={item.completion_tokens} "
                f"cached={item.cached_tokens} total={item.total_tokens} cost_usd={cost}",
            )
        return CommandResult(lines=lines)

    def cancel_job(self, command: JobCancelCommand) -> CommandResult:
        settings = _settings(command.db_path)
        with _workspace(settings) as workspace, _insights_for(workspace) as insights:
            with workspace.engine.command_run("jobs-cancel"):
                job = insights.cancel_job(
                    command.job_id,
                    force=command.force,
                    reason=command.reason,
                )
        return CommandResult(
            lines=[
                f"Job cancelled: job_id={job.job_id} state={job.state.value} "
                f"reason={job.state_detail or '-'}",
            ],
        )

    def resume_job(self, command: JobInspectCommand) -> CommandResult:
        settings = _settings(command.db_path)
        with _workspace(settings) as workspace:
            service = JobResumeService(workspace.engine, selection=workspace.selection())
            result = service.resume(command.job_id)
        lines = [
            f"Job resumed: job_id={result.job.job_id} state={result.job.state.value}",
            f"Resume from stage: {result.resume_from_stage}",
            f"Checkpoint: seq={result.checkpoint.seq} stage={result.checkpoint.stage}",
        ]
        if result.plan is not None:
            lines.append(f"Plan: {len(result.plan.ordered)} task(s) still to run")
        return CommandResult(lines=lines)


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _selection_filters(command: TaskSelectCommand, *, settings: Settings) -> SelectionFilters:
    policy = command.missing_context_policy or settings.scheduler.missing_context_policy
    return SelectionFilters(
        project_key=command.project_key,
        epic_key=command.epic_key,
        story_key=command.story_key,
        task_keys=list(command.task_keys),
        status_filter=[
            token.strip()
            for raw in command.statuses
            for token in raw.split(",")
            if token.strip()
        ],
        ignore_status_filter=command.ignore_status_filter,
        include_types=list(command.include_types),
        exclude_types=list(command.exclude_types),
        limit=command.limit,
        parallel=_parallel_setting(command.parallel),
        ignore_dependencies=command.ignore_dependencies,
        missing_context_policy=MissingContextPolicy(policy.lower()),
        dependency_policy=DependencyPolicy(command.dependency_policy.lower()),
    )


def _create_work_job(
    engine: JobLifecycleEngine,
    *,
    filters: SelectionFilters,
    plan: SelectionPlan,
) -> Job:
    job = engine.create_job(
        WORK_COMMAND,
        project_key=filters.project_key,
        total_units=len(plan.ordered),
        payload={
            "selection_filters": filters.to_payload(),
            "plan_fingerprint": plan.fingerprint(),
            "task_keys": plan.ordered_keys,
        },
    )
    engine.write_checkpoint(
        job.job_id,
        "selection",
        {"job_id": job.job_id, "command_name": WORK_COMMAND},
        plan=plan,
    )
    return engine.get_job(job.job_id)


def _render_plan(plan: SelectionPlan) -> list[str]:
    lines = [f"Selected: {len(plan.ordered)} Blocked: {len(plan.blocked)}"]
    if plan.batches:
        for index, batch in enumerate(plan.batches, start=1):
            lines.append(f"Batch {index}: {', '.join(item.task.key for item in batch)}")
    else:
        for position, item in enumerate(plan.ordered, start=1):
            task = item.task
            deps = ",".join(item.dependency_keys) or "-"
            lines.append(
                f"  {position}. {task.key} status={task.status} "
                f"priority={task.priority if task.priority is not None else '-'} "
                f"points={task.story_points if task.story_points is not None else '-'} "
                f"deps={deps}",
            )
    for blocked in plan.blocked:
        lines.append(
            f"  blocked {blocked.task.key} reason={blocked.reason.value}"
            + (f" waiting_on={len(blocked.blocking_ids)}" if blocked.blocking_ids else ""),
        )
    for warning in plan.warnings:
        lines.append(f"Warning: {warning}")
    lines.append(f"Fingerprint: {plan.fingerprint()}")
    return lines


def _render_progress(summary: JobSummary) -> str:
    job = summary.job
    if summary.progress_pct is None:
        return f"{job.completed_units if job.completed_units is not None else '-'}/-"
    return f"{job.completed_units or 0}/{job.total_units} ({summary.progress_pct}%)"


def _render_log_entry(entry: JobLogEntry) -> str:
    parts = [entry.timestamp]
    if entry.sequence is not None:
        parts.append(f"#{entry.sequence}")
    parts.append(f"[{entry.level or 'info'}]")
    if entry.source:
        parts.append(f"{entry.source}:")
    if entry.task_key:
        parts.append(f"({entry.task_key})")
    parts.append(entry.message or "")
    return " ".join(parts).rstrip()


@contextmanager
def _workspace(settings: Settings) -> Iterator[_Workspace]:
    tasks = TaskRepository(settings.db_path, busy_timeout_ms=settings.busy_timeout_ms)
    jobs = JobRepository(
        settings.db_path,
        workspace_id=settings.effective_workspace_id,
        busy_timeout_ms=settings.busy_timeout_ms,
    )
    try:
        tasks.init_schema()
        yield _Workspace(settings=settings, tasks=tasks, jobs=jobs)
    finally:
        jobs.close()
        tasks.close()


@contextmanager
def _insights_for(workspace: _Workspace) -> Iterator[JobInsightsService]:
    backend = build_jobs_backend(workspace.settings.jobs_backend, repository=workspace.jobs)
    try:
        yield JobInsightsService(backend)
    finally:
        if backend is not None:
            backend.close()


@contextmanager
def _insights(settings: Settings) -> Iterator[JobInsightsService]:
    with _workspace(settings) as workspace, _insights_for(workspace) as insights:
        yield insights


def _parallel_setting(value: int | None) -> bool | int:
    if value is None:
        return False
    return value or True
