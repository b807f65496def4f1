"""CLI entrypoint for workgraph."""

import functools
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

import rich_click as click

from workgraph import __version__
from workgraph.config import MISSING_CONTEXT_POLICIES
from workgraph.controllers import (
    CommandResult,
    JobCancelCommand,
    JobInspectCommand,
    JobListCommand,
    JobLogsCommand,
    TaskSelectCommand,
    WorkgraphCliController,
)
from workgraph.errors import WorkgraphError
from workgraph.jobs.models import JobState

click.rich_click.USE_MARKDOWN = True
CONTROLLER = WorkgraphCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

F = TypeVar("F", bound=Callable[..., Any])


def _reports_errors(func: F) -> F:
    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except (WorkgraphError, ValueError) as error:
            raise click.ClickException(str(error)) from error

    return wrapper  # type: ignore[return-value]


@click.group()
@click.version_option(version=__version__, prog_name="workgraph")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def workgraph(verbose: bool) -> None:
    """Task dependency scheduler and job lifecycle CLI."""

    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING, format=LOG_FORMAT)


@workgraph.group()
def tasks() -> None:
    """Task selection commands."""


@tasks.command("select")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--project", "project_key", required=True, help="Project key.")
@click.option("--epic", "epic_key", default=None, help="Restrict to one epic.")
@click.option("--story", "story_key", default=None, help="Restrict to one user story.")
@click.option("--task", "task_keys", multiple=True, help="Explicit task key. Can be repeated.")
@click.option(
    "--status",
    "statuses",
    multiple=True,
    help="Status to include. Can be repeated or comma-separated.",
)
@click.option(
    "--ignore-status-filter",
    is_flag=True,
    default=False,
    help="Consider every task that is not completed or cancelled.",
)
@click.option("--type", "include_types", multiple=True, help="Only this task type. Repeatable.")
@click.option("--exclude-type", "exclude_types", multiple=True, help="Skip this task type.")
@click.option("--limit", type=click.IntRange(min=0), default=None, help="Max tasks to return.")
@click.option(
    "--parallel",
    type=click.IntRange(min=0),
    default=None,
    help="Group output into parallel batches; value caps batch size (0 = no cap).",
)
@click.option(
    "--ignore-dependencies",
    is_flag=True,
    default=False,
    help="Do not gate on dependency readiness.",
)
@click.option(
    "--missing-context-policy",
    type=click.Choice(list(MISSING_CONTEXT_POLICIES), case_sensitive=False),
    default=None,
    help="Handling of tasks with open missing_context comments.",
)
@click.option(
    "--dependency-policy",
    type=click.Choice(["enforce", "ignore"], case_sensitive=False),
    default="enforce",
    show_default=True,
    help="Dependency readiness policy.",
)
@click.option(
    "--create-job",
    is_flag=True,
    default=False,
    help="Create a queued work-on-tasks job for the selected plan.",
)
@_reports_errors
def tasks_select(  # noqa: PLR0913
    db_path: Path | None,
    project_key: str,
    epic_key: str | None,
    story_key: str | None,
    task_keys: tuple[str, ...],
    statuses: tuple[str, ...],
    ignore_status_filter: bool,
    include_types: tuple[str, ...],
    exclude_types: tuple[str, ...],
    limit: int | None,
    parallel: int | None,
    ignore_dependencies: bool,
    missing_context_policy: str | None,
    dependency_policy: str,
    create_job: bool,
) -> None:
    """Select tasks ready to work on, in dependency-safe order."""

    _finish(
        CONTROLLER.select_tasks(
            TaskSelectCommand(
                db_path=db_path,
                project_key=project_key,
                epic_key=epic_key,
                story_key=story_key,
                task_keys=task_keys,
                statuses=statuses,
                ignore_status_filter=ignore_status_filter,
                include_types=include_types,
                exclude_types=exclude_types,
                limit=limit,
                parallel=parallel,
                ignore_dependencies=ignore_dependencies,
                missing_context_policy=missing_context_policy,
                dependency_policy=dependency_policy,
                create_job=create_job,
            ),
        ),
    )


@workgraph.group()
def jobs() -> None:
    """Job inspection, cancel, and resume commands."""


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--state",
    type=click.Choice([state.value for state in JobState], case_sensitive=False),
    default=None,
    help="Filter by job state.",
)
@click.option("--type", "job_type", default=None, help="Filter by job type.")
@click.option("--project", "project_key", default=None, help="Filter by project key.")
@click.option("--since", default=None, help="Only jobs updated since, e.g. 30m, 2h, 1d or ISO.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to list.",
)
@_reports_errors
def jobs_list(  # noqa: PLR0913
    db_path: Path | None,
    state: str | None,
    job_type: str | None,
    project_key: str | None,
    since: str | None,
    limit: int,
) -> None:
    """List jobs, newest first."""

    _finish(
        CONTROLLER.list_jobs(
            JobListCommand(
                db_path=db_path,
                state=state.lower() if state else None,
                job_type=job_type,
                project_key=project_key,
                since=since,
                limit=limit,
            ),
        ),
    )


@jobs.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
@_reports_errors
def jobs_status(db_path: Path | None, job_id: str) -> None:
    """Show job state, progress, and latest checkpoint."""

    _finish(
        CONTROLLER.job_status(JobInspectCommand(db_path=db_path, job_id=job_id)),
        failure_message=f"Job {job_id} did not succeed.",
    )


@jobs.command("checkpoint")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
@_reports_errors
def jobs_checkpoint(db_path: Path | None, job_id: str) -> None:
    """Show the latest checkpoint of a job."""

    _finish(CONTROLLER.job_checkpoint(JobInspectCommand(db_path=db_path, job_id=job_id)))


@jobs.command("logs")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
@click.option("--since", default=None, help="Only entries since, e.g. 30m, 2h, 1d or ISO.")
@click.option("--follow", "-f", is_flag=True, default=False, help="Stream until the job stops.")
@click.option(
    "--interval",
    "interval_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Seconds between polls while following.",
)
@click.option(
    "--max-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Stop following after this many polls.",
)
@_reports_errors
def jobs_logs(  # noqa: PLR0913
    db_path: Path | None,
    job_id: str,
    since: str | None,
    follow: bool,
    interval_seconds: float | None,
    max_polls: int | None,
) -> None:
    """Print job logs, optionally following new entries."""

    _finish(
        CONTROLLER.job_logs(
            JobLogsCommand(
                db_path=db_path,
                job_id=job_id,
                since=since,
                follow=follow,
                interval_seconds=interval_seconds,
                max_polls=max_polls,
            ),
            emit=click.echo,
        ),
        failure_message=f"Job {job_id} did not succeed.",
    )


@jobs.command("tasks")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
@_reports_errors
def jobs_tasks(db_path: Path | None, job_id: str) -> None:
    """Summarize task runs of a job by status."""

    _finish(CONTROLLER.job_tasks(JobInspectCommand(db_path=db_path, job_id=job_id)))


@jobs.command("tokens")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
@_reports_errors
def jobs_tokens(db_path: Path | None, job_id: str) -> None:
    """Summarize token usage of a job."""

    _finish(CONTROLLER.job_tokens(JobInspectCommand(db_path=db_path, job_id=job_id)))


@jobs.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
@click.option("--force", is_flag=True, default=False, help="Cancel even from a terminal state.")
@click.option("--reason", default=None, help="Reason recorded on the job.")
@_reports_errors
def jobs_cancel(db_path: Path | None, job_id: str, force: bool, reason: str | None) -> None:
    """Cancel a job."""

    _finish(
        CONTROLLER.cancel_job(
            JobCancelCommand(db_path=db_path, job_id=job_id, force=force, reason=reason),
        ),
    )


@jobs.command("resume")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
@_reports_errors
def jobs_resume(db_path: Path | None, job_id: str) -> None:
    """Resume a paused, partial, or failed job from its latest checkpoint."""

    _finish(CONTROLLER.resume_job(JobInspectCommand(db_path=db_path, job_id=job_id)))


def _finish(result: CommandResult, *, failure_message: str = "Command failed.") -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException(failure_message)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    workgraph()
