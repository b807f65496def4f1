"""Read-side facade over a jobs backend: listing, logs, summaries, cancel."""

from __future__ import annotations

import logging
import re
import time
from collections import Counter
from collections.abc import Callable, Iterator
from datetime import datetime, timedelta

from workgraph.errors import JobNotFoundError, NotConfiguredError
from workgraph.jobs.backend import JobsBackend
from workgraph.jobs.models import (
    TERMINAL_STATES,
    Checkpoint,
    Job,
    JobListFilters,
    JobLogEntry,
    JobLogsPage,
    JobSummary,
    LogCursor,
    TaskRunSummary,
    TokenUsageSummary,
)
from workgraph.storage.common import from_iso, utc_now

logger = logging.getLogger(__name__)

_DURATION_RE = re.compile(r"^(\d+)\s*([smhdw])$", re.IGNORECASE)
_DURATION_UNITS = {
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
}

# Following polls until the job reaches one of these; partial jobs may still resume.
FOLLOW_STOP_STATES = TERMINAL_STATES


def parse_since(value: str | None, *, now: datetime | None = None) -> datetime | None:
    """Parse ``30m``/``2h``/``1d``/``1w`` relative to ``now``, or an ISO timestamp."""

    if value is None or not value.strip():
        return None
    text = value.strip()
    match = _DURATION_RE.match(text)
    if match:
        amount, unit = match.groups()
        return (now or utc_now()) - int(amount) * _DURATION_UNITS[unit.lower()]
    try:
        return from_iso(text)
    except ValueError as error:
        raise ValueError(
            f"Invalid since value: {value!r}. Use a duration like 30m, 2h, 1d, 1w "
            "or an ISO timestamp.",
        ) from error


def progress_pct(completed: int | None, total: int | None) -> int | None:
    """Whole-number completion percentage clamped to 0..100; ``None`` when unknown."""

    if not total or total <= 0:
        return None
    pct = round((completed or 0) / total * 100)
    return max(0, min(100, pct))


class JobInsightsService:
    """Answer operator questions about jobs through whichever backend is wired."""

    def __init__(self, backend: JobsBackend | None) -> None:
        self.backend = backend

    def list_jobs(self, filters: JobListFilters | None = None) -> list[JobSummary]:
        backend = self._require_backend()
        return [_summarize(job) for job in backend.list_jobs(filters or JobListFilters())]

    def get_job(self, job_id: str) -> JobSummary | None:
        backend = self._require_backend()
        job = backend.get_job(job_id)
        return _summarize(job) if job is not None else None

    def latest_checkpoint(self, job_id: str) -> Checkpoint | None:
        return self._require_backend().latest_checkpoint(job_id)

    def get_job_logs(
        self,
        job_id: str,
        *,
        since: str | datetime | None = None,
        after: LogCursor | None = None,
    ) -> JobLogsPage:
        backend = self._require_backend()
        since_at = parse_since(since) if isinstance(since, str) else since
        return backend.get_logs(job_id, since=since_at, after=after)

    def summarize_tasks(self, job_id: str) -> TaskRunSummary | None:
        """Per-status task counts; totals reported by the backend win over counted ones."""

        summary = self._require_backend().task_summary(job_id)
        if summary is None:
            return None
        totals = dict(Counter(task.status for task in summary.tasks))
        totals.update(summary.totals)
        return TaskRunSummary(totals=totals, tasks=summary.tasks)

    def summarize_token_usage(self, job_id: str) -> list[TokenUsageSummary]:
        return self._require_backend().token_summary(job_id)

    def cancel_job(self, job_id: str, *, force: bool = False, reason: str | None = None) -> Job:
        job = self._require_backend().cancel_job(job_id, force=force, reason=reason)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    def follow_logs(  # noqa: PLR0913
        self,
        job_id: str,
        *,
        interval_seconds: float,
        max_polls: int | None = None,
        after: LogCursor | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> Iterator[JobLogEntry]:
        """Yield log lines until the job stops, then drain what is left once.

        The cursor returned by each poll is passed back unchanged on the next.
        """

        backend = self._require_backend()
        return _follow(
            backend,
            job_id,
            interval_seconds=interval_seconds,
            max_polls=max_polls,
            after=after,
            sleep=sleep,
        )

    def _require_backend(self) -> JobsBackend:
        if self.backend is None:
            raise NotConfiguredError(
                "No jobs backend configured; set WORKGRAPH_JOBS_API_URL "
                "or WORKGRAPH_JOBS_BACKEND=local.",
            )
        return self.backend


def _follow(  # noqa: PLR0913
    backend: JobsBackend,
    job_id: str,
    *,
    interval_seconds: float,
    max_polls: int | None,
    after: LogCursor | None,
    sleep: Callable[[float], None],
) -> Iterator[JobLogEntry]:
    cursor = after
    polls = 0
    while True:
        page = backend.get_logs(job_id, after=cursor)
        polls += 1
        yield from page.entries
        cursor = page.cursor or cursor

        job = backend.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        if job.state in FOLLOW_STOP_STATES:
            drain = backend.get_logs(job_id, after=cursor)
            yield from drain.entries
            logger.debug("Stopped following job %s in state %s", job_id, job.state.value)
            return
        if max_polls is not None and polls >= max_polls:
            return
        logger.debug("Polling logs job=%s poll=%d", job_id, polls)
        sleep(interval_seconds)


def _summarize(job: Job) -> JobSummary:
    return JobSummary(job=job, progress_pct=progress_pct(job.completed_units, job.total_units))
