from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest

from workgraph.config import JobsBackendConfig
from workgraph.errors import JobNotFoundError, NotConfiguredError
from workgraph.jobs.backend import LocalJobsBackend, build_jobs_backend
from workgraph.jobs.engine import JobLifecycleEngine
from workgraph.jobs.insights import JobInsightsService, parse_since, progress_pct
from workgraph.jobs.models import JobListFilters, JobState, LogCursor
from workgraph.jobs.repository import JobRepository

pytestmark = [
    allure.epic("Job Lifecycle"),
    allure.feature("Job Insights"),
]


@pytest.fixture()
def insights(job_repository: JobRepository, engine: JobLifecycleEngine) -> JobInsightsService:
    return JobInsightsService(LocalJobsBackend(job_repository, engine))


@pytest.mark.parametrize(
    ("completed", "total", "expected"),
    [
        (0, 0, None),
        (5, None, None),
        (None, 4, 0),
        (1, 3, 33),
        (2, 3, 67),
        (3, 3, 100),
        (9, 3, 100),
        (-2, 3, 0),
    ],
)
def test_progress_pct_is_bounded(completed, total, expected) -> None:
    assert progress_pct(completed, total) == expected


def test_parse_since_accepts_durations_and_iso() -> None:
    now = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)

    assert parse_since("30m", now=now) == now - timedelta(minutes=30)
    assert parse_since("2H", now=now) == now - timedelta(hours=2)
    assert parse_since("1w", now=now) == now - timedelta(weeks=1)
    assert parse_since("2026-10-18T08:00:00+00:00") == datetime(2026, 10, 18, 8, tzinfo=UTC)
    assert parse_since("  ") is None
    with pytest.raises(ValueError, match="Invalid since value"):
        parse_since("yesterday")


def test_every_operation_requires_a_backend() -> None:
    service = JobInsightsService(None)

    with pytest.raises(NotConfiguredError, match="No jobs backend configured"):
        service.list_jobs()
    with pytest.raises(NotConfiguredError):
        service.follow_logs("job", interval_seconds=0)


def test_build_jobs_backend_wiring(job_repository: JobRepository) -> None:
    assert build_jobs_backend(JobsBackendConfig()) is None
    assert isinstance(
        build_jobs_backend(JobsBackendConfig(kind="local"), repository=job_repository),
        LocalJobsBackend,
    )
    with pytest.raises(NotConfiguredError, match="workspace repository"):
        build_jobs_backend(JobsBackendConfig(kind="local"))


def test_list_and_get_job_summaries(
    insights: JobInsightsService,
    engine: JobLifecycleEngine,
) -> None:
    job = engine.create_job("work-on-tasks", total_units=4)
    engine.start_job(job.job_id)
    engine.update_progress(job.job_id, completed_units=1)

    summaries = insights.list_jobs(JobListFilters(state=JobState.RUNNING))
    summary = insights.get_job(job.job_id)

    assert [item.job.job_id for item in summaries] == [job.job_id]
    assert summary.progress_pct == 25
    assert insights.get_job("missing") is None


def test_logs_cursor_is_returned_unchanged_when_nothing_new(
    insights: JobInsightsService,
    engine: JobLifecycleEngine,
) -> None:
    job = engine.create_job("work-on-tasks")
    engine.append_log(job.job_id, "first")

    page = insights.get_job_logs(job.job_id)
    empty = insights.get_job_logs(job.job_id, after=page.cursor)
    engine.append_log(job.job_id, "second")
    newer = insights.get_job_logs(job.job_id, after=page.cursor)

    assert [entry.message for entry in page.entries] == ["Job created (work-on-tasks)", "first"]
    assert empty.entries == []
    assert empty.cursor == page.cursor
    assert [entry.message for entry in newer.entries] == ["second"]
    assert newer.cursor == LogCursor(timestamp=newer.entries[0].timestamp, sequence=3)


def test_follow_logs_drains_after_terminal_state(
    insights: JobInsightsService,
    engine: JobLifecycleEngine,
) -> None:
    job = engine.create_job("work-on-tasks")
    engine.start_job(job.job_id)
    sleeps: list[float] = []

    def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        engine.append_log(job.job_id, f"tick {len(sleeps)}")
        if len(sleeps) == 2:
            engine.complete_job(job.job_id)
            engine.append_log(job.job_id, "after completion")

    messages = [
        entry.message
        for entry in insights.follow_logs(job.job_id, interval_seconds=0.5, sleep=fake_sleep)
    ]

    assert sleeps == [0.5, 0.5]
    assert messages[-3:] == ["tick 2", "Job state running -> completed", "after completion"]
    assert messages.count("tick 1") == 1


def test_follow_logs_stops_after_max_polls(
    insights: JobInsightsService,
    engine: JobLifecycleEngine,
) -> None:
    job = engine.create_job("work-on-tasks")

    entries = list(
        insights.follow_logs(job.job_id, interval_seconds=1, max_polls=2, sleep=lambda _: None),
    )

    assert [entry.message for entry in entries] == ["Job created (work-on-tasks)"]


def test_follow_logs_keeps_polling_a_partial_job(
    insights: JobInsightsService,
    engine: JobLifecycleEngine,
) -> None:
    job = engine.create_job("work-on-tasks")
    engine.start_job(job.job_id)
    engine.mark_partial(job.job_id)
    sleeps: list[float] = []

    entries = list(
        insights.follow_logs(job.job_id, interval_seconds=1, max_polls=3, sleep=sleeps.append),
    )

    assert sleeps == [1, 1]
    assert entries[-1].message == "Job state running -> partial"


def test_task_summary_and_cancel(insights: JobInsightsService, engine: JobLifecycleEngine) -> None:
    job = engine.create_job("work-on-tasks")

    summary = insights.summarize_tasks(job.job_id)
    cancelled = insights.cancel_job(job.job_id, reason="superseded")

    assert summary.totals == {}
    assert summary.tasks == []
    assert insights.summarize_tasks("missing") is None
    assert cancelled.state == JobState.CANCELLED
    assert cancelled.state_detail == "superseded"
    with pytest.raises(JobNotFoundError):
        insights.cancel_job("missing")
