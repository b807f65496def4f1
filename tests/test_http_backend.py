from __future__ import annotations

import json
from collections.abc import Callable

import allure
import httpx
import pytest

from workgraph.config import JobsBackendConfig
from workgraph.errors import (
    BackendPayloadError,
    InvalidTransitionError,
    NotConfiguredError,
    RemoteUnavailableError,
    WorkgraphError,
)
from workgraph.jobs.backend import HttpJobsBackend
from workgraph.jobs.insights import JobInsightsService
from workgraph.jobs.models import JobListFilters, JobState, LogCursor

pytestmark = [
    allure.epic("Job Lifecycle"),
    allure.feature("Remote Jobs API"),
]

JOB_PAYLOAD = {
    "job_id": "job-1",
    "workspace_id": "ws",
    "job_type": "work",
    "command_name": "work-on-tasks",
    "state": "running",
    "total_units": 10,
    "completed_units": 4,
    "created_at": "2026-10-19T08:00:00Z",
    "updated_at": "2026-10-19T08:05:00Z",
}


def _backend(handler: Callable[[httpx.Request], httpx.Response]) -> HttpJobsBackend:
    return HttpJobsBackend(
        JobsBackendConfig(kind="http", base_url="https://jobs.test/api/"),
        transport=httpx.MockTransport(handler),
    )


def test_list_jobs_sends_filters_and_decodes_payload() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"jobs": [JOB_PAYLOAD]})

    with _backend(handler) as backend:
        jobs = backend.list_jobs(JobListFilters(state=JobState.RUNNING, project_key="PRJ"))

    assert seen[0].url.path == "/api/jobs"
    assert seen[0].url.params["state"] == "running"
    assert seen[0].url.params["project"] == "PRJ"
    assert seen[0].url.params["limit"] == "50"
    assert jobs[0].job_id == "job-1"
    assert jobs[0].state == JobState.RUNNING


def test_progress_comes_from_remote_units() -> None:
    service = JobInsightsService(_backend(lambda _: httpx.Response(200, json=JOB_PAYLOAD)))

    assert service.get_job("job-1").progress_pct == 40


def test_not_found_returns_none() -> None:
    with _backend(lambda _: httpx.Response(404, json={"message": "nope"})) as backend:
        assert backend.get_job("missing") is None
        assert backend.latest_checkpoint("missing") is None
        assert backend.token_summary("missing") == []


def test_server_errors_and_transport_failures_are_unavailable() -> None:
    def broken(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with _backend(lambda _: httpx.Response(503, json={"error": "maintenance"})) as backend:
        with pytest.raises(RemoteUnavailableError, match="HTTP 503.*maintenance"):
            backend.get_job("job-1")
    with _backend(broken) as backend:
        with pytest.raises(RemoteUnavailableError, match="unreachable"):
            backend.get_job("job-1")


def test_conflict_maps_to_invalid_transition() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(409, json={"message": "Job job-1 is completed"})

    with _backend(handler) as backend:
        with pytest.raises(InvalidTransitionError, match="is completed"):
            backend.cancel_job("job-1", force=False, reason=None)


def test_other_client_errors_are_rejections() -> None:
    with _backend(lambda _: httpx.Response(403, text="forbidden")) as backend:
        with pytest.raises(WorkgraphError, match="HTTP 403: forbidden"):
            backend.get_job("job-1")


def test_cancel_posts_force_and_reason() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={**JOB_PAYLOAD, "state": "cancelled"})

    with _backend(handler) as backend:
        job = backend.cancel_job("job-1", force=True, reason=None)

    assert bodies == [{"force": True, "reason": "force"}]
    assert job.state == JobState.CANCELLED


def test_logs_pass_cursor_through() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if "sequence" in request.url.params:
            return httpx.Response(200, json={"logs": []})
        return httpx.Response(
            200,
            json={
                "logs": [{"timestamp": "2026-10-19T08:00:00Z", "sequence": 7, "message": "hi"}],
                "cursor": {"timestamp": "2026-10-19T08:00:00Z", "sequence": 7},
            },
        )

    with _backend(handler) as backend:
        first = backend.get_logs("job-1")
        second = backend.get_logs("job-1", after=first.cursor)

    assert first.cursor == LogCursor(timestamp="2026-10-19T08:00:00Z", sequence=7)
    assert seen[1].url.params["sequence"] == "7"
    assert second.entries == []
    assert second.cursor == first.cursor


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        ({"jobs": "nope"}, "missing the 'jobs' list"),
        ({"jobs": [{**JOB_PAYLOAD, "state": "exploded"}]}, "Unknown job state"),
        ({"jobs": [{**JOB_PAYLOAD, "created_at": "yesterday"}]}, "Invalid timestamp"),
        ({"jobs": [{"job_id": "x"}]}, "missing 'state'"),
    ],
)
def test_malformed_payloads_are_rejected(payload: dict, message: str) -> None:
    with _backend(lambda _: httpx.Response(200, json=payload)) as backend:
        with pytest.raises(BackendPayloadError, match=message):
            backend.list_jobs(JobListFilters())


def test_invalid_json_is_rejected() -> None:
    with _backend(lambda _: httpx.Response(200, text="<html>")) as backend:
        with pytest.raises(BackendPayloadError, match="invalid JSON"):
            backend.get_job("job-1")


def test_missing_base_url_is_not_configured() -> None:
    with pytest.raises(NotConfiguredError):
        HttpJobsBackend(JobsBackendConfig(kind="http"))
