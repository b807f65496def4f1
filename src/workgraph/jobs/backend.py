"""Jobs backends: remote jobs API over HTTP, or the local workspace store."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Protocol

import httpx

from workgraph.config import JobsBackendConfig
from workgraph.errors import (
    BackendPayloadError,
    InvalidTransitionError,
    NotConfiguredError,
    RemoteUnavailableError,
    WorkgraphError,
)
from workgraph.jobs import wire
from workgraph.jobs.engine import JobLifecycleEngine
from workgraph.jobs.models import (
    Checkpoint,
    Job,
    JobListFilters,
    JobLogsPage,
    LogCursor,
    TaskRunSummary,
    TokenUsageSummary,
)
from workgraph.jobs.repository import JobRepository

logger = logging.getLogger(__name__)

HTTP_NOT_FOUND = 404
HTTP_CONFLICT = 409
HTTP_SERVER_ERROR = 500


class JobsBackend(Protocol):
    """Read/cancel contract shared by every jobs backend."""

    def list_jobs(self, filters: JobListFilters) -> list[Job]: ...

    def get_job(self, job_id: str) -> Job | None: ...

    def latest_checkpoint(self, job_id: str) -> Checkpoint | None: ...

    def get_logs(
        self,
        job_id: str,
        *,
        since: datetime | None = None,
        after: LogCursor | None = None,
    ) -> JobLogsPage: ...

    def task_summary(self, job_id: str) -> TaskRunSummary | None: ...

    def token_summary(self, job_id: str) -> list[TokenUsageSummary]: ...

    def cancel_job(self, job_id: str, *, force: bool, reason: str | None) -> Job | None: ...

    def close(self) -> None: ...


class HttpJobsBackend:
    """Jobs API client with retry, timeout, and strict payload decoding."""

    def __init__(
        self,
        config: JobsBackendConfig,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not config.base_url:
            raise NotConfiguredError("Jobs API base URL is not configured.")
        self._client = httpx.Client(
            base_url=config.base_url.rstrip("/"),
            timeout=httpx.Timeout(config.timeout_seconds, connect=10.0),
            transport=transport or httpx.HTTPTransport(retries=config.max_retries),
            headers={"Accept": "application/json"},
        )

    def list_jobs(self, filters: JobListFilters) -> list[Job]:
        params: dict[str, Any] = {"limit": filters.limit}
        if filters.state is not None:
            params["state"] = filters.state.value
        if filters.job_type:
            params["type"] = filters.job_type
        if filters.project_key:
            params["project"] = filters.project_key
        if filters.since is not None:
            params["since"] = filters.since.isoformat()
        payload = self._request("GET", "/jobs", params=params)
        if payload is None:
            return []
        items = payload.get("jobs") if isinstance(payload, dict) else None
        if not isinstance(items, list):
            raise BackendPayloadError("Jobs list payload is missing the 'jobs' list.")
        return [wire.job_from_wire(item) for item in items]

    def get_job(self, job_id: str) -> Job | None:
        payload = self._request("GET", f"/jobs/{job_id}")
        return wire.job_from_wire(payload) if payload is not None else None

    def latest_checkpoint(self, job_id: str) -> Checkpoint | None:
        payload = self._request("GET", f"/jobs/{job_id}/checkpoint")
        return wire.checkpoint_from_wire(payload) if payload is not None else None

    def get_logs(
        self,
        job_id: str,
        *,
        since: datetime | None = None,
        after: LogCursor | None = None,
    ) -> JobLogsPage:
        params: dict[str, Any] = {}
        if since is not None:
            params["since"] = since.isoformat()
        if after is not None:
            params["after"] = after.timestamp
            if after.sequence is not None:
                params["sequence"] = after.sequence
        payload = self._request("GET", f"/jobs/{job_id}/logs", params=params)
        if payload is None:
            return JobLogsPage(entries=[], cursor=after)
        page = wire.logs_page_from_wire(payload)
        if page.cursor is None:
            page.cursor = after
        return page

    def task_summary(self, job_id: str) -> TaskRunSummary | None:
        payload = self._request("GET", f"/jobs/{job_id}/tasks/summary")
        return wire.task_summary_from_wire(payload) if payload is not None else None

    def token_summary(self, job_id: str) -> list[TokenUsageSummary]:
        payload = self._request("GET", f"/jobs/{job_id}/tokens/summary")
        if payload is None:
            return []
        items = payload.get("summaries") if isinstance(payload, dict) else None
        if not isinstance(items, list):
            raise BackendPayloadError("Token summary payload is missing the 'summaries' list.")
        return [wire.token_summary_from_wire(item) for item in items]

    def cancel_job(self, job_id: str, *, force: bool, reason: str | None) -> Job | None:
        body = {"force": force, "reason": reason or ("force" if force else "user")}
        payload = self._request("POST", f"/jobs/{job_id}/cancel", json=body)
        return wire.job_from_wire(payload) if payload is not None else None

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpJobsBackend:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        try:
            response = self._client.request(method, path, params=params, json=json)
        except httpx.HTTPError as exc:
            logger.warning("Jobs API %s %s failed: %s", method, path, exc)
            raise RemoteUnavailableError(
                f"Jobs API unreachable ({method} {path}): {exc}",
            ) from exc

        if response.status_code == HTTP_NOT_FOUND:
            return None
        if response.status_code == HTTP_CONFLICT:
            raise InvalidTransitionError(_error_message(response))
        if response.status_code >= HTTP_SERVER_ERROR:
            logger.warning("Jobs API %s %s answered HTTP %d", method, path, response.status_code)
            raise RemoteUnavailableError(
                f"Jobs API error HTTP {response.status_code} ({method} {path}): "
                f"{_error_message(response)}",
            )
        if not response.is_success:
            raise WorkgraphError(
                f"Jobs API rejected {method} {path} with HTTP {response.status_code}: "
                f"{_error_message(response)}",
            )
        try:
            return response.json()
        except ValueError as exc:
            raise BackendPayloadError(f"Jobs API returned invalid JSON for {path}.") from exc


class LocalJobsBackend:
    """Serve the jobs backend contract straight from the workspace store."""

    def __init__(self, repository: JobRepository, engine: JobLifecycleEngine) -> None:
        self.repository = repository
        self.engine = engine

    def list_jobs(self, filters: JobListFilters) -> list[Job]:
        return self.repository.list_jobs(filters)

    def get_job(self, job_id: str) -> Job | None:
        return self.repository.get_job(job_id)

    def latest_checkpoint(self, job_id: str) -> Checkpoint | None:
        return self.repository.latest_checkpoint(job_id)

    def get_logs(
        self,
        job_id: str,
        *,
        since: datetime | None = None,
        after: LogCursor | None = None,
    ) -> JobLogsPage:
        return self.repository.get_logs(job_id=job_id, since=since, after=after)

    def task_summary(self, job_id: str) -> TaskRunSummary | None:
        if self.repository.get_job(job_id) is None:
            return None
        return TaskRunSummary(
            totals=self.repository.task_status_totals(job_id),
            tasks=self.repository.list_task_runs(job_id),
        )

    def token_summary(self, job_id: str) -> list[TokenUsageSummary]:
        return self.repository.summarize_token_usage(job_id)

    def cancel_job(self, job_id: str, *, force: bool, reason: str | None) -> Job | None:
        if self.repository.get_job(job_id) is None:
            return None
        return self.engine.cancel(job_id, force=force, reason=reason)

    def close(self) -> None:
        """The workspace repository is owned and closed by the caller."""


def build_jobs_backend(
    config: JobsBackendConfig,
    *,
    repository: JobRepository | None = None,
    transport: httpx.BaseTransport | None = None,
) -> JobsBackend | None:
    """Backend for ``config``; ``None`` when no backend is configured."""

    if config.kind == "http":
        return HttpJobsBackend(config, transport=transport)
    if config.kind == "local":
        if repository is None:
            raise NotConfiguredError("Local jobs backend needs a workspace repository.")
        return LocalJobsBackend(repository, JobLifecycleEngine(repository))
    return None


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip() or response.reason_phrase
    if isinstance(payload, dict):
        for key in ("message", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    return response.text.strip() or response.reason_phrase
