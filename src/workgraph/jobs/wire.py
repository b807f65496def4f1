"""Canonical JSON shapes exchanged with a remote jobs API.

Each payload has exactly one spelling (snake_case). A missing required field
raises ``BackendPayloadError`` instead of being guessed from alternatives.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from workgraph.errors import BackendPayloadError
from workgraph.jobs.models import (
    Checkpoint,
    Job,
    JobLogEntry,
    JobLogsPage,
    JobState,
    LogCursor,
    TaskRunSummary,
    TaskRunView,
    TokenUsageSummary,
)
from workgraph.storage.common import from_iso


def job_from_wire(payload: dict[str, Any]) -> Job:
    state_raw = _required(payload, "state", "job")
    try:
        state = JobState(state_raw)
    except ValueError as error:
        raise BackendPayloadError(f"Unknown job state in payload: {state_raw!r}") from error
    return Job(
        job_id=_required(payload, "job_id", "job"),
        workspace_id=payload.get("workspace_id") or "",
        job_type=_required(payload, "job_type", "job"),
        command_name=_required(payload, "command_name", "job"),
        state=state,
        state_detail=payload.get("state_detail"),
        project_key=payload.get("project_key"),
        total_units=payload.get("total_units"),
        completed_units=payload.get("completed_units"),
        last_checkpoint_seq=payload.get("last_checkpoint_seq"),
        last_checkpoint_at=_optional_datetime(payload.get("last_checkpoint_at")),
        resume_supported=bool(payload.get("resume_supported", True)),
        error_summary=payload.get("error_summary"),
        created_at=_datetime(_required(payload, "created_at", "job")),
        updated_at=_datetime(_required(payload, "updated_at", "job")),
        started_at=_optional_datetime(payload.get("started_at")),
        completed_at=_optional_datetime(payload.get("completed_at")),
        payload=dict(payload.get("payload") or {}),
    )


def job_to_wire(job: Job) -> dict[str, Any]:
    return {
        "job_id": job.job_id,
        "workspace_id": job.workspace_id,
        "job_type": job.job_type,
        "command_name": job.command_name,
        "state": job.state.value,
        "state_detail": job.state_detail,
        "project_key": job.project_key,
        "total_units": job.total_units,
        "completed_units": job.completed_units,
        "last_checkpoint_seq": job.last_checkpoint_seq,
        "last_checkpoint_at": _iso(job.last_checkpoint_at),
        "resume_supported": job.resume_supported,
        "error_summary": job.error_summary,
        "created_at": job.created_at.isoformat(),
        "updated_at": job.updated_at.isoformat(),
        "started_at": _iso(job.started_at),
        "completed_at": _iso(job.completed_at),
        "payload": job.payload,
    }


def checkpoint_from_wire(payload: dict[str, Any]) -> Checkpoint:
    return Checkpoint(
        job_id=_required(payload, "job_id", "checkpoint"),
        seq=int(_required(payload, "seq", "checkpoint")),
        stage=_required(payload, "stage", "checkpoint"),
        created_at=_datetime(_required(payload, "created_at", "checkpoint")),
        details=dict(payload.get("details") or {}),
    )


def log_entry_from_wire(payload: dict[str, Any]) -> JobLogEntry:
    return JobLogEntry(
        timestamp=_required(payload, "timestamp", "log entry"),
        sequence=payload.get("sequence"),
        level=payload.get("level"),
        source=payload.get("source"),
        message=payload.get("message"),
        task_id=payload.get("task_id"),
        task_key=payload.get("task_key"),
        phase=payload.get("phase"),
        details=payload.get("details"),
    )


def log_entry_to_wire(entry: JobLogEntry) -> dict[str, Any]:
    return {
        key: value
        for key, value in {
            "timestamp": entry.timestamp,
            "sequence": entry.sequence,
            "level": entry.level,
            "source": entry.source,
            "message": entry.message,
            "task_id": entry.task_id,
            "task_key": entry.task_key,
            "phase": entry.phase,
            "details": entry.details,
        }.items()
        if value is not None
    }


def cursor_from_wire(payload: dict[str, Any] | None) -> LogCursor | None:
    if not payload:
        return None
    return LogCursor(
        timestamp=_required(payload, "timestamp", "log cursor"),
        sequence=payload.get("sequence"),
    )


def logs_page_from_wire(payload: dict[str, Any]) -> JobLogsPage:
    raw_entries = payload.get("logs")
    if not isinstance(raw_entries, list):
        raise BackendPayloadError("Log payload is missing the 'logs' list.")
    return JobLogsPage(
        entries=[log_entry_from_wire(item) for item in raw_entries],
        cursor=cursor_from_wire(payload.get("cursor")),
    )


def task_summary_from_wire(payload: dict[str, Any]) -> TaskRunSummary:
    tasks = [
        TaskRunView(
            task_run_id=_required(item, "task_run_id", "task run"),
            job_id=_required(item, "job_id", "task run"),
            command_run_id=item.get("command_run_id"),
            task_id=_required(item, "task_id", "task run"),
            task_key=_required(item, "task_key", "task run"),
            status=_required(item, "status", "task run"),
            phase=item.get("phase"),
            started_at=_datetime(_required(item, "started_at", "task run")),
            finished_at=_optional_datetime(item.get("finished_at")),
        )
        for item in payload.get("tasks") or []
    ]
    totals = {str(key): int(value) for key, value in (payload.get("totals") or {}).items()}
    return TaskRunSummary(totals=totals, tasks=tasks)


def token_summary_from_wire(payload: dict[str, Any]) -> TokenUsageSummary:
    prompt_tokens = int(payload.get("prompt_tokens") or 0)
    completion_tokens = int(payload.get("completion_tokens") or 0)
    return TokenUsageSummary(
        command_name=payload.get("command_name"),
        agent=payload.get("agent"),
        model=payload.get("model"),
        calls=int(payload.get("calls") or 0),
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        cached_tokens=int(payload.get("cached_tokens") or 0),
        total_tokens=int(payload.get("total_tokens") or prompt_tokens + completion_tokens),
        cost_usd=payload.get("cost_usd"),
    )


def _required(payload: dict[str, Any], key: str, kind: str) -> Any:
    value = payload.get(key)
    if value is None:
        raise BackendPayloadError(f"Malformed {kind} payload: missing '{key}'.")
    return value


def _datetime(value: str) -> datetime:
    try:
        return from_iso(value)
    except (AttributeError, TypeError, ValueError) as error:
        raise BackendPayloadError(f"Invalid timestamp in payload: {value!r}") from error


def _optional_datetime(value: str | None) -> datetime | None:
    return _datetime(value) if value else None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
