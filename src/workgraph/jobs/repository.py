"""Persistent job store: jobs, checkpoints, command/task runs, logs, token usage."""

from __future__ import annotations

from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from workgraph.errors import ConcurrentUpdateError
from workgraph.jobs.models import (
    Checkpoint,
    CommandRunStatus,
    CommandRunView,
    Job,
    JobListFilters,
    JobLogEntry,
    JobLogsPage,
    JobState,
    LogCursor,
    TaskRunView,
    TokenUsageSummary,
    TokenUsageWrite,
)
from workgraph.storage.alembic_runner import upgrade_head
from workgraph.storage.common import (
    build_sqlite_engine,
    dump_json,
    from_iso,
    load_json,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from workgraph.storage.sqlmodel_models import (
    CommandRun,
    JobCheckpoint,
    JobLog,
    TaskRun,
    TokenUsage,
)
from workgraph.storage.sqlmodel_models import Job as JobRow

ENGINE_LOG_SOURCE = "job-engine"
MAX_WRITE_ATTEMPTS = 5


class JobRepository:
    """Job persistence facade backed by SQLModel + SQLite.

    Every state mutation is a compare-and-set ``UPDATE ... WHERE state = :expected``
    so independent processes sharing one workspace database cannot both win the
    same transition.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        workspace_id: str | None = None,
        busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self.workspace_id = workspace_id or str(db_path.resolve().parent)
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_job(  # noqa: PLR0913
        self,
        *,
        job_type: str,
        command_name: str,
        project_key: str | None = None,
        total_units: int | None = None,
        payload: dict[str, Any] | None = None,
        resume_supported: bool = True,
    ) -> Job:
        """Create a queued job."""

        now = utc_now()
        job_id = str(uuid4())
        with Session(self.engine) as session:
            row = JobRow(
                job_id=job_id,
                workspace_id=self.workspace_id,
                job_type=job_type,
                command_name=command_name,
                state=JobState.QUEUED.value,
                project_key=project_key,
                total_units=total_units,
                completed_units=0 if total_units is not None else None,
                resume_supported=resume_supported,
                payload_json=dump_json(payload),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            self._add_log(
                session=session,
                job_id=job_id,
                message=f"Job created ({command_name})",
                source=ENGINE_LOG_SOURCE,
                details={"state_to": JobState.QUEUED.value, "job_type": job_type},
            )
            session.commit()
            session.refresh(row)
            return _to_job(row)

    def get_job(self, job_id: str) -> Job | None:
        with Session(self.engine) as session:
            row = session.exec(select(JobRow).where(JobRow.job_id == job_id)).one_or_none()
        return _to_job(row) if row is not None else None

    def list_jobs(self, filters: JobListFilters | None = None) -> list[Job]:
        """List recent jobs, newest first."""

        filters = filters or JobListFilters()
        statement = (
            select(JobRow)
            .where(JobRow.workspace_id == self.workspace_id)
            .order_by(col(JobRow.updated_at).desc(), col(JobRow.created_at).desc())
            .limit(filters.limit)
        )
        if filters.state is not None:
            statement = statement.where(JobRow.state == filters.state.value)
        if filters.job_type:
            statement = statement.where(JobRow.job_type == filters.job_type)
        if filters.project_key:
            statement = statement.where(JobRow.project_key == filters.project_key)
        if filters.since is not None:
            statement = statement.where(col(JobRow.updated_at) >= to_db_datetime(filters.since))
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_job(row) for row in rows]

    def transition_job(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        expected: JobState,
        target: JobState,
        detail: str | None = None,
        error_summary: str | None = None,
        message: str | None = None,
    ) -> Job | None:
        """Move ``expected -> target``; ``None`` when another writer got there first."""

        now = utc_now()
        values: dict[str, Any] = {
            "state": target.value,
            "state_detail": detail,
            "updated_at": to_db_datetime(now),
        }
        if target == JobState.RUNNING:
            values["started_at"] = to_db_datetime(now)
            values["completed_at"] = None
        if target in {JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED}:
            values["completed_at"] = to_db_datetime(now)
        if error_summary is not None:
            values["error_summary"] = error_summary

        for _ in range(MAX_WRITE_ATTEMPTS):
            with Session(self.engine) as session:
                result = session.exec(
                    sa_update(JobRow)
                    .where(col(JobRow.job_id) == job_id, col(JobRow.state) == expected.value)
                    .values(**values),
                )
                if result.rowcount != 1:
                    session.rollback()
                    return None
                self._add_log(
                    session=session,
                    job_id=job_id,
                    message=message or f"Job state {expected.value} -> {target.value}",
                    source=ENGINE_LOG_SOURCE,
                    details={
                        "state_from": expected.value,
                        "state_to": target.value,
                        "detail": detail,
                        "error_summary": error_summary,
                    },
                )
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    continue
            return self.get_job(job_id)
        raise ConcurrentUpdateError(
            f"Job log sequence changed concurrently; please retry (job_id={job_id}).",
        )

    def update_progress(
        self,
        *,
        job_id: str,
        completed_units: int | None,
        total_units: int | None,
        detail: str | None = None,
    ) -> Job | None:
        """Write progress counters; the stored pair never ends up with completed > total."""

        values: dict[str, Any] = {"updated_at": to_db_datetime(utc_now())}
        conditions = [col(JobRow.job_id) == job_id]
        if completed_units is not None:
            values["completed_units"] = completed_units
            if total_units is None:
                conditions.append(
                    or_(
                        col(JobRow.total_units).is_(None),
                        col(JobRow.total_units) >= completed_units,
                    ),
                )
        if total_units is not None:
            values["total_units"] = total_units
            if completed_units is None:
                conditions.append(
                    or_(
                        col(JobRow.completed_units).is_(None),
                        col(JobRow.completed_units) <= total_units,
                    ),
                )
        if detail is not None:
            values["state_detail"] = detail

        with Session(self.engine) as session:
            result = session.exec(sa_update(JobRow).where(*conditions).values(**values))
            if result.rowcount != 1:
                session.rollback()
                row = session.exec(select(JobRow).where(JobRow.job_id == job_id)).one_or_none()
                if row is None:
                    return None
                completed = completed_units if completed_units is not None else row.completed_units
                total = total_units if total_units is not None else row.total_units
                raise ValueError(
                    f"completed_units ({completed}) cannot exceed total_units ({total}).",
                )
            session.commit()
        return self.get_job(job_id)

    def append_checkpoint(
        self,
        *,
        job_id: str,
        stage: str,
        details: dict[str, Any] | None = None,
    ) -> Checkpoint:
        """Append the next checkpoint; the sequence is claimed by compare-and-set."""

        for _ in range(MAX_WRITE_ATTEMPTS):
            now = utc_now()
            with Session(self.engine) as session:
                row = session.exec(select(JobRow).where(JobRow.job_id == job_id)).one_or_none()
                if row is None:
                    raise RuntimeError(f"Job not found: {job_id}")
                previous_seq = row.last_checkpoint_seq
                next_seq = (previous_seq or 0) + 1
                seq_matches = (
                    col(JobRow.last_checkpoint_seq).is_(None)
                    if previous_seq is None
                    else col(JobRow.last_checkpoint_seq) == previous_seq
                )
                result = session.exec(
                    sa_update(JobRow)
                    .where(col(JobRow.job_id) == job_id, seq_matches)
                    .values(
                        last_checkpoint_seq=next_seq,
                        last_checkpoint_at=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                checkpoint_row = JobCheckpoint(
                    job_id=job_id,
                    seq=next_seq,
                    stage=stage,
                    details_json=dump_json(details),
                    created_at=now,
                )
                session.add(checkpoint_row)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    continue
                session.refresh(checkpoint_row)
                return _to_checkpoint(checkpoint_row)
        raise ConcurrentUpdateError(
            f"Checkpoint sequence changed concurrently; please retry (job_id={job_id}).",
        )

    def latest_checkpoint(self, job_id: str) -> Checkpoint | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(JobCheckpoint)
                .where(JobCheckpoint.job_id == job_id)
                .order_by(col(JobCheckpoint.seq).desc())
                .limit(1),
            ).one_or_none()
        return _to_checkpoint(row) if row is not None else None

    def list_checkpoints(self, job_id: str) -> list[Checkpoint]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(JobCheckpoint)
                .where(JobCheckpoint.job_id == job_id)
                .order_by(col(JobCheckpoint.seq).asc()),
            ).all()
        return [_to_checkpoint(row) for row in rows]

    def start_command_run(self, *, command_name: str, job_id: str | None = None) -> CommandRunView:
        row = CommandRun(
            command_run_id=str(uuid4()),
            command_name=command_name,
            job_id=job_id,
            workspace_id=self.workspace_id,
            status=CommandRunStatus.RUNNING.value,
            started_at=utc_now(),
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_command_run(row)

    def finish_command_run(
        self,
        *,
        command_run_id: str,
        status: CommandRunStatus,
        error: str | None = None,
    ) -> CommandRunView | None:
        """Close a running command run; already-closed runs are returned unchanged."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.exec(
                select(CommandRun).where(CommandRun.command_run_id == command_run_id),
            ).one_or_none()
            if row is None:
                return None
            duration = (now - to_utc_aware_datetime(row.started_at)).total_seconds()
            result = session.exec(
                sa_update(CommandRun)
                .where(
                    col(CommandRun.command_run_id) == command_run_id,
                    col(CommandRun.status) == CommandRunStatus.RUNNING.value,
                )
                .values(
                    status=status.value,
                    error=error,
                    finished_at=to_db_datetime(now),
                    duration_seconds=max(0.0, duration),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
            else:
                session.commit()
        return self.get_command_run(command_run_id)

    def get_command_run(self, command_run_id: str) -> CommandRunView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(CommandRun).where(CommandRun.command_run_id == command_run_id),
            ).one_or_none()
        return _to_command_run(row) if row is not None else None

    def list_command_runs(self, job_id: str) -> list[CommandRunView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(CommandRun)
                .where(CommandRun.job_id == job_id)
                .order_by(col(CommandRun.started_at).asc()),
            ).all()
        return [_to_command_run(row) for row in rows]

    def record_task_run(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        task_id: str,
        task_key: str,
        status: str,
        phase: str | None = None,
        command_run_id: str | None = None,
    ) -> TaskRunView:
        row = TaskRun(
            task_run_id=str(uuid4()),
            job_id=job_id,
            command_run_id=command_run_id,
            task_id=task_id,
            task_key=task_key,
            status=status,
            phase=phase,
            started_at=utc_now(),
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_run(row)

    def finish_task_run(self, *, task_run_id: str, status: str) -> TaskRunView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(TaskRun).where(TaskRun.task_run_id == task_run_id),
            ).one_or_none()
            if row is None:
                return None
            row.status = status
            row.finished_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_run(row)

    def list_task_runs(self, job_id: str) -> list[TaskRunView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRun)
                .where(TaskRun.job_id == job_id)
                .order_by(col(TaskRun.started_at).asc(), col(TaskRun.task_key).asc()),
            ).all()
        return [_to_task_run(row) for row in rows]

    def task_status_totals(self, job_id: str) -> dict[str, int]:
        return dict(Counter(run.status for run in self.list_task_runs(job_id)))

    def append_log(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        message: str,
        level: str = "info",
        source: str | None = None,
        task_id: str | None = None,
        task_key: str | None = None,
        phase: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> JobLogEntry:
        """Append one log line with the next per-job sequence number."""

        for _ in range(MAX_WRITE_ATTEMPTS):
            with Session(self.engine) as session:
                row = self._add_log(
                    session=session,
                    job_id=job_id,
                    message=message,
                    level=level,
                    source=source,
                    task_id=task_id,
                    task_key=task_key,
                    phase=phase,
                    details=details,
                )
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    continue
                session.refresh(row)
                return _to_log_entry(row)
        raise ConcurrentUpdateError(
            f"Job log sequence changed concurrently; please retry (job_id={job_id}).",
        )

    def get_logs(
        self,
        *,
        job_id: str,
        since: datetime | None = None,
        after: LogCursor | None = None,
        limit: int = 500,
    ) -> JobLogsPage:
        """Return log lines after ``after`` (or since ``since``) in sequence order."""

        statement = select(JobLog).where(JobLog.job_id == job_id)
        if after is not None and after.sequence is not None:
            statement = statement.where(col(JobLog.sequence) > after.sequence)
        elif after is not None:
            statement = statement.where(
                col(JobLog.created_at) > to_db_datetime(from_iso(after.timestamp)),
            )
        elif since is not None:
            statement = statement.where(col(JobLog.created_at) >= to_db_datetime(since))
        statement = statement.order_by(col(JobLog.sequence).asc()).limit(limit)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        entries = [_to_log_entry(row) for row in rows]
        if not entries:
            return JobLogsPage(entries=[], cursor=after)
        last = entries[-1]
        return JobLogsPage(
            entries=entries,
            cursor=LogCursor(timestamp=last.timestamp, sequence=last.sequence),
        )

    def record_token_usage(self, usage: TokenUsageWrite) -> None:
        with Session(self.engine) as session:
            session.add(
                TokenUsage(
                    job_id=usage.job_id,
                    command_run_id=usage.command_run_id,
                    task_id=usage.task_id,
                    command_name=usage.command_name,
                    agent=usage.agent,
                    model=usage.model,
                    prompt_tokens=usage.prompt_tokens,
                    completion_tokens=usage.completion_tokens,
                    cached_tokens=usage.cached_tokens,
                    duration_ms=usage.duration_ms,
                    cost_usd=usage.cost_usd,
                    created_at=utc_now(),
                ),
            )
            session.commit()

    def summarize_token_usage(self, job_id: str) -> list[TokenUsageSummary]:
        """Token totals grouped by command, agent, and model."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(
                    TokenUsage.command_name,
                    TokenUsage.agent,
                    TokenUsage.model,
                    func.count(col(TokenUsage.id)),
                    func.sum(TokenUsage.prompt_tokens),
                    func.sum(TokenUsage.completion_tokens),
                    func.sum(TokenUsage.cached_tokens),
                    func.sum(TokenUsage.cost_usd),
                )
                .where(TokenUsage.job_id == job_id)
                .group_by(
                    col(TokenUsage.command_name),
                    col(TokenUsage.agent),
                    col(TokenUsage.model),
                )
                .order_by(
                    col(TokenUsage.command_name),
                    col(TokenUsage.agent),
                    col(TokenUsage.model),
                ),
            ).all()
        summaries: list[TokenUsageSummary] = []
        for command_name, agent, model, calls, prompt, completion, cached, cost in rows:
            prompt_tokens = int(prompt or 0)
            completion_tokens = int(completion or 0)
            summaries.append(
                TokenUsageSummary(
                    command_name=command_name,
                    agent=agent,
                    model=model,
                    calls=int(calls or 0),
                    prompt_tokens=prompt_tokens,
                    completion_tokens=completion_tokens,
                    cached_tokens=int(cached or 0),
                    total_tokens=prompt_tokens + completion_tokens,
                    cost_usd=float(cost) if cost is not None else None,
                ),
            )
        return summaries

    def _add_log(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        message: str,
        level: str = "info",
        source: str | None = None,
        task_id: str | None = None,
        task_key: str | None = None,
        phase: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> JobLog:
        current = session.exec(
            select(func.max(JobLog.sequence)).where(JobLog.job_id == job_id),
        ).one()
        row = JobLog(
            job_id=job_id,
            sequence=(current or 0) + 1,
            level=level,
            source=source,
            message=message,
            task_id=task_id,
            task_key=task_key,
            phase=phase,
            details_json=dump_json(
                {key: value for key, value in (details or {}).items() if value is not None},
            ),
            created_at=utc_now(),
        )
        session.add(row)
        return row


def _to_job(row: JobRow) -> Job:
    return Job(
        job_id=row.job_id,
        workspace_id=row.workspace_id,
        job_type=row.job_type,
        command_name=row.command_name,
        state=JobState(row.state),
        state_detail=row.state_detail,
        project_key=row.project_key,
        total_units=row.total_units,
        completed_units=row.completed_units,
        last_checkpoint_seq=row.last_checkpoint_seq,
        last_checkpoint_at=optional_utc(row.last_checkpoint_at),
        resume_supported=bool(row.resume_supported),
        payload=load_json(row.payload_json),
        error_summary=row.error_summary,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
    )


def _to_checkpoint(row: JobCheckpoint) -> Checkpoint:
    return Checkpoint(
        job_id=row.job_id,
        seq=row.seq,
        stage=row.stage,
        created_at=to_utc_aware_datetime(row.created_at),
        details=load_json(row.details_json),
    )


def _to_command_run(row: CommandRun) -> CommandRunView:
    return CommandRunView(
        command_run_id=row.command_run_id,
        command_name=row.command_name,
        job_id=row.job_id,
        workspace_id=row.workspace_id,
        status=CommandRunStatus(row.status),
        error=row.error,
        started_at=to_utc_aware_datetime(row.started_at),
        finished_at=optional_utc(row.finished_at),
        duration_seconds=row.duration_seconds,
    )


def _to_task_run(row: TaskRun) -> TaskRunView:
    return TaskRunView(
        task_run_id=row.task_run_id,
        job_id=row.job_id,
        command_run_id=row.command_run_id,
        task_id=row.task_id,
        task_key=row.task_key,
        status=row.status,
        phase=row.phase,
        started_at=to_utc_aware_datetime(row.started_at),
        finished_at=optional_utc(row.finished_at),
    )


def _to_log_entry(row: JobLog) -> JobLogEntry:
    details = load_json(row.details_json)
    return JobLogEntry(
        timestamp=to_utc_aware_datetime(row.created_at).isoformat(),
        sequence=row.sequence,
        level=row.level,
        source=row.source,
        message=row.message,
        task_id=row.task_id,
        task_key=row.task_key,
        phase=row.phase,
        details=details or None,
    )
