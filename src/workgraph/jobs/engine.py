"""Job lifecycle state machine, checkpoints, and command-run bookkeeping."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from workgraph.errors import (
    AlreadyRunningError,
    ConcurrentUpdateError,
    InvalidTransitionError,
    JobNotFoundError,
)
from workgraph.jobs.models import (
    ALLOWED_TRANSITIONS,
    RESUMABLE_STATES,
    TERMINAL_STATES,
    Checkpoint,
    CommandRunStatus,
    CommandRunView,
    Job,
    JobLogEntry,
    JobState,
    TaskRunView,
    TokenUsageWrite,
    job_type_for_command,
)
from workgraph.jobs.repository import JobRepository
from workgraph.scheduler.models import SelectionPlan, Task

logger = logging.getLogger(__name__)


class JobLifecycleEngine:
    """Advance jobs through their lifecycle and record what happened.

    Transitions follow ``ALLOWED_TRANSITIONS``; a transition to the terminal
    state the job already has is a silent no-op so completion can be retried
    safely, also when a concurrent writer reached that state first. Every
    accepted transition is written with a job log entry in the same
    transaction.
    """

    def __init__(self, repository: JobRepository) -> None:
        self.repository = repository

    def create_job(  # noqa: PLR0913
        self,
        command_name: str,
        *,
        job_type: str | None = None,
        project_key: str | None = None,
        total_units: int | None = None,
        payload: dict[str, Any] | None = None,
        resume_supported: bool = True,
    ) -> Job:
        if total_units is not None and total_units < 0:
            raise ValueError("total_units must be >= 0.")
        job = self.repository.create_job(
            job_type=job_type or job_type_for_command(command_name),
            command_name=command_name,
            project_key=project_key,
            total_units=total_units,
            payload=payload,
            resume_supported=resume_supported,
        )
        logger.info("Created job %s type=%s command=%s", job.job_id, job.job_type, command_name)
        return job

    def get_job(self, job_id: str) -> Job:
        job = self.repository.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    def start_job(self, job_id: str) -> Job:
        return self.update_job_state(job_id, JobState.RUNNING)

    def pause_job(self, job_id: str, *, detail: str | None = None) -> Job:
        return self.update_job_state(job_id, JobState.PAUSED, detail=detail)

    def resume_job(self, job_id: str) -> Job:
        """Continue a paused job in-process (``paused -> running``)."""

        job = self.get_job(job_id)
        if job.state != JobState.PAUSED:
            raise InvalidTransitionError(
                f"Only paused jobs can be resumed in place; job {job_id} is {job.state.value}.",
                job_id=job_id,
                state_from=job.state.value,
                state_to=JobState.RUNNING.value,
            )
        return self._apply(job, JobState.RUNNING)

    def complete_job(self, job_id: str, *, detail: str | None = None) -> Job:
        return self.update_job_state(job_id, JobState.COMPLETED, detail=detail)

    def fail_job(self, job_id: str, error_summary: str) -> Job:
        return self.update_job_state(job_id, JobState.FAILED, error_summary=error_summary)

    def mark_partial(self, job_id: str, detail: str | None = None) -> Job:
        return self.update_job_state(job_id, JobState.PARTIAL, detail=detail)

    def update_job_state(
        self,
        job_id: str,
        state: JobState,
        *,
        detail: str | None = None,
        error_summary: str | None = None,
    ) -> Job:
        job = self.get_job(job_id)
        if job.state == state and state in TERMINAL_STATES:
            return job
        if state not in ALLOWED_TRANSITIONS[job.state]:
            raise InvalidTransitionError(
                f"Cannot move job {job_id} from {job.state.value} to {state.value}.",
                job_id=job_id,
                state_from=job.state.value,
                state_to=state.value,
            )
        return self._apply(job, state, detail=detail, error_summary=error_summary)

    def reopen_for_resume(self, job: Job, *, detail: str) -> Job:
        """Move a partial/paused/failed job back to running for the resume path."""

        if job.state not in RESUMABLE_STATES:
            raise InvalidTransitionError(
                f"Job {job.job_id} cannot be resumed from state {job.state.value}.",
                job_id=job.job_id,
                state_from=job.state.value,
                state_to=JobState.RUNNING.value,
            )
        updated = self.repository.transition_job(
            job_id=job.job_id,
            expected=job.state,
            target=JobState.RUNNING,
            detail=detail,
            message=f"Job resumed from {job.state.value}",
        )
        if updated is None:
            raise AlreadyRunningError(
                f"Job {job.job_id} changed state while resuming; it is probably already running.",
            )
        logger.info("Job %s resumed from %s", job.job_id, job.state.value)
        return updated

    def update_progress(
        self,
        job_id: str,
        *,
        completed_units: int | None = None,
        total_units: int | None = None,
        detail: str | None = None,
    ) -> Job:
        job = self.get_job(job_id)
        completed = completed_units if completed_units is not None else job.completed_units
        total = total_units if total_units is not None else job.total_units
        if completed is not None and completed < 0:
            raise ValueError("completed_units must be >= 0.")
        if total is not None and total < 0:
            raise ValueError("total_units must be >= 0.")
        if completed is not None and total is not None and completed > total:
            raise ValueError(
                f"completed_units ({completed}) cannot exceed total_units ({total}).",
            )
        updated = self.repository.update_progress(
            job_id=job_id,
            completed_units=completed_units,
            total_units=total_units,
            detail=detail,
        )
        if updated is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return updated

    def write_checkpoint(
        self,
        job_id: str,
        stage: str,
        details: dict[str, Any] | None = None,
        *,
        plan: SelectionPlan | None = None,
    ) -> Checkpoint:
        """Append a checkpoint; ``plan`` records the task plan it was taken against."""

        self.get_job(job_id)
        if plan is not None:
            details = {
                **(details or {}),
                "plan_fingerprint": plan.fingerprint(),
                "task_keys": plan.ordered_keys,
            }
        checkpoint = self.repository.append_checkpoint(job_id=job_id, stage=stage, details=details)
        logger.debug("Checkpoint job=%s seq=%d stage=%s", job_id, checkpoint.seq, stage)
        return checkpoint

    def latest_checkpoint(self, job_id: str) -> Checkpoint | None:
        return self.repository.latest_checkpoint(job_id)

    def read_checkpoints(self, job_id: str) -> list[Checkpoint]:
        return self.repository.list_checkpoints(job_id)

    def start_command_run(self, command_name: str, *, job_id: str | None = None) -> CommandRunView:
        run = self.repository.start_command_run(command_name=command_name, job_id=job_id)
        logger.info(
            "Command run %s started command=%s job=%s",
            run.command_run_id,
            command_name,
            job_id,
        )
        return run

    def finish_command_run(
        self,
        command_run_id: str,
        status: CommandRunStatus,
        *,
        error: str | None = None,
    ) -> CommandRunView:
        """Close a command run once; later calls return the recorded outcome."""

        run = self.repository.finish_command_run(
            command_run_id=command_run_id,
            status=status,
            error=error,
        )
        if run is None:
            raise RuntimeError(f"Command run not found: {command_run_id}")
        logger.info("Command run %s finished status=%s", command_run_id, run.status.value)
        return run

    @contextmanager
    def command_run(
        self,
        command_name: str,
        *,
        job_id: str | None = None,
    ) -> Iterator[CommandRunView]:
        """Open a command run and close it according to how the block exits."""

        run = self.start_command_run(command_name, job_id=job_id)
        try:
            yield run
        except KeyboardInterrupt:
            self.finish_command_run(
                run.command_run_id,
                CommandRunStatus.CANCELLED,
                error="interrupted",
            )
            raise
        except Exception as error:
            self.finish_command_run(run.command_run_id, CommandRunStatus.FAILED, error=str(error))
            raise
        else:
            self.finish_command_run(run.command_run_id, CommandRunStatus.SUCCEEDED)

    def record_task_run(
        self,
        job_id: str,
        task: Task,
        status: str,
        *,
        phase: str | None = None,
        command_run_id: str | None = None,
    ) -> TaskRunView:
        return self.repository.record_task_run(
            job_id=job_id,
            task_id=task.task_id,
            task_key=task.key,
            status=status,
            phase=phase,
            command_run_id=command_run_id,
        )

    def finish_task_run(self, task_run_id: str, status: str) -> TaskRunView:
        run = self.repository.finish_task_run(task_run_id=task_run_id, status=status)
        if run is None:
            raise RuntimeError(f"Task run not found: {task_run_id}")
        return run

    def append_log(  # noqa: PLR0913
        self,
        job_id: str,
        message: str,
        *,
        level: str = "info",
        source: str | None = None,
        task: Task | None = None,
        phase: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> JobLogEntry:
        return self.repository.append_log(
            job_id=job_id,
            message=message,
            level=level,
            source=source,
            task_id=task.task_id if task is not None else None,
            task_key=task.key if task is not None else None,
            phase=phase,
            details=details,
        )

    def record_token_usage(self, usage: TokenUsageWrite) -> None:
        self.repository.record_token_usage(usage)

    def cancel(self, job_id: str, *, force: bool = False, reason: str | None = None) -> Job:
        """Cancel a job; terminal jobs need ``force``."""

        job = self.get_job(job_id)
        if job.state == JobState.CANCELLED:
            return job
        detail = reason or ("force" if force else "user")
        if not force:
            if job.is_terminal or JobState.CANCELLED not in ALLOWED_TRANSITIONS[job.state]:
                raise InvalidTransitionError(
                    f"Job {job_id} is {job.state.value} and cannot be cancelled; "
                    "rerun with --force to cancel it anyway.",
                    job_id=job_id,
                    state_from=job.state.value,
                    state_to=JobState.CANCELLED.value,
                )
            return self._apply(job, JobState.CANCELLED, detail=detail)
        updated = self.repository.transition_job(
            job_id=job_id,
            expected=job.state,
            target=JobState.CANCELLED,
            detail=detail,
            message=f"Job force-cancelled from {job.state.value} ({detail})",
        )
        if updated is None:
            current = self.repository.get_job(job_id)
            if current is not None and current.state == JobState.CANCELLED:
                return current
            raise ConcurrentUpdateError(
                "Job state changed concurrently while cancelling; "
                f"please retry command (job_id={job_id}).",
            )
        logger.warning("Job %s force-cancelled from %s reason=%s", job_id, job.state.value, detail)
        return updated

    def _apply(
        self,
        job: Job,
        state: JobState,
        *,
        detail: str | None = None,
        error_summary: str | None = None,
    ) -> Job:
        updated = self.repository.transition_job(
            job_id=job.job_id,
            expected=job.state,
            target=state,
            detail=detail,
            error_summary=error_summary,
        )
        if updated is None:
            current = self.repository.get_job(job.job_id)
            if current is not None and current.state == state and state in TERMINAL_STATES:
                return current
            raise ConcurrentUpdateError(
                f"Job state changed concurrently while moving to {state.value}; "
                f"please retry command (job_id={job.job_id}).",
            )
        logger.info("Job %s %s -> %s", job.job_id, job.state.value, state.value)
        return updated

