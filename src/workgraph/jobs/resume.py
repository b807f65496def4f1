"""Resume interrupted jobs from their latest checkpoint."""

from __future__ import annotations

import logging

from workgraph.errors import (
    AlreadyRunningError,
    InvalidTransitionError,
    JobNotFoundError,
    ManifestMismatchError,
    NoCheckpointError,
)
from workgraph.jobs.engine import JobLifecycleEngine
from workgraph.jobs.models import Checkpoint, Job, JobState, ResumeResult
from workgraph.scheduler.models import SelectionFilters, SelectionPlan
from workgraph.scheduler.selection import TaskSelectionService

logger = logging.getLogger(__name__)

RESUME_COMMAND = "resume"
RESUMED_STAGE = "resumed"


class JobResumeService:
    """Validate that a job can continue and hand back where to continue from.

    Refusals are raised verbatim so operators see the exact blocking condition.
    """

    def __init__(
        self,
        engine: JobLifecycleEngine,
        *,
        selection: TaskSelectionService | None = None,
    ) -> None:
        self.engine = engine
        self.selection = selection

    def resume(self, job_id: str) -> ResumeResult:
        job = self.engine.repository.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        try:
            self._check_resumable(job)
        except (AlreadyRunningError, InvalidTransitionError) as error:
            logger.warning("Resume refused job=%s: %s", job_id, error)
            raise

        with self.engine.command_run(RESUME_COMMAND, job_id=job_id):
            checkpoint = self.engine.latest_checkpoint(job_id)
            if checkpoint is None:
                raise NoCheckpointError(f"No checkpoints found for job {job_id}; cannot resume.")
            _check_checkpoint_manifest(job, checkpoint)
            stage, stage_seq = _resume_point(checkpoint)
            plan = self._revalidate_plan(job, checkpoint)

            reopened = self.engine.reopen_for_resume(job, detail=f"resuming after {stage}")
            details = {
                "job_id": job_id,
                "command_name": job.command_name,
                "resumed_from": stage,
                "resumed_from_seq": stage_seq,
            }
            fingerprint = checkpoint.details.get("plan_fingerprint")
            if plan is None and fingerprint:
                details["plan_fingerprint"] = fingerprint
            resumed = self.engine.write_checkpoint(job_id, RESUMED_STAGE, details, plan=plan)
        logger.info("Resumed job %s from checkpoint seq=%d stage=%s", job_id, stage_seq, stage)
        return ResumeResult(
            job=reopened,
            checkpoint=resumed,
            resume_from_stage=stage,
            plan=plan,
        )

    def _check_resumable(self, job: Job) -> None:
        if job.state in {JobState.RUNNING, JobState.QUEUED}:
            raise AlreadyRunningError(
                f"Job {job.job_id} is already {job.state.value}; nothing to resume.",
            )
        if job.state in {JobState.COMPLETED, JobState.CANCELLED}:
            raise InvalidTransitionError(
                f"Job {job.job_id} is {job.state.value}; terminal jobs cannot be resumed.",
                job_id=job.job_id,
                state_from=job.state.value,
                state_to=JobState.RUNNING.value,
            )
        if not job.resume_supported:
            raise InvalidTransitionError(
                f"Job {job.job_id} ({job.command_name}) does not support resume.",
                job_id=job.job_id,
                state_from=job.state.value,
                state_to=JobState.RUNNING.value,
            )

    def _revalidate_plan(self, job: Job, checkpoint: Checkpoint) -> SelectionPlan | None:
        """Re-run the job's selection and compare it with the checkpointed plan."""

        raw_filters = job.payload.get("selection_filters")
        fingerprint = checkpoint.details.get("plan_fingerprint")
        if not isinstance(raw_filters, dict) or not fingerprint:
            return None
        if self.selection is None:
            logger.warning(
                "Job %s carries a plan fingerprint but no selection service is wired; "
                "skipping plan check",
                job.job_id,
            )
            return None
        plan = self.selection.select_tasks(SelectionFilters.from_payload(raw_filters))
        current = plan.fingerprint()
        if current != fingerprint:
            raise ManifestMismatchError(
                f"Task plan for job {job.job_id} changed since it was checkpointed "
                f"(expected {fingerprint[:12]}, got {current[:12]}); "
                "start a new job instead of resuming.",
            )
        return plan


def _resume_point(checkpoint: Checkpoint) -> tuple[str, int]:
    """Stage and seq to continue after; resume markers point at the stage they resumed."""

    if checkpoint.stage == RESUMED_STAGE:
        stage = checkpoint.details.get("resumed_from")
        seq = checkpoint.details.get("resumed_from_seq")
        if isinstance(stage, str) and isinstance(seq, int):
            return stage, seq
    return checkpoint.stage, checkpoint.seq


def _check_checkpoint_manifest(job: Job, checkpoint: Checkpoint) -> None:
    recorded_job_id = checkpoint.details.get("job_id")
    if recorded_job_id is not None and recorded_job_id != job.job_id:
        raise ManifestMismatchError(
            f"Checkpoint {checkpoint.seq} belongs to job {recorded_job_id}, not {job.job_id}.",
        )
    recorded_command = checkpoint.details.get("command_name")
    if recorded_command is not None and recorded_command != job.command_name:
        raise ManifestMismatchError(
            f"Checkpoint {checkpoint.seq} was written by {recorded_command}, "
            f"but job {job.job_id} runs {job.command_name}.",
        )
