from __future__ import annotations

import allure
import pytest

from workgraph.errors import ConcurrentUpdateError, InvalidTransitionError, JobNotFoundError
from workgraph.jobs.engine import JobLifecycleEngine
from workgraph.jobs.models import CommandRunStatus, JobListFilters, JobState, TokenUsageWrite
from workgraph.jobs.repository import JobRepository
from workgraph.scheduler.repository import TaskRepository

pytestmark = [
    allure.epic("Job Lifecycle"),
    allure.feature("State Machine & Checkpoints"),
]


def test_create_job_is_queued_with_creation_log(engine: JobLifecycleEngine) -> None:
    job = engine.create_job("work-on-tasks", project_key="PRJ", total_units=3)

    assert job.state == JobState.QUEUED
    assert job.job_type == "work"
    assert job.workspace_id == "ws-test"
    assert job.completed_units == 0
    logs = engine.repository.get_logs(job_id=job.job_id)
    assert [entry.message for entry in logs.entries] == ["Job created (work-on-tasks)"]
    assert logs.entries[0].source == "job-engine"


def test_unknown_command_maps_to_other_job_type(engine: JobLifecycleEngine) -> None:
    assert engine.create_job("frobnicate").job_type == "other"


def test_happy_path_transitions_are_logged(engine: JobLifecycleEngine) -> None:
    job = engine.create_job("qa-tasks")

    running = engine.start_job(job.job_id)
    paused = engine.pause_job(job.job_id, detail="waiting for review")
    resumed = engine.resume_job(job.job_id)
    done = engine.complete_job(job.job_id)

    assert running.started_at is not None
    assert paused.state_detail == "waiting for review"
    assert resumed.state == JobState.RUNNING
    assert done.state == JobState.COMPLETED
    assert done.completed_at is not None
    transitions = [
        (entry.details["state_from"], entry.details["state_to"])
        for entry in engine.repository.get_logs(job_id=job.job_id).entries
        if entry.details and "state_from" in entry.details
    ]
    assert transitions == [
        ("queued", "running"),
        ("running", "paused"),
        ("paused", "running"),
        ("running", "completed"),
    ]


def test_illegal_transition_is_rejected(engine: JobLifecycleEngine) -> None:
    job = engine.create_job("work-on-tasks")

    with pytest.raises(InvalidTransitionError, match="from queued to completed") as caught:
        engine.complete_job(job.job_id)

    assert caught.value.state_from == "queued"
    assert caught.value.state_to == "completed"
    assert engine.get_job(job.job_id).state == JobState.QUEUED


def test_completing_twice_is_a_no_op(engine: JobLifecycleEngine) -> None:
    job = engine.create_job("work-on-tasks")
    engine.start_job(job.job_id)

    first = engine.complete_job(job.job_id)
    second = engine.complete_job(job.job_id)

    assert first.state == second.state == JobState.COMPLETED
    assert first.updated_at == second.updated_at
    completions = [
        entry
        for entry in engine.repository.get_logs(job_id=job.job_id).entries
        if entry.details and entry.details.get("state_to") == "completed"
    ]
    assert len(completions) == 1


def test_fail_job_records_error_summary(engine: JobLifecycleEngine) -> None:
    job = engine.create_job("work-on-tasks")
    engine.start_job(job.job_id)

    failed = engine.fail_job(job.job_id, "agent crashed")

    assert failed.state == JobState.FAILED
    assert failed.error_summary == "agent crashed"


def test_missing_job_raises_not_found(engine: JobLifecycleEngine) -> None:
    with pytest.raises(JobNotFoundError, match="Job not found: nope"):
        engine.start_job("nope")


def test_progress_is_validated(engine: JobLifecycleEngine) -> None:
    job = engine.create_job("work-on-tasks", total_units=4)

    updated = engine.update_progress(job.job_id, completed_units=3)

    assert updated.completed_units == 3
    with pytest.raises(ValueError, match="cannot exceed total_units"):
        engine.update_progress(job.job_id, completed_units=5)
    with pytest.raises(ValueError, match="must be >= 0"):
        engine.update_progress(job.job_id, completed_units=-1)


def test_checkpoints_get_consecutive_sequence_numbers(engine: JobLifecycleEngine) -> None:
    job = engine.create_job("work-on-tasks")

    first = engine.write_checkpoint(job.job_id, "selection", {"task_keys": ["T1"]})
    second = engine.write_checkpoint(job.job_id, "work", {"done": ["T1"]})

    assert (first.seq, second.seq) == (1, 2)
    assert engine.latest_checkpoint(job.job_id) == second
    assert [item.stage for item in engine.read_checkpoints(job.job_id)] == ["selection", "work"]
    assert engine.get_job(job.job_id).last_checkpoint_seq == 2


def test_command_run_context_records_outcome(engine: JobLifecycleEngine) -> None:
    job = engine.create_job("work-on-tasks")

    with engine.command_run("work-on-tasks", job_id=job.job_id) as ok_run:
        pass
    with pytest.raises(RuntimeError, match="boom"):
        with engine.command_run("work-on-tasks", job_id=job.job_id) as failed_run:
            raise RuntimeError("boom")
    with pytest.raises(KeyboardInterrupt):
        with engine.command_run("work-on-tasks", job_id=job.job_id) as interrupted_run:
            raise KeyboardInterrupt

    repository = engine.repository
    assert repository.get_command_run(ok_run.command_run_id).status == CommandRunStatus.SUCCEEDED
    failed = repository.get_command_run(failed_run.command_run_id)
    assert failed.status == CommandRunStatus.FAILED
    assert failed.error == "boom"
    interrupted = repository.get_command_run(interrupted_run.command_run_id)
    assert interrupted.status == CommandRunStatus.CANCELLED
    assert interrupted.error == "interrupted"
    assert len(repository.list_command_runs(job.job_id)) == 3


def test_finishing_command_run_twice_keeps_first_outcome(engine: JobLifecycleEngine) -> None:
    run = engine.start_command_run("order-tasks")

    first = engine.finish_command_run(run.command_run_id, CommandRunStatus.SUCCEEDED)
    second = engine.finish_command_run(run.command_run_id, CommandRunStatus.SUCCEEDED)
    third = engine.finish_command_run(run.command_run_id, CommandRunStatus.FAILED, error="late")

    assert first.status == second.status == third.status == CommandRunStatus.SUCCEEDED
    assert first.finished_at == third.finished_at
    assert third.error is None


def test_cancel_rules(engine: JobLifecycleEngine) -> None:
    queued = engine.create_job("work-on-tasks")
    finished = engine.create_job("work-on-tasks")
    engine.start_job(finished.job_id)
    engine.complete_job(finished.job_id)

    cancelled = engine.cancel(queued.job_id)
    again = engine.cancel(queued.job_id)

    assert cancelled.state == JobState.CANCELLED
    assert cancelled.state_detail == "user"
    assert again.updated_at == cancelled.updated_at
    with pytest.raises(InvalidTransitionError, match="rerun with --force"):
        engine.cancel(finished.job_id)

    forced = engine.cancel(finished.job_id, force=True, reason="cleanup")
    assert forced.state == JobState.CANCELLED
    assert forced.state_detail == "cleanup"


def test_partial_job_cancels_without_force(engine: JobLifecycleEngine) -> None:
    job = engine.create_job("work-on-tasks")
    engine.start_job(job.job_id)
    engine.mark_partial(job.job_id, "2 of 3 tasks done")

    cancelled = engine.cancel(job.job_id)

    assert cancelled.state == JobState.CANCELLED
    assert cancelled.state_detail == "user"


def test_completion_raced_by_another_writer_is_a_no_op(
    engine: JobLifecycleEngine,
    monkeypatch,
) -> None:
    job = engine.create_job("work-on-tasks")
    stale = engine.start_job(job.job_id)
    done = engine.complete_job(job.job_id)
    monkeypatch.setattr(engine, "get_job", lambda job_id: stale)

    again = engine.complete_job(job.job_id)

    assert again.state == JobState.COMPLETED
    assert again.updated_at == done.updated_at
    with pytest.raises(ConcurrentUpdateError, match="while moving to failed"):
        engine.fail_job(job.job_id, "agent crashed")


def test_force_cancel_raced_by_another_cancel_is_a_no_op(
    engine: JobLifecycleEngine,
    monkeypatch,
) -> None:
    job = engine.create_job("work-on-tasks")
    engine.start_job(job.job_id)
    stale = engine.complete_job(job.job_id)
    first = engine.cancel(job.job_id, force=True, reason="cleanup")
    monkeypatch.setattr(engine, "get_job", lambda job_id: stale)

    second = engine.cancel(job.job_id, force=True)

    assert second.state == JobState.CANCELLED
    assert second.state_detail == "cleanup"
    assert second.updated_at == first.updated_at


def test_progress_bound_holds_against_a_stale_total(
    engine: JobLifecycleEngine,
    monkeypatch,
) -> None:
    job = engine.create_job("work-on-tasks", total_units=10)
    stale = engine.get_job(job.job_id)
    engine.update_progress(job.job_id, total_units=2)
    monkeypatch.setattr(engine, "get_job", lambda job_id: stale)

    with pytest.raises(ValueError, match=r"completed_units \(5\) cannot exceed total_units \(2\)"):
        engine.update_progress(job.job_id, completed_units=5)

    stored = engine.repository.get_job(job.job_id)
    assert (stored.completed_units, stored.total_units) == (0, 2)


def test_lowering_total_below_completed_is_rejected(engine: JobLifecycleEngine) -> None:
    job = engine.create_job("work-on-tasks", total_units=4)
    engine.update_progress(job.job_id, completed_units=3)

    with pytest.raises(ValueError, match="cannot exceed total_units"):
        engine.repository.update_progress(job_id=job.job_id, completed_units=None, total_units=2)
    assert (
        engine.repository.update_progress(job_id="missing", completed_units=1, total_units=None)
        is None
    )


def test_task_runs_logs_and_tokens(
    engine: JobLifecycleEngine,
    task_repository: TaskRepository,
    project: str,
) -> None:
    task = task_repository.create_task(project_key=project, story_key="S1", key="T1")
    job = engine.create_job("work-on-tasks")
    engine.start_job(job.job_id)

    run = engine.record_task_run(job.job_id, task, "running", phase="implement")
    engine.finish_task_run(run.task_run_id, "succeeded")
    entry = engine.append_log(job.job_id, "Implemented", source="agent", task=task, phase="impl")
    for _ in range(2):
        engine.record_token_usage(
            TokenUsageWrite(
                job_id=job.job_id,
                task_id=task.task_id,
                command_name="work-on-tasks",
                agent="codex",
                model="gpt",
                prompt_tokens=100,
                completion_tokens=20,
                cost_usd=0.01,
            ),
        )

    assert engine.repository.task_status_totals(job.job_id) == {"succeeded": 1}
    assert entry.task_key == "T1"
    summary = engine.repository.summarize_token_usage(job.job_id)
    assert len(summary) == 1
    assert summary[0].calls == 2
    assert summary[0].total_tokens == 240
    assert summary[0].cost_usd == pytest.approx(0.02)


def test_list_jobs_is_scoped_to_workspace(
    engine: JobLifecycleEngine,
    job_repository: JobRepository,
) -> None:
    mine = engine.create_job("work-on-tasks", project_key="PRJ")
    engine.create_job("qa-tasks", project_key="OTHER")
    foreign = JobRepository(job_repository.db_path, workspace_id="someone-else")
    foreign.create_job(job_type="work", command_name="work-on-tasks")

    listed = job_repository.list_jobs(JobListFilters(project_key="PRJ"))
    everything = job_repository.list_jobs()
    foreign.close()

    assert [job.job_id for job in listed] == [mine.job_id]
    assert len(everything) == 2
