from __future__ import annotations

from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from workgraph import __version__
from workgraph.jobs.engine import JobLifecycleEngine
from workgraph.jobs.models import JobState
from workgraph.jobs.repository import JobRepository
from workgraph.main import workgraph
from workgraph.scheduler.repository import TaskRepository

pytestmark = [
    allure.epic("Command Line"),
    allure.feature("Tasks & Jobs Commands"),
]


def _seed_tasks(db_path: Path) -> None:
    repository = TaskRepository(db_path)
    repository.init_schema()
    repository.create_project(key="PRJ")
    repository.create_epic(project_key="PRJ", key="E1")
    repository.create_story(project_key="PRJ", epic_key="E1", key="S1")
    first = repository.create_task(project_key="PRJ", story_key="S1", key="T1", priority=1)
    second = repository.create_task(project_key="PRJ", story_key="S1", key="T2", priority=2)
    repository.add_dependency(task_id=second.task_id, depends_on_task_id=first.task_id)
    repository.close()


def _job_engine(db_path: Path) -> tuple[JobRepository, JobLifecycleEngine]:
    repository = JobRepository(db_path)
    return repository, JobLifecycleEngine(repository)


@pytest.fixture()
def local_backend(monkeypatch) -> None:
    monkeypatch.setenv("WORKGRAPH_JOBS_BACKEND", "local")


def test_version_option() -> None:
    result = CliRunner().invoke(workgraph, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_tasks_select_prints_plan(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    _seed_tasks(db_path)

    result = CliRunner().invoke(
        workgraph,
        ["tasks", "select", "--db-path", str(db_path), "--project", "PRJ"],
    )

    assert result.exit_code == 0, result.output
    assert "Selected: 1 Blocked: 1" in result.output
    assert "1. T1 status=not_started priority=1" in result.output
    assert "blocked T2 reason=dependency_not_ready waiting_on=1" in result.output
    assert "Warning: 1 task(s) skipped because dependencies not ready" in result.output


def test_tasks_select_parallel_batches(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    _seed_tasks(db_path)

    result = CliRunner().invoke(
        workgraph,
        [
            "tasks",
            "select",
            "--db-path",
            str(db_path),
            "--project",
            "PRJ",
            "--ignore-dependencies",
            "--parallel",
            "0",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "Batch 1: T1" in result.output
    assert "Batch 2: T2" in result.output


def test_tasks_select_unknown_project_fails(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    _seed_tasks(db_path)

    result = CliRunner().invoke(
        workgraph,
        ["tasks", "select", "--db-path", str(db_path), "--project", "NOPE"],
    )

    assert result.exit_code != 0
    assert "Unknown project: NOPE" in result.output


def test_jobs_commands_need_a_backend(tmp_path: Path) -> None:
    result = CliRunner().invoke(workgraph, ["jobs", "list", "--db-path", str(tmp_path / "x.db")])

    assert result.exit_code != 0
    assert "No jobs backend configured" in result.output


def test_create_job_then_inspect_it(tmp_path: Path, local_backend) -> None:
    db_path = tmp_path / "cli.db"
    _seed_tasks(db_path)
    runner = CliRunner()

    created = runner.invoke(
        workgraph,
        ["tasks", "select", "--db-path", str(db_path), "--project", "PRJ", "--create-job"],
    )
    listed = runner.invoke(workgraph, ["jobs", "list", "--db-path", str(db_path)])
    repository, _ = _job_engine(db_path)
    job = repository.list_jobs()[0]
    repository.close()
    status = runner.invoke(workgraph, ["jobs", "status", "--db-path", str(db_path), job.job_id])
    checkpoint = runner.invoke(
        workgraph,
        ["jobs", "checkpoint", "--db-path", str(db_path), job.job_id],
    )

    assert created.exit_code == 0, created.output
    assert "Job created: job_id=" in created.output
    assert "type=work state=queued total_units=1" in created.output
    assert listed.exit_code == 0, listed.output
    assert "Jobs: 1" in listed.output
    assert status.exit_code == 0, status.output
    assert "State: queued" in status.output
    assert "Progress: 0/1 (0%)" in status.output
    assert "Last checkpoint: seq=1 stage=selection" in status.output
    assert checkpoint.exit_code == 0, checkpoint.output
    assert "task_keys=['T1']" in checkpoint.output


def test_failed_job_status_exits_non_zero(tmp_path: Path, local_backend) -> None:
    db_path = tmp_path / "cli.db"
    _seed_tasks(db_path)
    repository, engine = _job_engine(db_path)
    job = engine.create_job("work-on-tasks")
    engine.start_job(job.job_id)
    engine.fail_job(job.job_id, "agent crashed")
    repository.close()

    result = CliRunner().invoke(
        workgraph,
        ["jobs", "status", "--db-path", str(db_path), job.job_id],
    )

    assert result.exit_code == 1
    assert "State: failed" in result.output
    assert "Error: agent crashed" in result.output


def test_cancel_completed_job_requires_force(tmp_path: Path, local_backend) -> None:
    db_path = tmp_path / "cli.db"
    _seed_tasks(db_path)
    repository, engine = _job_engine(db_path)
    job = engine.create_job("work-on-tasks")
    engine.start_job(job.job_id)
    engine.complete_job(job.job_id)
    repository.close()
    runner = CliRunner()

    refused = runner.invoke(workgraph, ["jobs", "cancel", "--db-path", str(db_path), job.job_id])
    forced = runner.invoke(
        workgraph,
        ["jobs", "cancel", "--db-path", str(db_path), job.job_id, "--force", "--reason", "oops"],
    )

    assert refused.exit_code != 0
    assert "rerun with --force" in refused.output
    assert forced.exit_code == 0, forced.output
    assert "state=cancelled reason=oops" in forced.output


def test_resume_failed_job(tmp_path: Path, local_backend) -> None:
    db_path = tmp_path / "cli.db"
    _seed_tasks(db_path)
    runner = CliRunner()
    runner.invoke(
        workgraph,
        ["tasks", "select", "--db-path", str(db_path), "--project", "PRJ", "--create-job"],
    )
    repository, engine = _job_engine(db_path)
    job = repository.list_jobs()[0]
    engine.start_job(job.job_id)
    engine.fail_job(job.job_id, "agent crashed")
    repository.close()

    resumed = runner.invoke(workgraph, ["jobs", "resume", "--db-path", str(db_path), job.job_id])
    again = runner.invoke(workgraph, ["jobs", "resume", "--db-path", str(db_path), job.job_id])

    assert resumed.exit_code == 0, resumed.output
    assert "state=running" in resumed.output
    assert "Resume from stage: selection" in resumed.output
    assert "Plan: 1 task(s) still to run" in resumed.output
    assert again.exit_code != 0
    assert "already running" in again.output


def test_resume_without_checkpoint_fails(tmp_path: Path, local_backend) -> None:
    db_path = tmp_path / "cli.db"
    _seed_tasks(db_path)
    repository, engine = _job_engine(db_path)
    job = engine.create_job("work-on-tasks")
    engine.start_job(job.job_id)
    engine.pause_job(job.job_id)
    repository.close()

    result = CliRunner().invoke(
        workgraph,
        ["jobs", "resume", "--db-path", str(db_path), job.job_id],
    )

    assert result.exit_code != 0
    assert "No checkpoints found" in result.output


def test_logs_follow_until_terminal(tmp_path: Path, local_backend) -> None:
    db_path = tmp_path / "cli.db"
    _seed_tasks(db_path)
    repository, engine = _job_engine(db_path)
    job = engine.create_job("work-on-tasks")
    engine.start_job(job.job_id)
    engine.append_log(job.job_id, "working on T1", source="agent")
    engine.update_job_state(job.job_id, JobState.CANCELLED, detail="user")
    repository.close()

    result = CliRunner().invoke(
        workgraph,
        ["jobs", "logs", "--db-path", str(db_path), job.job_id, "--follow", "--interval", "0"],
    )

    assert result.exit_code == 1
    assert "agent: working on T1" in result.output
    assert f"Job {job.job_id} ended cancelled." in result.output


def test_tasks_and_tokens_summaries(tmp_path: Path, local_backend) -> None:
    db_path = tmp_path / "cli.db"
    _seed_tasks(db_path)
    tasks = TaskRepository(db_path)
    task = tasks.get_task(project_id=tasks.get_project("PRJ").project_id, key="T1")
    tasks.close()
    repository, engine = _job_engine(db_path)
    job = engine.create_job("work-on-tasks")
    run = engine.record_task_run(job.job_id, task, "running")
    engine.finish_task_run(run.task_run_id, "succeeded")
    repository.close()
    runner = CliRunner()

    task_summary = runner.invoke(
        workgraph,
        ["jobs", "tasks", "--db-path", str(db_path), job.job_id],
    )
    tokens = runner.invoke(workgraph, ["jobs", "tokens", "--db-path", str(db_path), job.job_id])

    assert task_summary.exit_code == 0, task_summary.output
    assert "Task runs: 1 succeeded=1" in task_summary.output
    assert "T1 status=succeeded" in task_summary.output
    assert tokens.exit_code == 0, tokens.output
    assert "Token usage groups: 0" in tokens.output
