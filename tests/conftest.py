"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest

from workgraph.jobs.engine import JobLifecycleEngine
from workgraph.jobs.repository import JobRepository
from workgraph.scheduler.repository import TaskRepository


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch) -> None:
    """Drop WORKGRAPH_* variables from the developer shell."""
    for name in list(os.environ):
        if name.startswith("WORKGRAPH_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "workgraph.db"


@pytest.fixture()
def task_repository(db_path: Path) -> Iterator[TaskRepository]:
    repository = TaskRepository(db_path)
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def job_repository(db_path: Path, task_repository: TaskRepository) -> Iterator[JobRepository]:
    repository = JobRepository(db_path, workspace_id="ws-test")
    yield repository
    repository.close()


@pytest.fixture()
def engine(job_repository: JobRepository) -> JobLifecycleEngine:
    return JobLifecycleEngine(job_repository)


@pytest.fixture()
def project(task_repository: TaskRepository) -> str:
    """Seed project PRJ with epic E1 holding story S1; returns the project key."""
    task_repository.create_project(key="PRJ", name="Project")
    task_repository.create_epic(project_key="PRJ", key="E1", title="Epic one")
    task_repository.create_story(project_key="PRJ", epic_key="E1", key="S1", title="Story one")
    return "PRJ"
