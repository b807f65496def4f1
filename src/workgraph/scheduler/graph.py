"""Scope resolution and one-shot graph snapshot for a selection pass."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field

from workgraph.errors import ScopeNotFoundError
from workgraph.scheduler.models import DependencyEdge, SelectionFilters, Task
from workgraph.scheduler.repository import MISSING_CONTEXT_CATEGORY, TaskRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TaskGraphSnapshot:
    """All project tasks and edges, plus the ids the filters put in scope."""

    project_id: str
    tasks_by_id: dict[str, Task]
    scope_ids: list[str]
    edges_by_task: dict[str, list[DependencyEdge]]
    missing_context_ids: set[str] = field(default_factory=set)
    warnings: list[str] = field(default_factory=list)

    def scope_tasks(self) -> list[Task]:
        return [self.tasks_by_id[task_id] for task_id in self.scope_ids]

    def dependencies_of(self, task_id: str) -> list[DependencyEdge]:
        return self.edges_by_task.get(task_id, [])


class TaskGraphIndex:
    """Resolve selection scope and load the graph the pass will reason about."""

    def __init__(self, repository: TaskRepository) -> None:
        self.repository = repository

    def load(self, filters: SelectionFilters) -> TaskGraphSnapshot:
        project_key = (filters.project_key or "").strip()
        if not project_key:
            raise ScopeNotFoundError("A project key is required to select tasks.")
        project = self.repository.get_project(project_key)
        if project is None:
            raise ScopeNotFoundError(f"Unknown project: {project_key}")

        epic_id: str | None = None
        if filters.epic_key:
            epic = self.repository.get_epic(project_id=project.project_id, key=filters.epic_key)
            if epic is None:
                raise ScopeNotFoundError(f"Unknown epic: {filters.epic_key}")
            epic_id = epic.epic_id
        story_id: str | None = None
        if filters.story_key:
            story = self.repository.get_story(
                project_id=project.project_id,
                key=filters.story_key,
            )
            if story is None:
                raise ScopeNotFoundError(f"Unknown story: {filters.story_key}")
            story_id = story.story_id

        all_tasks = self.repository.get_tasks_in_scope(project.project_id)
        tasks_by_id = {task.task_id: task for task in all_tasks}
        edges_by_task: dict[str, list[DependencyEdge]] = defaultdict(list)
        for edge in self.repository.get_dependency_edges(tasks_by_id):
            edges_by_task[edge.task_id].append(edge)

        warnings: list[str] = []
        in_scope = [
            task
            for task in all_tasks
            if (epic_id is None or task.epic_id == epic_id)
            and (story_id is None or task.story_id == story_id)
        ]

        requested_keys = _dedupe_keys(filters.task_keys)
        if requested_keys:
            by_key = {task.key: task for task in in_scope}
            unknown = [key for key in requested_keys if key not in by_key]
            resolved = [by_key[key] for key in requested_keys if key in by_key]
            if not resolved:
                raise ScopeNotFoundError(
                    f"No matching tasks found for keys: {', '.join(requested_keys)}",
                )
            if unknown:
                warnings.append(f"Unknown task keys ignored: {', '.join(unknown)}")
            in_scope = resolved

        include_types = {value.strip().lower() for value in filters.include_types if value.strip()}
        exclude_types = {value.strip().lower() for value in filters.exclude_types if value.strip()}
        scope_ids = [
            task.task_id
            for task in in_scope
            if _type_accepted(task.task_type, include=include_types, exclude=exclude_types)
        ]

        missing_context_ids = self.repository.get_open_comment_task_ids(
            scope_ids,
            category=MISSING_CONTEXT_CATEGORY,
        )
        logger.debug(
            "Loaded graph snapshot project=%s tasks=%d scope=%d edges=%d",
            project_key,
            len(tasks_by_id),
            len(scope_ids),
            sum(len(edges) for edges in edges_by_task.values()),
        )
        return TaskGraphSnapshot(
            project_id=project.project_id,
            tasks_by_id=tasks_by_id,
            scope_ids=scope_ids,
            edges_by_task=dict(edges_by_task),
            missing_context_ids=missing_context_ids,
            warnings=warnings,
        )


def _dedupe_keys(keys: list[str]) -> list[str]:
    return list(dict.fromkeys(key.strip() for key in keys if key and key.strip()))


def _type_accepted(task_type: str | None, *, include: set[str], exclude: set[str]) -> bool:
    normalized = task_type.strip().lower() if task_type else None
    if include and normalized not in include:
        return False
    return not (normalized is not None and normalized in exclude)
