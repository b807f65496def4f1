"""Dependency-aware task selection."""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass

from workgraph.scheduler.cycles import detect_cycles
from workgraph.scheduler.graph import TaskGraphIndex, TaskGraphSnapshot
from workgraph.scheduler.models import (
    BLOCKS_RELATION,
    BlockedTask,
    BlockReason,
    DependencyPolicy,
    MissingContextPolicy,
    SelectedTask,
    SelectionFilters,
    SelectionPlan,
    Task,
)
from workgraph.scheduler.repository import TaskRepository
from workgraph.scheduler.statuses import (
    DONE_STATUSES,
    KNOWN_STATUSES,
    is_done,
    normalize_status_filter,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Readiness:
    task: Task
    dependency_ids: list[str]
    failing_ids: list[str]


class TaskSelectionService:
    """Compute which tasks may run now, in what order, and why others may not.

    The service is read-only: it loads one graph snapshot per call and never
    mutates tasks. Data-quality problems (cycles, retired statuses, open
    ``missing_context`` comments) become plan warnings; only an unresolvable
    scope raises.
    """

    def __init__(
        self,
        repository: TaskRepository,
        *,
        graph_index: TaskGraphIndex | None = None,
    ) -> None:
        self.repository = repository
        self.graph_index = graph_index or TaskGraphIndex(repository)

    def select_tasks(self, filters: SelectionFilters) -> SelectionPlan:
        snapshot = self.graph_index.load(filters)
        warnings = list(snapshot.warnings)

        if filters.ignore_status_filter:
            effective_statuses = sorted(KNOWN_STATUSES - DONE_STATUSES)
        else:
            status_filter = normalize_status_filter(filters.status_filter)
            effective_statuses = status_filter.statuses
            warnings.extend(status_filter.warnings)

        candidates = self._candidates(
            snapshot,
            effective_statuses=effective_statuses,
            ignore_status_filter=filters.ignore_status_filter,
            warnings=warnings,
        )

        cycles = detect_cycles(snapshot.tasks_by_id, snapshot.edges_by_task)
        cyclic = [task for task in candidates if task.task_id in cycles.members]
        if cyclic:
            cyclic_ids = {task.task_id for task in cyclic}
            rendered = [
                " -> ".join(self._key_of(snapshot, task_id) for task_id in path)
                for path in cycles.cycles
                if cyclic_ids.intersection(path)
            ]
            warnings.append(
                f"Dependency cycle detected; excluded {len(cyclic)} task(s): "
                f"{'; '.join(rendered)}",
            )
            candidates = [task for task in candidates if task.task_id not in cyclic_ids]

        dependency_policy = filters.effective_dependency_policy
        ready: list[_Readiness] = []
        blocked: list[BlockedTask] = []
        for task in candidates:
            readiness = self._readiness(snapshot, task)
            if dependency_policy == DependencyPolicy.IGNORE or not readiness.failing_ids:
                ready.append(readiness)
                continue
            blocked.append(
                BlockedTask(
                    task=task,
                    reason=BlockReason.DEPENDENCY_NOT_READY,
                    blocking_ids=readiness.failing_ids,
                ),
            )
        if blocked:
            warnings.append(f"{len(blocked)} task(s) skipped because dependencies not ready")

        ready = self._apply_missing_context_policy(
            snapshot,
            ready,
            policy=filters.missing_context_policy,
            blocked=blocked,
            warnings=warnings,
        )

        ready.sort(key=lambda item: _sort_key(item.task))
        if dependency_policy == DependencyPolicy.IGNORE:
            ready = _topological_order(ready)
        if filters.limit is not None and filters.limit > 0:
            ready = ready[: filters.limit]

        ordered = [
            SelectedTask(
                task=item.task,
                dependency_ids=item.dependency_ids,
                dependency_keys=[
                    snapshot.tasks_by_id[dep_id].key
                    for dep_id in item.dependency_ids
                    if dep_id in snapshot.tasks_by_id
                ],
            )
            for item in ready
        ]
        plan = SelectionPlan(
            ordered=ordered,
            blocked=blocked,
            warnings=warnings,
            effective_statuses=list(effective_statuses),
        )
        if filters.parallel:
            cap = filters.parallel if not isinstance(filters.parallel, bool) else None
            plan.batches = build_batches(ordered, max_batch_size=cap)

        for warning in warnings:
            logger.warning("Selection warning project=%s: %s", filters.project_key, warning)
        logger.info(
            "Selected %d task(s) project=%s blocked=%d",
            len(plan.ordered),
            filters.project_key,
            len(plan.blocked),
        )
        return plan

    def _candidates(
        self,
        snapshot: TaskGraphSnapshot,
        *,
        effective_statuses: list[str],
        ignore_status_filter: bool,
        warnings: list[str],
    ) -> list[Task]:
        accepted = set(effective_statuses)
        seen_keys: set[str] = set()
        candidates: list[Task] = []
        for task in snapshot.scope_tasks():
            if task.key in seen_keys:
                warnings.append(f"Duplicate task key '{task.key}' ignored.")
                continue
            seen_keys.add(task.key)
            if ignore_status_filter:
                if is_done(task.status):
                    continue
            elif task.status not in accepted:
                continue
            candidates.append(task)
        return candidates

    def _readiness(self, snapshot: TaskGraphSnapshot, task: Task) -> _Readiness:
        dependency_ids: list[str] = []
        failing_ids: list[str] = []
        for edge in snapshot.dependencies_of(task.task_id):
            if edge.relation_type != BLOCKS_RELATION:
                continue
            dependency_ids.append(edge.depends_on_task_id)
            dependency = snapshot.tasks_by_id.get(edge.depends_on_task_id)
            if dependency is None or not is_done(dependency.status):
                failing_ids.append(edge.depends_on_task_id)
        return _Readiness(task=task, dependency_ids=dependency_ids, failing_ids=failing_ids)

    def _apply_missing_context_policy(  # noqa: PLR0913
        self,
        snapshot: TaskGraphSnapshot,
        ready: list[_Readiness],
        *,
        policy: MissingContextPolicy,
        blocked: list[BlockedTask],
        warnings: list[str],
    ) -> list[_Readiness]:
        flagged = [item for item in ready if item.task.task_id in snapshot.missing_context_ids]
        if not flagged or policy == MissingContextPolicy.ALLOW:
            return ready
        if policy == MissingContextPolicy.WARN:
            keys = ", ".join(sorted(item.task.key for item in flagged))
            warnings.append(f"Tasks with open missing_context comments: {keys}")
            return ready
        flagged_ids = {item.task.task_id for item in flagged}
        for item in flagged:
            blocked.append(BlockedTask(task=item.task, reason=BlockReason.MISSING_CONTEXT))
        warnings.append(f"Blocked {len(flagged)} task(s) with open missing_context comments")
        return [item for item in ready if item.task.task_id not in flagged_ids]

    @staticmethod
    def _key_of(snapshot: TaskGraphSnapshot, task_id: str) -> str:
        task = snapshot.tasks_by_id.get(task_id)
        return task.key if task is not None else task_id


def build_batches(
    ordered: list[SelectedTask],
    *,
    max_batch_size: int | None = None,
) -> list[list[SelectedTask]]:
    """Partition ``ordered`` into waves with no dependency edge inside a wave.

    A task lands in the first wave after every in-plan task it depends on.
    Plan order is kept within each wave; ``max_batch_size`` caps wave width.
    """

    in_plan = {item.task.task_id for item in ordered}
    scheduled: set[str] = set()
    remaining = list(ordered)
    batches: list[list[SelectedTask]] = []
    while remaining:
        batch: list[SelectedTask] = []
        for item in remaining:
            if max_batch_size and len(batch) >= max_batch_size:
                break
            pending = [
                dep_id
                for dep_id in item.dependency_ids
                if dep_id in in_plan and dep_id not in scheduled
            ]
            if not pending:
                batch.append(item)
        if not batch:
            logger.warning("Unresolvable in-plan dependencies; emitting the rest as one batch")
            batch = list(remaining)
        batch_ids = {item.task.task_id for item in batch}
        scheduled.update(batch_ids)
        remaining = [item for item in remaining if item.task.task_id not in batch_ids]
        batches.append(batch)
    return batches


def _sort_key(task: Task) -> tuple[bool, int, bool, int, str]:
    return (
        task.priority is None,
        task.priority if task.priority is not None else 0,
        task.story_points is None,
        -(task.story_points or 0),
        task.key,
    )


def _topological_order(ready: list[_Readiness]) -> list[_Readiness]:
    """Keep sort order but never place a task before an in-plan dependency."""

    position = {item.task.task_id: index for index, item in enumerate(ready)}
    waiting_on: dict[str, int] = {}
    dependents: dict[str, list[str]] = {task_id: [] for task_id in position}
    for item in ready:
        in_plan_deps = {dep_id for dep_id in item.dependency_ids if dep_id in position}
        waiting_on[item.task.task_id] = len(in_plan_deps)
        for dep_id in in_plan_deps:
            dependents[dep_id].append(item.task.task_id)

    heap = [position[task_id] for task_id, count in waiting_on.items() if count == 0]
    heapq.heapify(heap)
    result: list[_Readiness] = []
    while heap:
        item = ready[heapq.heappop(heap)]
        result.append(item)
        for dependent in dependents[item.task.task_id]:
            waiting_on[dependent] -= 1
            if waiting_on[dependent] == 0:
                heapq.heappush(heap, position[dependent])
    if len(result) < len(ready):
        emitted = {item.task.task_id for item in result}
        result.extend(item for item in ready if item.task.task_id not in emitted)
    return result
