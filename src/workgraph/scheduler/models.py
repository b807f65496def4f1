"""Domain models for the work graph and selection plans."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

BLOCKS_RELATION = "blocks"


class MissingContextPolicy(str, Enum):
    """How tasks with open ``missing_context`` comments are treated."""

    ALLOW = "allow"
    WARN = "warn"
    BLOCK = "block"


class DependencyPolicy(str, Enum):
    """Whether unfinished ``blocks`` dependencies hold a task back."""

    ENFORCE = "enforce"
    IGNORE = "ignore"


class BlockReason(str, Enum):
    """Why a candidate task was held back from the plan."""

    DEPENDENCY_NOT_READY = "dependency_not_ready"
    MISSING_CONTEXT = "missing_context"


@dataclass(slots=True)
class ProjectView:
    project_id: str
    key: str
    name: str
    created_at: datetime


@dataclass(slots=True)
class EpicView:
    epic_id: str
    project_id: str
    key: str
    title: str


@dataclass(slots=True)
class StoryView:
    story_id: str
    project_id: str
    epic_id: str
    key: str
    title: str


@dataclass(slots=True)
class Task:
    """Unit of work as seen by the scheduler."""

    task_id: str
    key: str
    project_id: str
    epic_id: str
    story_id: str
    epic_key: str
    story_key: str
    title: str
    task_type: str | None
    status: str
    priority: int | None
    story_points: int | None
    created_at: datetime
    updated_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class DependencyEdge:
    """``task_id`` depends on ``depends_on_task_id``."""

    task_id: str
    depends_on_task_id: str
    relation_type: str = BLOCKS_RELATION


@dataclass(slots=True)
class TaskCommentView:
    comment_id: int
    task_id: str
    category: str
    status: str
    body: str
    created_at: datetime
    resolved_at: datetime | None = None


@dataclass(slots=True)
class SelectionFilters:
    """Scope and policy inputs for one selection pass."""

    project_key: str
    epic_key: str | None = None
    story_key: str | None = None
    task_keys: list[str] = field(default_factory=list)
    status_filter: list[str] = field(default_factory=list)
    ignore_status_filter: bool = False
    include_types: list[str] = field(default_factory=list)
    exclude_types: list[str] = field(default_factory=list)
    limit: int | None = None
    parallel: bool | int = False
    ignore_dependencies: bool = False
    missing_context_policy: MissingContextPolicy = MissingContextPolicy.WARN
    dependency_policy: DependencyPolicy = DependencyPolicy.ENFORCE

    @property
    def effective_dependency_policy(self) -> DependencyPolicy:
        if self.ignore_dependencies:
            return DependencyPolicy.IGNORE
        return self.dependency_policy

    def to_payload(self) -> dict[str, Any]:
        """Serializable form stored in job payloads for resume validation."""

        return {
            "project_key": self.project_key,
            "epic_key": self.epic_key,
            "story_key": self.story_key,
            "task_keys": list(self.task_keys),
            "status_filter": list(self.status_filter),
            "ignore_status_filter": self.ignore_status_filter,
            "include_types": list(self.include_types),
            "exclude_types": list(self.exclude_types),
            "limit": self.limit,
            "parallel": self.parallel,
            "ignore_dependencies": self.ignore_dependencies,
            "missing_context_policy": self.missing_context_policy.value,
            "dependency_policy": self.dependency_policy.value,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> SelectionFilters:
        return cls(
            project_key=str(payload["project_key"]),
            epic_key=payload.get("epic_key"),
            story_key=payload.get("story_key"),
            task_keys=list(payload.get("task_keys") or []),
            status_filter=list(payload.get("status_filter") or []),
            ignore_status_filter=bool(payload.get("ignore_status_filter", False)),
            include_types=list(payload.get("include_types") or []),
            exclude_types=list(payload.get("exclude_types") or []),
            limit=payload.get("limit"),
            parallel=payload.get("parallel", False),
            ignore_dependencies=bool(payload.get("ignore_dependencies", False)),
            missing_context_policy=MissingContextPolicy(
                payload.get("missing_context_policy", MissingContextPolicy.WARN.value),
            ),
            dependency_policy=DependencyPolicy(
                payload.get("dependency_policy", DependencyPolicy.ENFORCE.value),
            ),
        )


@dataclass(slots=True)
class SelectedTask:
    """Ready task plus the dependencies it was checked against."""

    task: Task
    dependency_ids: list[str] = field(default_factory=list)
    dependency_keys: list[str] = field(default_factory=list)


@dataclass(slots=True)
class BlockedTask:
    task: Task
    reason: BlockReason
    blocking_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class SelectionPlan:
    """Result of one selection pass; never persisted."""

    ordered: list[SelectedTask] = field(default_factory=list)
    blocked: list[BlockedTask] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    batches: list[list[SelectedTask]] = field(default_factory=list)
    effective_statuses: list[str] = field(default_factory=list)

    @property
    def ordered_keys(self) -> list[str]:
        return [item.task.key for item in self.ordered]

    def fingerprint(self) -> str:
        """Stable digest of what the plan would run and what it held back."""

        digest = hashlib.sha256()
        for key in sorted(self.ordered_keys):
            digest.update(f"ordered:{key}\n".encode())
        for key, reason in sorted((item.task.key, item.reason.value) for item in self.blocked):
            digest.update(f"blocked:{key}:{reason}\n".encode())
        for status in sorted(self.effective_statuses):
            digest.update(f"status:{status}\n".encode())
        return digest.hexdigest()
