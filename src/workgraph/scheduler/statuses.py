"""Task workflow statuses and status-filter normalization."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum


class TaskStatus(str, Enum):
    """Workflow stages a task moves through."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    CHANGES_REQUESTED = "changes_requested"
    READY_TO_CODE_REVIEW = "ready_to_code_review"
    READY_TO_QA = "ready_to_qa"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


KNOWN_STATUSES = frozenset(status.value for status in TaskStatus)
RETIRED_STATUSES = frozenset({"blocked", "ready_to_review"})
DONE_STATUSES = frozenset({TaskStatus.COMPLETED.value, TaskStatus.CANCELLED.value})
DEFAULT_WORK_STATUSES: tuple[str, ...] = (
    TaskStatus.NOT_STARTED.value,
    TaskStatus.IN_PROGRESS.value,
    TaskStatus.CHANGES_REQUESTED.value,
)


@dataclass(slots=True)
class StatusFilter:
    statuses: list[str]
    warnings: list[str] = field(default_factory=list)


def normalize_status(value: str) -> str:
    return value.strip().lower()


def normalize_status_filter(requested: Iterable[str] | None) -> StatusFilter:
    """Drop retired/unknown tokens, falling back to the default work statuses."""

    warnings: list[str] = []
    statuses: list[str] = []
    for raw in requested or ():
        token = normalize_status(raw)
        if not token:
            continue
        if token in RETIRED_STATUSES:
            warnings.append(f"Status '{token}' is no longer supported; ignoring it.")
            continue
        if token not in KNOWN_STATUSES:
            warnings.append(f"Unsupported status '{token}' ignored.")
            continue
        if token not in statuses:
            statuses.append(token)
    if not statuses:
        statuses = list(DEFAULT_WORK_STATUSES)
    return StatusFilter(statuses=statuses, warnings=warnings)


def is_done(status: str | None) -> bool:
    return status is not None and normalize_status(status) in DONE_STATUSES
