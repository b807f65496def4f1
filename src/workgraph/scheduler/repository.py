"""Work graph repository: projects, epics, stories, tasks, edges, comments."""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import or_
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select
from sqlmodel.sql.expression import Select

from workgraph.scheduler.models import (
    BLOCKS_RELATION,
    DependencyEdge,
    EpicView,
    ProjectView,
    StoryView,
    Task,
    TaskCommentView,
)
from workgraph.scheduler.statuses import TaskStatus, normalize_status
from workgraph.storage.alembic_runner import upgrade_head
from workgraph.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    optional_utc,
    to_utc_aware_datetime,
    utc_now,
)
from workgraph.storage.sqlmodel_models import (
    Epic,
    Project,
    TaskComment,
    TaskDependency,
    UserStory,
    WorkTask,
)

MISSING_CONTEXT_CATEGORY = "missing_context"


class TaskRepository:
    """Work graph persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_project(self, *, key: str, name: str | None = None) -> ProjectView:
        row = Project(
            project_id=str(uuid4()),
            key=key,
            name=name or key,
            created_at=utc_now(),
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_project_view(row)

    def get_project(self, key: str) -> ProjectView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Project).where(Project.key == key)).one_or_none()
        return _to_project_view(row) if row is not None else None

    def create_epic(self, *, project_key: str, key: str, title: str = "") -> EpicView:
        project = self._require_project(project_key)
        row = Epic(
            epic_id=str(uuid4()),
            project_id=project.project_id,
            key=key,
            title=title or key,
            created_at=utc_now(),
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_epic_view(row)

    def get_epic(self, *, project_id: str, key: str) -> EpicView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Epic).where(Epic.project_id == project_id, Epic.key == key),
            ).one_or_none()
        return _to_epic_view(row) if row is not None else None

    def create_story(
        self,
        *,
        project_key: str,
        epic_key: str,
        key: str,
        title: str = "",
    ) -> StoryView:
        project = self._require_project(project_key)
        epic = self.get_epic(project_id=project.project_id, key=epic_key)
        if epic is None:
            raise ValueError(f"Epic not found: {epic_key}")
        row = UserStory(
            story_id=str(uuid4()),
            project_id=project.project_id,
            epic_id=epic.epic_id,
            key=key,
            title=title or key,
            created_at=utc_now(),
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_story_view(row)

    def get_story(self, *, project_id: str, key: str) -> StoryView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(UserStory).where(UserStory.project_id == project_id, UserStory.key == key),
            ).one_or_none()
        return _to_story_view(row) if row is not None else None

    def create_task(  # noqa: PLR0913
        self,
        *,
        project_key: str,
        story_key: str,
        key: str,
        title: str = "",
        status: str = TaskStatus.NOT_STARTED.value,
        task_type: str | None = None,
        priority: int | None = None,
        story_points: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Task:
        """Create a task under an existing story."""

        project = self._require_project(project_key)
        story = self.get_story(project_id=project.project_id, key=story_key)
        if story is None:
            raise ValueError(f"Story not found: {story_key}")
        now = utc_now()
        task_id = str(uuid4())
        with Session(self.engine) as session:
            session.add(
                WorkTask(
                    task_id=task_id,
                    project_id=project.project_id,
                    epic_id=story.epic_id,
                    story_id=story.story_id,
                    key=key,
                    title=title or key,
                    task_type=task_type,
                    status=normalize_status(status),
                    priority=priority,
                    story_points=story_points,
                    metadata_json=dump_json(metadata),
                    created_at=now,
                    updated_at=now,
                ),
            )
            session.commit()
        task = self.get_task(project_id=project.project_id, key=key)
        if task is None:
            raise RuntimeError(f"Task disappeared after insert: {key}")
        return task

    def get_task(self, *, project_id: str, key: str) -> Task | None:
        with Session(self.engine) as session:
            row = session.exec(
                _task_select().where(WorkTask.project_id == project_id, WorkTask.key == key),
            ).one_or_none()
        if row is None:
            return None
        task, epic_key, story_key = row
        return _to_task(task, epic_key=epic_key, story_key=story_key)

    def get_tasks_in_scope(
        self,
        project_id: str,
        *,
        epic_id: str | None = None,
        story_id: str | None = None,
    ) -> list[Task]:
        """Return project tasks, optionally narrowed to one epic or story."""

        statement = _task_select().where(WorkTask.project_id == project_id)
        if epic_id is not None:
            statement = statement.where(WorkTask.epic_id == epic_id)
        if story_id is not None:
            statement = statement.where(WorkTask.story_id == story_id)
        statement = statement.order_by(col(WorkTask.key).asc())
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [
            _to_task(task, epic_key=epic_key, story_key=story_key)
            for task, epic_key, story_key in rows
        ]

    def get_dependency_edges(self, task_ids: Iterable[str]) -> list[DependencyEdge]:
        """Outgoing edges of ``task_ids`` (every relation type)."""

        ids = list(dict.fromkeys(task_ids))
        if not ids:
            return []
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskDependency)
                .where(col(TaskDependency.task_id).in_(ids))
                .order_by(col(TaskDependency.task_id).asc(), col(TaskDependency.id).asc()),
            ).all()
        return [
            DependencyEdge(
                task_id=row.task_id,
                depends_on_task_id=row.depends_on_task_id,
                relation_type=row.relation_type,
            )
            for row in rows
        ]

    def get_open_comment_task_ids(
        self,
        task_ids: Iterable[str],
        *,
        category: str = MISSING_CONTEXT_CATEGORY,
    ) -> set[str]:
        """Ids among ``task_ids`` that carry an unresolved comment of ``category``."""

        ids = list(dict.fromkeys(task_ids))
        if not ids:
            return set()
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskComment.task_id).where(
                    col(TaskComment.task_id).in_(ids),
                    TaskComment.category == category,
                    or_(col(TaskComment.status) == "open", col(TaskComment.status).is_(None)),
                ),
            ).all()
        return set(rows)

    def update_task_status(self, *, task_id: str, status: str) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(WorkTask)
                .where(col(WorkTask.task_id) == task_id)
                .values(status=normalize_status(status), updated_at=utc_now()),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def update_task_metadata(self, *, task_id: str, metadata: dict[str, Any]) -> bool:
        """Merge ``metadata`` into the stored task metadata."""

        with Session(self.engine) as session:
            row = session.exec(select(WorkTask).where(WorkTask.task_id == task_id)).one_or_none()
            if row is None:
                return False
            merged = load_json(row.metadata_json)
            merged.update(metadata)
            row.metadata_json = dump_json(merged)
            row.updated_at = utc_now()
            session.add(row)
            session.commit()
            return True

    def add_dependency(
        self,
        *,
        task_id: str,
        depends_on_task_id: str,
        relation_type: str = BLOCKS_RELATION,
    ) -> DependencyEdge:
        if task_id == depends_on_task_id:
            raise ValueError(f"Task cannot depend on itself: {task_id}")
        with Session(self.engine) as session:
            session.add(
                TaskDependency(
                    task_id=task_id,
                    depends_on_task_id=depends_on_task_id,
                    relation_type=relation_type,
                    created_at=utc_now(),
                ),
            )
            session.commit()
        return DependencyEdge(
            task_id=task_id,
            depends_on_task_id=depends_on_task_id,
            relation_type=relation_type,
        )

    def add_comment(
        self,
        *,
        task_id: str,
        body: str,
        category: str = MISSING_CONTEXT_CATEGORY,
    ) -> TaskCommentView:
        row = TaskComment(
            task_id=task_id,
            category=category,
            status="open",
            body=body,
            created_at=utc_now(),
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_comment_view(row)

    def resolve_comment(self, *, comment_id: int) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TaskComment)
                .where(col(TaskComment.id) == comment_id, col(TaskComment.status) == "open")
                .values(status="resolved", resolved_at=utc_now()),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def _require_project(self, key: str) -> ProjectView:
        project = self.get_project(key)
        if project is None:
            raise ValueError(f"Project not found: {key}")
        return project


def _task_select() -> Select[tuple[WorkTask, str, str]]:
    return (
        select(WorkTask, Epic.key, UserStory.key)
        .join(Epic, col(Epic.epic_id) == col(WorkTask.epic_id))
        .join(UserStory, col(UserStory.story_id) == col(WorkTask.story_id))
    )


def _to_project_view(row: Project) -> ProjectView:
    return ProjectView(
        project_id=row.project_id,
        key=row.key,
        name=row.name,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_epic_view(row: Epic) -> EpicView:
    return EpicView(epic_id=row.epic_id, project_id=row.project_id, key=row.key, title=row.title)


def _to_story_view(row: UserStory) -> StoryView:
    return StoryView(
        story_id=row.story_id,
        project_id=row.project_id,
        epic_id=row.epic_id,
        key=row.key,
        title=row.title,
    )


def _to_task(row: WorkTask, *, epic_key: str, story_key: str) -> Task:
    return Task(
        task_id=row.task_id,
        key=row.key,
        project_id=row.project_id,
        epic_id=row.epic_id,
        story_id=row.story_id,
        epic_key=epic_key,
        story_key=story_key,
        title=row.title,
        task_type=row.task_type,
        status=normalize_status(row.status),
        priority=row.priority,
        story_points=row.story_points,
        metadata=load_json(row.metadata_json),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_comment_view(row: TaskComment) -> TaskCommentView:
    return TaskCommentView(
        comment_id=row.id or 0,
        task_id=row.task_id,
        category=row.category,
        status=row.status,
        body=row.body,
        created_at=to_utc_aware_datetime(row.created_at),
        resolved_at=optional_utc(row.resolved_at),
    )
