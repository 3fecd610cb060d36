from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, NoReturn

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import Select, and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit, events
from app.core.config import get_settings
from app.core.errors import (
    CyclicDependencyError,
    CyclicHierarchyError,
    DependencyBlockedError,
    DomainRuleError,
    DuplicateTimeEntryError,
    InvalidTemplateOperationError,
    OverlappingTimeEntryError,
)
from app.crm.hierarchy import would_create_cycle
from app.metrics import observe_domain_rejection, observe_project_rollup
from app.platform.security.context import AuthContext
from app.platform.security.errors import AuthorizationError
from app.projects import rules
from app.projects.models import Project, ProjectMember, Task, TaskTimeEntry
from app.projects.repository import ProjectRepository, TaskRepository, TimeEntryRepository
from app.projects.schemas import (
    BudgetSummaryRead,
    ProjectCreate,
    ProjectFromTemplate,
    ProjectMemberCreate,
    ProjectMemberRead,
    ProjectRead,
    ProjectRollupRead,
    ProjectTimelineRead,
    ScheduleSummaryRead,
    TaskBillingRead,
    TaskBudgetBreakdown,
    TaskCreate,
    TaskRead,
    TaskScheduleRead,
    TaskSlackRead,
    TaskStatusUpdate,
    TaskUpdate,
    TimeEntryCreate,
    TimeEntryRead,
    TimeEntryUpdate,
    TimeLogExportRow,
    TimelineTaskRead,
)

logger = logging.getLogger("app.projects")
tracer = trace.get_tracer("app.projects")

CLOSED_TASK_STATUSES = {"completed", "cancelled"}


def _reject(error: DomainRuleError, **log_fields: Any) -> NoReturn:
    observe_domain_rejection(error.code)
    logger.warning("work.rule_rejected", extra={"rule": error.code, **log_fields})
    raise error


def _resolve_tenant(repository: Any, ctx: AuthContext, requested: str | None) -> str:
    try:
        return repository.resolve_tenant(ctx, requested)
    except AuthorizationError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))


def _check_date_range(start_date: date | None, end_date: date | None) -> None:
    if start_date is not None and end_date is not None and end_date < start_date:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="end_date must not be before start_date")


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _live_subtasks(task: Task) -> list[Task]:
    return [item for item in task.subtasks if item.deleted_at is None]


def _live_dependencies(task: Task) -> list[Task]:
    return [item for item in task.dependencies if item.deleted_at is None]


def _live_tasks(project: Project) -> list[Task]:
    return [item for item in project.tasks if item.deleted_at is None]


def get_earliest_start_date(task: Task) -> date | None:
    return rules.earliest_start_date(task.start_date, [item.end_date for item in _live_dependencies(task)])


def violates_dependency_constraints(task: Task) -> bool:
    return rules.violates_dependency_constraints(task.start_date, [item.end_date for item in _live_dependencies(task)])


def is_blocked(task: Task) -> bool:
    return rules.is_blocked(item.is_completed for item in _live_dependencies(task))


def calculate_task_percent_complete(task: Task) -> Decimal:
    return rules.calculate_percent_complete(task, _live_subtasks)


def calculate_project_percent_complete(project: Project) -> Decimal:
    tasks = _live_tasks(project)
    completed = sum(1 for item in tasks if item.is_completed)
    return rules.project_percent_complete(completed, len(tasks))


def get_total_billable_time(task: Task) -> int:
    return rules.total_billable_minutes(task.time_entries)


def get_total_billing_amount(task: Task) -> Decimal:
    return rules.total_billing_amount(task.time_entries)


def calculate_actual_cost(project: Project) -> Decimal:
    total = sum((get_total_billing_amount(item) for item in _live_tasks(project)), rules.ZERO)
    return rules.quantize(total)


def recompute_project_rollups(session: Session, project: Project, *, actor_user_id: str, kinds: tuple[str, ...]) -> None:
    """Persist the requested roll-ups on ``project`` and announce the new values.

    ``kinds`` holds ``"percent_complete"`` and/or ``"actual_cost"``. The caller
    owns the transaction.
    """
    before = {
        "percent_complete": str(project.percent_complete),
        "actual_cost": str(project.actual_cost),
    }
    for kind in kinds:
        started = time.perf_counter()
        with tracer.start_as_current_span(f"work.project.rollup.{kind}") as span:
            span.set_attribute("project_id", str(project.id))
            if kind == "percent_complete":
                project.percent_complete = rules.clamp_percent(calculate_project_percent_complete(project))
            elif kind == "actual_cost":
                project.actual_cost = calculate_actual_cost(project)
            else:
                raise ValueError(f"unknown rollup kind: {kind}")
        observe_project_rollup(kind, time.perf_counter() - started)

    after = {
        "percent_complete": str(project.percent_complete),
        "actual_cost": str(project.actual_cost),
    }
    logger.info(
        "work.project.rollup_updated",
        extra={"project_id": str(project.id), "tenant_id": project.tenant_id, "kind": ",".join(kinds)},
    )
    if after != before:
        events.publish(
            events.build_envelope(
                "work.project.rollup_updated",
                actor_user_id=actor_user_id,
                tenant_id=project.tenant_id,
                payload={"project_id": str(project.id), "before": before, "after": after},
            )
        )


@dataclass(slots=True)
class TaskService:
    task_repository: TaskRepository = TaskRepository()
    project_repository: ProjectRepository = ProjectRepository()

    def create_task(self, session: Session, ctx: AuthContext, dto: TaskCreate) -> TaskRead:
        tenant_id = _resolve_tenant(self.task_repository, ctx, dto.tenant_id)
        _check_date_range(dto.start_date, dto.end_date)

        parent = None
        if dto.parent_id is not None:
            parent = self.get_task_row(session, ctx, dto.parent_id, detail="parent task not found")
        project = None
        if dto.project_id is not None:
            project = _get_project_row(session, ctx, self.project_repository, dto.project_id)

        task = Task(
            tenant_id=tenant_id,
            name=dto.name.strip(),
            description=dto.description,
            status=dto.status,
            parent=parent,
            start_date=dto.start_date,
            end_date=dto.end_date,
            percent_complete=Decimal("100") if dto.status == "completed" else dto.percent_complete,
        )
        session.add(task)
        if project is not None:
            project.tasks.append(task)
        session.flush()

        if parent is not None:
            self._propagate_percent(parent)

        audit.record(
            actor_user_id=ctx.user_id,
            entity_type="work.task",
            entity_id=str(task.id),
            action="create",
            before=None,
            after=TaskRead.model_validate(task).model_dump(mode="json"),
            correlation_id=ctx.correlation_id,
            tenant_id=tenant_id,
        )
        session.commit()
        session.refresh(task)
        return TaskRead.model_validate(task)

    def get_task(self, session: Session, ctx: AuthContext, task_id: uuid.UUID) -> TaskRead:
        return TaskRead.model_validate(self.get_task_row(session, ctx, task_id))

    def get_task_row(self, session: Session, ctx: AuthContext, task_id: uuid.UUID, *, detail: str = "task not found") -> Task:
        stmt: Select[tuple[Task]] = select(Task).where(and_(Task.id == task_id, Task.deleted_at.is_(None)))
        stmt = self.task_repository.apply_scope_query(stmt, ctx)
        task = session.scalar(stmt)
        if task is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)
        return task

    def update_task(self, session: Session, ctx: AuthContext, task_id: uuid.UUID, dto: TaskUpdate) -> TaskRead:
        task = self.get_task_row(session, ctx, task_id)
        before = TaskRead.model_validate(task).model_dump(mode="json")
        fields_set = dto.model_fields_set

        if "name" in fields_set and (dto.name is None or not dto.name.strip()):
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="name cannot be empty")
        start_date = dto.start_date if "start_date" in fields_set else task.start_date
        end_date = dto.end_date if "end_date" in fields_set else task.end_date
        _check_date_range(start_date, end_date)

        previous_parent = task.parent
        new_parent = previous_parent
        if "parent_id" in fields_set:
            new_parent = None
            if dto.parent_id is not None:
                new_parent = self.get_task_row(session, ctx, dto.parent_id, detail="parent task not found")
                if would_create_cycle(
                    task.id,
                    new_parent.id,
                    self._parent_lookup(session),
                    max_depth=get_settings().hierarchy_max_depth,
                ):
                    _reject(
                        CyclicHierarchyError(
                            "Cannot set parent: this would create a circular task hierarchy.",
                            details={"task_id": str(task.id), "parent_id": str(new_parent.id)},
                        ),
                        task_id=str(task.id),
                    )

        if "name" in fields_set and dto.name is not None:
            task.name = dto.name.strip()
        if "description" in fields_set:
            task.description = dto.description
        task.start_date = start_date
        task.end_date = end_date
        if "percent_complete" in fields_set and dto.percent_complete is not None:
            task.percent_complete = dto.percent_complete
        task.parent = new_parent
        session.flush()

        self._propagate_percent(task)
        if previous_parent is not None and previous_parent is not new_parent and previous_parent.deleted_at is None:
            self._propagate_percent(previous_parent)

        after = TaskRead.model_validate(task).model_dump(mode="json")
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type="work.task",
            entity_id=str(task.id),
            action="update",
            before=before,
            after=after,
            correlation_id=ctx.correlation_id,
            tenant_id=task.tenant_id,
        )
        events.publish(
            events.build_envelope(
                "work.task.updated",
                actor_user_id=ctx.user_id,
                tenant_id=task.tenant_id,
                correlation_id=ctx.correlation_id,
                payload={
                    "task_id": str(task.id),
                    "changed_fields": sorted(key for key in after if after[key] != before.get(key)),
                    "violates_dependency_constraints": violates_dependency_constraints(task),
                },
            )
        )
        self._recompute_projects(session, ctx, task, ("percent_complete",))
        session.commit()
        session.refresh(task)
        return TaskRead.model_validate(task)

    def soft_delete_task(self, session: Session, ctx: AuthContext, task_id: uuid.UUID) -> None:
        task = self.get_task_row(session, ctx, task_id)
        before = TaskRead.model_validate(task).model_dump(mode="json")
        task.deleted_at = datetime.now(timezone.utc)
        session.flush()

        parent = task.parent
        if parent is not None and parent.deleted_at is None:
            self._propagate_percent(parent)

        audit.record(
            actor_user_id=ctx.user_id,
            entity_type="work.task",
            entity_id=str(task.id),
            action="delete",
            before=before,
            after=None,
            correlation_id=ctx.correlation_id,
            tenant_id=task.tenant_id,
        )
        self._recompute_projects(session, ctx, task, ("percent_complete", "actual_cost"))
        session.commit()

    def add_dependency(self, session: Session, ctx: AuthContext, task_id: uuid.UUID, depends_on_id: uuid.UUID) -> TaskScheduleRead:
        task = self.get_task_row(session, ctx, task_id)
        prerequisite = self.get_task_row(session, ctx, depends_on_id, detail="dependency task not found")

        if any(item.id == prerequisite.id for item in task.dependencies):
            return self._to_schedule(task)

        if rules.would_create_dependency_cycle(task.id, prerequisite.id, self._dependency_lookup(session)):
            _reject(
                CyclicDependencyError(
                    "A task cannot depend on itself or on a task that already depends on it.",
                    details={"task_id": str(task.id), "depends_on_task_id": str(prerequisite.id)},
                ),
                task_id=str(task.id),
            )

        task.dependencies.append(prerequisite)
        session.flush()

        audit.record(
            actor_user_id=ctx.user_id,
            entity_type="work.task",
            entity_id=str(task.id),
            action="dependency_added",
            before=None,
            after={"depends_on_task_id": str(prerequisite.id)},
            correlation_id=ctx.correlation_id,
            tenant_id=task.tenant_id,
        )
        events.publish(
            events.build_envelope(
                "work.task.dependency_added",
                actor_user_id=ctx.user_id,
                tenant_id=task.tenant_id,
                correlation_id=ctx.correlation_id,
                payload={
                    "task_id": str(task.id),
                    "depends_on_task_id": str(prerequisite.id),
                    "violates_dependency_constraints": violates_dependency_constraints(task),
                },
            )
        )
        session.commit()
        return self._to_schedule(task)

    def remove_dependency(self, session: Session, ctx: AuthContext, task_id: uuid.UUID, depends_on_id: uuid.UUID) -> TaskScheduleRead:
        task = self.get_task_row(session, ctx, task_id)
        remaining = [item for item in task.dependencies if item.id != depends_on_id]
        if len(remaining) == len(task.dependencies):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="dependency not found")

        task.dependencies = remaining
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type="work.task",
            entity_id=str(task.id),
            action="dependency_removed",
            before={"depends_on_task_id": str(depends_on_id)},
            after=None,
            correlation_id=ctx.correlation_id,
            tenant_id=task.tenant_id,
        )
        session.commit()
        return self._to_schedule(task)

    def get_schedule(self, session: Session, ctx: AuthContext, task_id: uuid.UUID) -> TaskScheduleRead:
        return self._to_schedule(self.get_task_row(session, ctx, task_id))

    def change_status(self, session: Session, ctx: AuthContext, task_id: uuid.UUID, dto: TaskStatusUpdate) -> TaskRead:
        task = self.get_task_row(session, ctx, task_id)
        previous_status = task.status
        if dto.status == previous_status:
            return TaskRead.model_validate(task)

        if dto.status == "completed" and is_blocked(task):
            _reject(
                DependencyBlockedError(
                    "Complete dependent tasks first to clear this dependency.",
                    details={
                        "task_id": str(task.id),
                        "open_dependency_ids": [str(item.id) for item in _live_dependencies(task) if not item.is_completed],
                    },
                ),
                task_id=str(task.id),
            )

        task.status = dto.status
        self._propagate_percent(task)

        audit.record(
            actor_user_id=ctx.user_id,
            entity_type="work.task",
            entity_id=str(task.id),
            action="status_change",
            before={"status": previous_status},
            after={"status": task.status},
            correlation_id=ctx.correlation_id,
            tenant_id=task.tenant_id,
        )
        if task.status == "completed":
            events.publish(
                events.build_envelope(
                    "work.task.completed",
                    actor_user_id=ctx.user_id,
                    tenant_id=task.tenant_id,
                    correlation_id=ctx.correlation_id,
                    payload={"task_id": str(task.id), "previous_status": previous_status},
                )
            )

        self._recompute_projects(session, ctx, task, ("percent_complete",))
        session.commit()
        session.refresh(task)
        return TaskRead.model_validate(task)

    def update_percent_complete(self, session: Session, ctx: AuthContext, task_id: uuid.UUID) -> TaskRead:
        task = self.get_task_row(session, ctx, task_id)
        self._propagate_percent(task)
        session.commit()
        session.refresh(task)
        return TaskRead.model_validate(task)

    def get_billing(self, session: Session, ctx: AuthContext, task_id: uuid.UUID) -> TaskBillingRead:
        task = self.get_task_row(session, ctx, task_id)
        return TaskBillingRead(
            task_id=task.id,
            total_billable_minutes=get_total_billable_time(task),
            total_billing_amount=rules.quantize(get_total_billing_amount(task)),
        )

    def _propagate_percent(self, task: Task) -> None:
        """Refresh ``task`` and then each ancestor, stopping on a revisited node."""
        visited: set[uuid.UUID] = set()
        current: Task | None = task
        while current is not None and current.id not in visited:
            visited.add(current.id)
            if current.is_completed:
                current.percent_complete = Decimal("100")
            else:
                current.percent_complete = rules.clamp_percent(calculate_task_percent_complete(current))
            parent = current.parent
            current = parent if parent is not None and parent.deleted_at is None else None

    def _recompute_projects(self, session: Session, ctx: AuthContext, task: Task, kinds: tuple[str, ...]) -> None:
        if not get_settings().rollup_auto_recompute:
            return
        for project in task.projects:
            if project.deleted_at is None:
                recompute_project_rollups(session, project, actor_user_id=ctx.user_id, kinds=kinds)

    def _parent_lookup(self, session: Session):  # type: ignore[no-untyped-def]
        def parent_of(task_id: uuid.UUID) -> uuid.UUID | None:
            return session.scalar(select(Task.parent_id).where(Task.id == task_id))

        return parent_of

    def _dependency_lookup(self, session: Session):  # type: ignore[no-untyped-def]
        def dependencies_of(task_id: uuid.UUID) -> list[uuid.UUID]:
            node = session.get(Task, task_id)
            if node is None or node.deleted_at is not None:
                return []
            return [item.id for item in _live_dependencies(node)]

        return dependencies_of

    def _to_schedule(self, task: Task) -> TaskScheduleRead:
        return TaskScheduleRead(
            task_id=task.id,
            start_date=task.start_date,
            earliest_start_date=get_earliest_start_date(task),
            violates_dependency_constraints=violates_dependency_constraints(task),
            is_blocked=is_blocked(task),
            dependency_ids=[item.id for item in _live_dependencies(task)],
        )


@dataclass(slots=True)
class TimeEntryService:
    time_entry_repository: TimeEntryRepository = TimeEntryRepository()
    task_repository: TaskRepository = TaskRepository()

    def log_time(self, session: Session, ctx: AuthContext, task_id: uuid.UUID, dto: TimeEntryCreate) -> TimeEntryRead:
        task = task_service.get_task_row(session, ctx, task_id)
        started_at = _as_utc(dto.started_at)
        ended_at = _as_utc(dto.ended_at)
        duration = self._resolve_duration(started_at, ended_at, dto.duration_minutes)
        user_id = dto.user_id or ctx.user_id

        self.validate_entry(
            session,
            ctx,
            user_id=user_id,
            started_at=started_at,
            ended_at=ended_at,
            duration_minutes=duration,
        )

        entry = TaskTimeEntry(
            tenant_id=task.tenant_id,
            user_id=user_id,
            user_name=dto.user_name,
            started_at=started_at,
            ended_at=ended_at,
            duration_minutes=duration,
            is_billable=dto.is_billable,
            billing_rate=dto.billing_rate,
            note=dto.note,
        )
        task.time_entries.append(entry)
        session.flush()

        audit.record(
            actor_user_id=ctx.user_id,
            entity_type="work.time_entry",
            entity_id=str(entry.id),
            action="create",
            before=None,
            after=TimeEntryRead.model_validate(entry).model_dump(mode="json"),
            correlation_id=ctx.correlation_id,
            tenant_id=task.tenant_id,
        )
        events.publish(
            events.build_envelope(
                "work.time_entry.logged",
                actor_user_id=ctx.user_id,
                tenant_id=task.tenant_id,
                correlation_id=ctx.correlation_id,
                payload={
                    "time_entry_id": str(entry.id),
                    "task_id": str(task.id),
                    "user_id": user_id,
                    "duration_minutes": duration,
                    "is_billable": entry.is_billable,
                },
            )
        )
        self._refresh_project_costs(session, ctx, task)
        session.commit()
        session.refresh(entry)
        return TimeEntryRead.model_validate(entry)

    def update_time_entry(
        self,
        session: Session,
        ctx: AuthContext,
        entry_id: uuid.UUID,
        dto: TimeEntryUpdate,
    ) -> TimeEntryRead:
        entry = self.get_entry_row(session, ctx, entry_id)
        before = TimeEntryRead.model_validate(entry).model_dump(mode="json")
        fields_set = dto.model_fields_set

        started_at = _as_utc(dto.started_at) if "started_at" in fields_set else _as_utc(entry.started_at)
        ended_at = _as_utc(dto.ended_at) if "ended_at" in fields_set else _as_utc(entry.ended_at)
        if "duration_minutes" in fields_set and dto.duration_minutes is not None:
            duration = self._resolve_duration(started_at, ended_at, dto.duration_minutes)
        elif {"started_at", "ended_at"} & fields_set and started_at is not None and ended_at is not None:
            duration = self._resolve_duration(started_at, ended_at, None)
        else:
            duration = self._resolve_duration(started_at, ended_at, entry.duration_minutes)

        self.validate_entry(
            session,
            ctx,
            user_id=entry.user_id,
            started_at=started_at,
            ended_at=ended_at,
            duration_minutes=duration,
            exclude_entry_id=entry.id,
        )

        entry.started_at = started_at
        entry.ended_at = ended_at
        entry.duration_minutes = duration
        if "is_billable" in fields_set and dto.is_billable is not None:
            entry.is_billable = dto.is_billable
        if "billing_rate" in fields_set:
            entry.billing_rate = dto.billing_rate
        if "note" in fields_set:
            entry.note = dto.note
        session.flush()

        audit.record(
            actor_user_id=ctx.user_id,
            entity_type="work.time_entry",
            entity_id=str(entry.id),
            action="update",
            before=before,
            after=TimeEntryRead.model_validate(entry).model_dump(mode="json"),
            correlation_id=ctx.correlation_id,
            tenant_id=entry.tenant_id,
        )
        self._refresh_project_costs(session, ctx, entry.task)
        session.commit()
        session.refresh(entry)
        return TimeEntryRead.model_validate(entry)

    def delete_time_entry(self, session: Session, ctx: AuthContext, entry_id: uuid.UUID) -> None:
        entry = self.get_entry_row(session, ctx, entry_id)
        task = entry.task
        before = TimeEntryRead.model_validate(entry).model_dump(mode="json")
        task.time_entries.remove(entry)
        session.flush()

        audit.record(
            actor_user_id=ctx.user_id,
            entity_type="work.time_entry",
            entity_id=str(entry_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=ctx.correlation_id,
            tenant_id=task.tenant_id,
        )
        self._refresh_project_costs(session, ctx, task)
        session.commit()

    def get_entry_row(self, session: Session, ctx: AuthContext, entry_id: uuid.UUID) -> TaskTimeEntry:
        stmt: Select[tuple[TaskTimeEntry]] = select(TaskTimeEntry).where(TaskTimeEntry.id == entry_id)
        stmt = self.time_entry_repository.apply_scope_query(stmt, ctx)
        entry = session.scalar(stmt)
        if entry is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="time entry not found")
        return entry

    def validate_entry(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        user_id: str,
        started_at: datetime | None,
        ended_at: datetime | None,
        duration_minutes: int,
        exclude_entry_id: uuid.UUID | None = None,
    ) -> None:
        """Reject duplicates and overlapping intervals for ``user_id`` across all tasks."""
        if started_at is None:
            return

        duplicate_stmt: Select[tuple[TaskTimeEntry]] = select(TaskTimeEntry).where(
            and_(
                TaskTimeEntry.user_id == user_id,
                TaskTimeEntry.started_at == started_at,
                TaskTimeEntry.duration_minutes == duration_minutes,
            )
        )
        if exclude_entry_id is not None:
            duplicate_stmt = duplicate_stmt.where(TaskTimeEntry.id != exclude_entry_id)
        duplicate_stmt = self.time_entry_repository.apply_scope_query(duplicate_stmt, ctx)
        if session.scalars(duplicate_stmt.limit(1)).first() is not None:
            _reject(DuplicateTimeEntryError("This time entry already exists."), entity_type="work.time_entry")

        if ended_at is None:
            return

        overlap_stmt: Select[tuple[TaskTimeEntry]] = select(TaskTimeEntry).where(
            and_(
                TaskTimeEntry.user_id == user_id,
                TaskTimeEntry.started_at.is_not(None),
                TaskTimeEntry.ended_at.is_not(None),
                TaskTimeEntry.started_at < ended_at,
                TaskTimeEntry.ended_at > started_at,
            )
        )
        if exclude_entry_id is not None:
            overlap_stmt = overlap_stmt.where(TaskTimeEntry.id != exclude_entry_id)
        overlap_stmt = self.time_entry_repository.apply_scope_query(overlap_stmt, ctx)
        conflict = session.scalars(overlap_stmt.limit(1)).first()
        if conflict is not None:
            _reject(
                OverlappingTimeEntryError(
                    "Time entry overlaps with an existing entry for this user.",
                    details={"conflicting_entry_id": str(conflict.id)},
                ),
                entity_type="work.time_entry",
                entity_id=str(conflict.id),
            )

    def _resolve_duration(
        self,
        started_at: datetime | None,
        ended_at: datetime | None,
        duration_minutes: int | None,
    ) -> int:
        if started_at is not None and ended_at is not None and ended_at < started_at:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="ended_at must not be before started_at")
        if duration_minutes is not None:
            return duration_minutes
        if started_at is None or ended_at is None:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="duration_minutes is required unless started_at and ended_at are both set",
            )
        return rules.whole_minutes_between(started_at, ended_at)

    def _refresh_project_costs(self, session: Session, ctx: AuthContext, task: Task) -> None:
        if not get_settings().rollup_auto_recompute:
            return
        for project in task.projects:
            if project.deleted_at is None:
                recompute_project_rollups(session, project, actor_user_id=ctx.user_id, kinds=("actual_cost",))


def _get_project_row(session: Session, ctx: AuthContext, repository: ProjectRepository, project_id: uuid.UUID) -> Project:
    stmt: Select[tuple[Project]] = select(Project).where(and_(Project.id == project_id, Project.deleted_at.is_(None)))
    stmt = repository.apply_scope_query(stmt, ctx)
    project = session.scalar(stmt)
    if project is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="project not found")
    return project


def _today() -> date:
    return datetime.now(timezone.utc).date()


def _project_schedule(
    project: Project,
) -> tuple[list[Task], dict[uuid.UUID, rules.ScheduleTimes], dict[uuid.UUID, rules.ScheduleTimes]]:
    """Forward and backward pass over the project's live tasks.

    Links to tasks outside the project are ignored.
    """
    tasks = _live_tasks(project)
    task_ids = [item.id for item in tasks]
    members = set(task_ids)
    durations = {item.id: rules.task_duration_days(item.start_date, item.end_date) for item in tasks}
    dependencies = {item.id: [dep.id for dep in _live_dependencies(item) if dep.id in members] for item in tasks}
    dependents: dict[uuid.UUID, list[uuid.UUID]] = {task_id: [] for task_id in task_ids}
    for task_id, prerequisites in dependencies.items():
        for prerequisite in prerequisites:
            dependents[prerequisite].append(task_id)

    earliest = rules.forward_pass(task_ids, durations, dependencies)
    latest = rules.backward_pass(task_ids, durations, dependents, earliest)
    return tasks, earliest, latest


@dataclass(slots=True)
class ProjectService:
    project_repository: ProjectRepository = ProjectRepository()

    def create_project(self, session: Session, ctx: AuthContext, dto: ProjectCreate) -> ProjectRead:
        tenant_id = _resolve_tenant(self.project_repository, ctx, dto.tenant_id)
        _check_date_range(dto.start_date, dto.end_date)

        project = Project(
            tenant_id=tenant_id,
            name=dto.name.strip(),
            description=dto.description,
            status=dto.status,
            start_date=dto.start_date,
            end_date=dto.end_date,
            budget=dto.budget,
            currency=dto.currency.upper(),
            is_template=dto.is_template,
        )
        session.add(project)
        session.flush()
        self._record_created(ctx, project)
        session.commit()
        session.refresh(project)
        return ProjectRead.model_validate(project)

    def get_project(self, session: Session, ctx: AuthContext, project_id: uuid.UUID) -> ProjectRead:
        return ProjectRead.model_validate(self.get_project_row(session, ctx, project_id))

    def get_project_row(self, session: Session, ctx: AuthContext, project_id: uuid.UUID) -> Project:
        return _get_project_row(session, ctx, self.project_repository, project_id)

    def list_projects(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        is_template: bool | None = None,
        status_filter: str | None = None,
    ) -> list[ProjectRead]:
        stmt: Select[tuple[Project]] = select(Project).where(Project.deleted_at.is_(None))
        if is_template is not None:
            stmt = stmt.where(Project.is_template.is_(is_template))
        if status_filter is not None:
            stmt = stmt.where(Project.status == status_filter)
        stmt = self.project_repository.apply_scope_query(stmt, ctx)
        rows = session.scalars(stmt.order_by(Project.created_at.desc())).all()
        return [ProjectRead.model_validate(row) for row in rows]

    def add_task(self, session: Session, ctx: AuthContext, project_id: uuid.UUID, task_id: uuid.UUID) -> list[TaskRead]:
        project = self.get_project_row(session, ctx, project_id)
        task = task_service.get_task_row(session, ctx, task_id)
        if all(item.id != task.id for item in project.tasks):
            project.tasks.append(task)
            audit.record(
                actor_user_id=ctx.user_id,
                entity_type="work.project",
                entity_id=str(project.id),
                action="task_attached",
                before=None,
                after={"task_id": str(task.id)},
                correlation_id=ctx.correlation_id,
                tenant_id=project.tenant_id,
            )
            session.commit()
        return self.list_tasks(session, ctx, project_id)

    def list_tasks(self, session: Session, ctx: AuthContext, project_id: uuid.UUID) -> list[TaskRead]:
        project = self.get_project_row(session, ctx, project_id)
        tasks = sorted(_live_tasks(project), key=lambda item: (item.start_date or date.max, item.name))
        return [TaskRead.model_validate(item) for item in tasks]

    def list_ready_tasks(self, session: Session, ctx: AuthContext, project_id: uuid.UUID) -> list[TaskRead]:
        return [TaskRead.model_validate(item) for item in self._open_tasks(session, ctx, project_id) if not is_blocked(item)]

    def list_blocked_tasks(self, session: Session, ctx: AuthContext, project_id: uuid.UUID) -> list[TaskRead]:
        return [TaskRead.model_validate(item) for item in self._open_tasks(session, ctx, project_id) if is_blocked(item)]

    def add_member(self, session: Session, ctx: AuthContext, project_id: uuid.UUID, dto: ProjectMemberCreate) -> ProjectMemberRead:
        project = self.get_project_row(session, ctx, project_id)
        member = ProjectMember(
            project_id=project.id,
            user_id=dto.user_id,
            role=dto.role,
            allocation_percentage=dto.allocation_percentage,
        )
        session.add(member)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="user is already a project member")

        audit.record(
            actor_user_id=ctx.user_id,
            entity_type="work.project",
            entity_id=str(project.id),
            action="member_added",
            before=None,
            after=ProjectMemberRead.model_validate(member).model_dump(mode="json"),
            correlation_id=ctx.correlation_id,
            tenant_id=project.tenant_id,
        )
        session.commit()
        session.refresh(member)
        return ProjectMemberRead.model_validate(member)

    def list_members(self, session: Session, ctx: AuthContext, project_id: uuid.UUID) -> list[ProjectMemberRead]:
        project = self.get_project_row(session, ctx, project_id)
        return [ProjectMemberRead.model_validate(item) for item in sorted(project.members, key=lambda item: item.user_id)]

    def update_percent_complete(self, session: Session, ctx: AuthContext, project_id: uuid.UUID) -> ProjectRollupRead:
        return self._recompute(session, ctx, project_id, ("percent_complete",))

    def update_actual_cost(self, session: Session, ctx: AuthContext, project_id: uuid.UUID) -> ProjectRollupRead:
        return self._recompute(session, ctx, project_id, ("actual_cost",))

    def get_budget_summary(self, session: Session, ctx: AuthContext, project_id: uuid.UUID) -> BudgetSummaryRead:
        project = self.get_project_row(session, ctx, project_id)
        actual_cost = Decimal(project.actual_cost or 0)

        breakdown: list[TaskBudgetBreakdown] = []
        total_minutes = 0
        for task in _live_tasks(project):
            minutes = get_total_billable_time(task)
            total_minutes += minutes
            breakdown.append(
                TaskBudgetBreakdown(
                    task_id=task.id,
                    task_name=task.name,
                    billable_minutes=minutes,
                    billable_hours=rules.minutes_to_hours(minutes),
                    billing_amount=rules.quantize(get_total_billing_amount(task)),
                )
            )

        return BudgetSummaryRead(
            project_id=project.id,
            project_name=project.name,
            currency=project.currency,
            budget=project.budget,
            actual_cost=actual_cost,
            variance=rules.budget_variance(project.budget, actual_cost),
            utilization_percentage=rules.budget_utilization(project.budget, actual_cost),
            is_over_budget=rules.is_over_budget(project.budget, actual_cost),
            task_breakdown=breakdown,
            total_billable_minutes=total_minutes,
            total_billable_hours=rules.minutes_to_hours(total_minutes),
        )

    def export_time_logs(self, session: Session, ctx: AuthContext, project_id: uuid.UUID) -> list[TimeLogExportRow]:
        project = self.get_project_row(session, ctx, project_id)
        rows: list[TimeLogExportRow] = []
        for task in _live_tasks(project):
            for entry in task.time_entries:
                rows.append(
                    TimeLogExportRow(
                        task_id=task.id,
                        task_name=task.name,
                        user_id=entry.user_id,
                        user_name=entry.user_name,
                        started_at=entry.started_at,
                        ended_at=entry.ended_at,
                        duration_minutes=entry.duration_minutes,
                        duration_hours=rules.minutes_to_hours(entry.duration_minutes),
                        is_billable=entry.is_billable,
                        billing_rate=entry.billing_rate,
                        billing_amount=rules.quantize(rules.entry_billing_amount(entry)),
                        note=entry.note,
                    )
                )
        return rows

    def create_from_template(
        self,
        session: Session,
        ctx: AuthContext,
        template_id: uuid.UUID,
        dto: ProjectFromTemplate,
    ) -> ProjectRead:
        template = self.get_project_row(session, ctx, template_id)
        if not template.is_template:
            _reject(
                InvalidTemplateOperationError("Cannot create project from non-template."),
                project_id=str(template.id),
            )

        overrides = dto.model_dump(mode="python", exclude_unset=True)
        _check_date_range(overrides.get("start_date"), overrides.get("end_date"))
        project = Project(
            tenant_id=template.tenant_id,
            template_id=template.id,
            name=dto.name.strip(),
            description=overrides.get("description", template.description),
            status="planning",
            start_date=overrides.get("start_date"),
            end_date=overrides.get("end_date"),
            budget=overrides.get("budget", template.budget),
            currency=(overrides.get("currency") or template.currency).upper(),
            is_template=False,
        )
        session.add(project)
        session.flush()

        for member in template.members:
            project.members.append(
                ProjectMember(
                    user_id=member.user_id,
                    role=member.role,
                    allocation_percentage=member.allocation_percentage,
                )
            )
        for task in _live_tasks(template):
            project.tasks.append(task)
        session.flush()

        self._record_created(ctx, project)
        session.commit()
        session.refresh(project)
        return ProjectRead.model_validate(project)

    def get_critical_path(self, session: Session, ctx: AuthContext, project_id: uuid.UUID) -> list[TaskRead]:
        project = self.get_project_row(session, ctx, project_id)
        tasks, earliest, latest = _project_schedule(project)
        by_id = {item.id: item for item in tasks}
        path = rules.critical_path([item.id for item in tasks], earliest, latest)
        return [TaskRead.model_validate(by_id[task_id]) for task_id in path]

    def get_task_slack(self, session: Session, ctx: AuthContext, project_id: uuid.UUID, task_id: uuid.UUID) -> TaskSlackRead:
        project = self.get_project_row(session, ctx, project_id)
        task = task_service.get_task_row(session, ctx, task_id)
        _tasks, earliest, latest = _project_schedule(project)
        return TaskSlackRead(task_id=task.id, slack_days=rules.slack_days(task.id, earliest, latest))

    def get_timeline(self, session: Session, ctx: AuthContext, project_id: uuid.UUID) -> ProjectTimelineRead:
        project = self.get_project_row(session, ctx, project_id)
        tasks, earliest, latest = _project_schedule(project)
        if not tasks:
            return ProjectTimelineRead(
                project_id=project.id,
                project_name=project.name,
                start_date=project.start_date,
                end_date=project.end_date,
                tasks=[],
            )

        project_start = project.start_date or _today()
        timeline: list[TimelineTaskRead] = []
        for task in tasks:
            times = earliest[task.id]
            slack = rules.slack_days(task.id, earliest, latest)
            timeline.append(
                TimelineTaskRead(
                    task_id=task.id,
                    task_name=task.name,
                    scheduled_start=project_start + timedelta(days=times.start),
                    scheduled_end=project_start + timedelta(days=times.finish),
                    duration_days=times.finish - times.start,
                    slack_days=slack,
                    is_critical=slack == 0,
                    percent_complete=task.percent_complete,
                    dependency_ids=[item.id for item in _live_dependencies(task)],
                )
            )
        completion = max(item.finish for item in earliest.values())
        return ProjectTimelineRead(
            project_id=project.id,
            project_name=project.name,
            start_date=project_start,
            end_date=project_start + timedelta(days=completion),
            tasks=timeline,
        )

    def get_schedule_summary(self, session: Session, ctx: AuthContext, project_id: uuid.UUID) -> ScheduleSummaryRead:
        project = self.get_project_row(session, ctx, project_id)
        tasks, earliest, latest = _project_schedule(project)
        if not tasks:
            return ScheduleSummaryRead(
                total_tasks=0,
                completed_tasks=0,
                in_progress_tasks=0,
                blocked_tasks=0,
                critical_path_length=0,
                critical_tasks_count=0,
                on_schedule=True,
            )

        path = rules.critical_path([item.id for item in tasks], earliest, latest)
        length = max(item.finish for item in earliest.values()) if path else 0
        on_schedule = True
        if project.end_date is not None:
            on_schedule = (project.start_date or _today()) + timedelta(days=length) <= project.end_date

        return ScheduleSummaryRead(
            total_tasks=len(tasks),
            completed_tasks=sum(1 for item in tasks if item.is_completed),
            in_progress_tasks=sum(1 for item in tasks if not item.is_completed and Decimal(item.percent_complete or 0) > 0),
            blocked_tasks=sum(1 for item in tasks if is_blocked(item)),
            critical_path_length=length,
            critical_tasks_count=len(path),
            on_schedule=on_schedule,
        )

    def _open_tasks(self, session: Session, ctx: AuthContext, project_id: uuid.UUID) -> list[Task]:
        project = self.get_project_row(session, ctx, project_id)
        return [item for item in _live_tasks(project) if item.status not in CLOSED_TASK_STATUSES]

    def _recompute(
        self,
        session: Session,
        ctx: AuthContext,
        project_id: uuid.UUID,
        kinds: tuple[str, ...],
    ) -> ProjectRollupRead:
        project = self.get_project_row(session, ctx, project_id)
        recompute_project_rollups(session, project, actor_user_id=ctx.user_id, kinds=kinds)
        session.commit()
        session.refresh(project)
        return ProjectRollupRead(
            project_id=project.id,
            percent_complete=project.percent_complete,
            actual_cost=project.actual_cost,
        )

    def _record_created(self, ctx: AuthContext, project: Project) -> None:
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type="work.project",
            entity_id=str(project.id),
            action="create",
            before=None,
            after=ProjectRead.model_validate(project).model_dump(mode="json"),
            correlation_id=ctx.correlation_id,
            tenant_id=project.tenant_id,
        )
        events.publish(
            events.build_envelope(
                "work.project.created",
                actor_user_id=ctx.user_id,
                tenant_id=project.tenant_id,
                correlation_id=ctx.correlation_id,
                payload={
                    "project_id": str(project.id),
                    "name": project.name,
                    "template_id": str(project.template_id) if project.template_id else None,
                },
            )
        )


task_service = TaskService()
time_entry_service = TimeEntryService()
project_service = ProjectService()
