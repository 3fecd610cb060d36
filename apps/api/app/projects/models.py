from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


project_task = Table(
    "work_project_task",
    Base.metadata,
    Column("project_id", Uuid(as_uuid=True), ForeignKey("work_project.id", ondelete="CASCADE"), primary_key=True),
    Column("task_id", Uuid(as_uuid=True), ForeignKey("work_task.id", ondelete="CASCADE"), primary_key=True),
)

task_dependency = Table(
    "work_task_dependency",
    Base.metadata,
    Column("task_id", Uuid(as_uuid=True), ForeignKey("work_task.id", ondelete="CASCADE"), primary_key=True),
    Column("depends_on_task_id", Uuid(as_uuid=True), ForeignKey("work_task.id", ondelete="CASCADE"), primary_key=True),
)


class Project(Base):
    __tablename__ = "work_project"
    __table_args__ = (
        Index("ix_work_project_tenant_status", "tenant_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="planning", server_default="planning")
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    budget: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    actual_cost: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"), server_default="0")
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD", server_default="USD")
    percent_complete: Mapped[Decimal] = mapped_column(
        Numeric(5, 2),
        nullable=False,
        default=Decimal("0"),
        server_default="0",
    )
    is_template: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    template_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("work_project.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    tasks: Mapped[list[Task]] = relationship("Task", secondary=project_task, back_populates="projects")
    members: Mapped[list[ProjectMember]] = relationship(
        "ProjectMember",
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class ProjectMember(Base):
    __tablename__ = "work_project_member"
    __table_args__ = (
        UniqueConstraint("project_id", "user_id", name="uq_work_project_member_user"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("work_project.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    role: Mapped[str | None] = mapped_column(String(64), nullable=True)
    allocation_percentage: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    project: Mapped[Project] = relationship("Project", back_populates="members")


class Task(Base):
    __tablename__ = "work_task"
    __table_args__ = (
        Index("ix_work_task_tenant_parent", "tenant_id", "parent_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="todo", server_default="todo")
    parent_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("work_task.id", ondelete="SET NULL"),
        nullable=True,
    )
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    percent_complete: Mapped[Decimal] = mapped_column(
        Numeric(5, 2),
        nullable=False,
        default=Decimal("0"),
        server_default="0",
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    parent: Mapped[Task | None] = relationship("Task", remote_side="Task.id", back_populates="subtasks")
    subtasks: Mapped[list[Task]] = relationship("Task", back_populates="parent")
    dependencies: Mapped[list[Task]] = relationship(
        "Task",
        secondary=task_dependency,
        primaryjoin=lambda: Task.id == task_dependency.c.task_id,
        secondaryjoin=lambda: Task.id == task_dependency.c.depends_on_task_id,
        back_populates="dependents",
    )
    dependents: Mapped[list[Task]] = relationship(
        "Task",
        secondary=task_dependency,
        primaryjoin=lambda: Task.id == task_dependency.c.depends_on_task_id,
        secondaryjoin=lambda: Task.id == task_dependency.c.task_id,
        back_populates="dependencies",
    )
    projects: Mapped[list[Project]] = relationship("Project", secondary=project_task, back_populates="tasks")
    time_entries: Mapped[list[TaskTimeEntry]] = relationship(
        "TaskTimeEntry",
        back_populates="task",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="TaskTimeEntry.started_at",
    )

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"


class TaskTimeEntry(Base):
    __tablename__ = "work_task_time_entry"
    __table_args__ = (
        Index("ix_work_task_time_entry_user_started", "user_id", "started_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    task_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("work_task.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    is_billable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    billing_rate: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    task: Mapped[Task] = relationship("Task", back_populates="time_entries")
