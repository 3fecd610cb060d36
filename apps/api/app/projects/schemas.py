from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


ProjectStatus = Literal["planning", "active", "on_hold", "completed", "cancelled"]
TaskStatus = Literal["todo", "in_progress", "review", "completed", "cancelled"]


class ProjectMemberCreate(BaseModel):
    user_id: str = Field(min_length=1)
    role: str | None = None
    allocation_percentage: Decimal | None = Field(default=None, ge=Decimal("0"), le=Decimal("100"))


class ProjectMemberRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    project_id: UUID
    user_id: str
    role: str | None
    allocation_percentage: Decimal | None


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1)
    tenant_id: str | None = None
    description: str | None = None
    status: ProjectStatus = "planning"
    start_date: date | None = None
    end_date: date | None = None
    budget: Decimal | None = Field(default=None, ge=Decimal("0"))
    currency: str = Field(default="USD", min_length=3, max_length=3)
    is_template: bool = False


class ProjectFromTemplate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    budget: Decimal | None = Field(default=None, ge=Decimal("0"))
    currency: str | None = Field(default=None, min_length=3, max_length=3)


class ProjectRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    name: str
    description: str | None
    status: str
    start_date: date | None
    end_date: date | None
    budget: Decimal | None
    actual_cost: Decimal
    currency: str
    percent_complete: Decimal
    is_template: bool
    template_id: UUID | None
    created_at: datetime


class TaskCreate(BaseModel):
    name: str = Field(min_length=1)
    tenant_id: str | None = None
    description: str | None = None
    status: TaskStatus = "todo"
    parent_id: UUID | None = None
    project_id: UUID | None = None
    start_date: date | None = None
    end_date: date | None = None
    percent_complete: Decimal = Field(default=Decimal("0"), ge=Decimal("0"), le=Decimal("100"))


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    name: str
    description: str | None
    status: str
    parent_id: UUID | None
    start_date: date | None
    end_date: date | None
    percent_complete: Decimal
    created_at: datetime


class TaskUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    parent_id: UUID | None = None
    start_date: date | None = None
    end_date: date | None = None
    percent_complete: Decimal | None = Field(default=None, ge=Decimal("0"), le=Decimal("100"))


class TaskStatusUpdate(BaseModel):
    status: TaskStatus


class TaskDependencyCreate(BaseModel):
    depends_on_task_id: UUID


class TaskScheduleRead(BaseModel):
    task_id: UUID
    start_date: date | None
    earliest_start_date: date | None
    violates_dependency_constraints: bool
    is_blocked: bool
    dependency_ids: list[UUID]


class TaskBillingRead(BaseModel):
    task_id: UUID
    total_billable_minutes: int
    total_billing_amount: Decimal


class TimeEntryCreate(BaseModel):
    user_id: str | None = None
    user_name: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    duration_minutes: int | None = Field(default=None, ge=0)
    is_billable: bool = True
    billing_rate: Decimal | None = Field(default=None, ge=Decimal("0"))
    note: str | None = None


class TimeEntryUpdate(BaseModel):
    started_at: datetime | None = None
    ended_at: datetime | None = None
    duration_minutes: int | None = Field(default=None, ge=0)
    is_billable: bool | None = None
    billing_rate: Decimal | None = Field(default=None, ge=Decimal("0"))
    note: str | None = None


class TimeEntryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    task_id: UUID
    user_id: str
    user_name: str | None
    started_at: datetime | None
    ended_at: datetime | None
    duration_minutes: int
    is_billable: bool
    billing_rate: Decimal | None
    note: str | None


class TaskBudgetBreakdown(BaseModel):
    task_id: UUID
    task_name: str
    billable_minutes: int
    billable_hours: Decimal
    billing_amount: Decimal


class BudgetSummaryRead(BaseModel):
    project_id: UUID
    project_name: str
    currency: str
    budget: Decimal | None
    actual_cost: Decimal
    variance: Decimal | None
    utilization_percentage: Decimal | None
    is_over_budget: bool
    task_breakdown: list[TaskBudgetBreakdown]
    total_billable_minutes: int
    total_billable_hours: Decimal


class TimeLogExportRow(BaseModel):
    task_id: UUID
    task_name: str
    user_id: str
    user_name: str | None
    started_at: datetime | None
    ended_at: datetime | None
    duration_minutes: int
    duration_hours: Decimal
    is_billable: bool
    billing_rate: Decimal | None
    billing_amount: Decimal
    note: str | None


class ProjectRollupRead(BaseModel):
    project_id: UUID
    percent_complete: Decimal
    actual_cost: Decimal


class TimelineTaskRead(BaseModel):
    task_id: UUID
    task_name: str
    scheduled_start: date
    scheduled_end: date
    duration_days: int
    slack_days: int
    is_critical: bool
    percent_complete: Decimal
    dependency_ids: list[UUID]


class ProjectTimelineRead(BaseModel):
    project_id: UUID
    project_name: str
    start_date: date | None
    end_date: date | None
    tasks: list[TimelineTaskRead]


class ScheduleSummaryRead(BaseModel):
    total_tasks: int
    completed_tasks: int
    in_progress_tasks: int
    blocked_tasks: int
    critical_path_length: int
    critical_tasks_count: int
    on_schedule: bool


class TaskSlackRead(BaseModel):
    task_id: UUID
    slack_days: int
