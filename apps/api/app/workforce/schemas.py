from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ProjectTarget(BaseModel):
    type: Literal["project"] = "project"
    id: UUID


class TaskTarget(BaseModel):
    type: Literal["task"] = "task"
    id: UUID


AllocationTarget = Annotated[Union[ProjectTarget, TaskTarget], Field(discriminator="type")]


class EmployeeCreate(BaseModel):
    name: str = Field(min_length=1)
    tenant_id: str | None = None
    email: str | None = None
    user_id: str | None = None
    capacity_hours_per_week: Decimal = Field(default=Decimal("40"), gt=Decimal("0"), le=Decimal("168"))


class EmployeeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    name: str
    email: str | None
    user_id: str | None
    capacity_hours_per_week: Decimal
    created_at: datetime


class AllocationCreate(BaseModel):
    target: AllocationTarget
    allocation_percentage: Decimal = Field(gt=Decimal("0"), le=Decimal("100"))
    start_date: date | None = None
    end_date: date | None = None


class AllocationRead(BaseModel):
    id: UUID
    employee_id: UUID
    target: AllocationTarget
    allocation_percentage: Decimal
    start_date: date | None
    end_date: date | None
    created_at: datetime


class CapacitySummaryRead(BaseModel):
    employee_id: UUID
    start_date: date | None
    end_date: date | None
    total_allocation: Decimal
    available_capacity: Decimal
    is_over_allocated: bool
    capacity_hours_per_week: Decimal
    available_hours_per_week: Decimal
