from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal

from fastapi import HTTPException, status
from sqlalchemy import Select, and_, select
from sqlalchemy.orm import Session

from app import audit, events
from app.core.config import get_settings
from app.core.errors import CapacityExceededError
from app.metrics import observe_domain_rejection
from app.platform.security.context import AuthContext
from app.platform.security.errors import AuthorizationError
from app.projects.service import project_service, task_service
from app.workforce import ledger
from app.workforce.models import Employee, EmployeeAllocation
from app.workforce.repository import AllocationRepository, EmployeeRepository
from app.workforce.schemas import (
    AllocationCreate,
    AllocationRead,
    CapacitySummaryRead,
    EmployeeCreate,
    EmployeeRead,
    ProjectTarget,
    TaskTarget,
)

logger = logging.getLogger("app.workforce")


def _today() -> date:
    return datetime.now(timezone.utc).date()


def _capacity() -> Decimal:
    return Decimal(get_settings().allocation_capacity_percent)


@dataclass(slots=True)
class WorkforceService:
    employee_repository: EmployeeRepository = EmployeeRepository()
    allocation_repository: AllocationRepository = AllocationRepository()

    def create_employee(self, session: Session, ctx: AuthContext, dto: EmployeeCreate) -> EmployeeRead:
        try:
            tenant_id = self.employee_repository.resolve_tenant(ctx, dto.tenant_id)
        except AuthorizationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

        employee = Employee(
            tenant_id=tenant_id,
            name=dto.name.strip(),
            email=dto.email,
            user_id=dto.user_id,
            capacity_hours_per_week=dto.capacity_hours_per_week,
        )
        session.add(employee)
        session.flush()
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type="workforce.employee",
            entity_id=str(employee.id),
            action="create",
            before=None,
            after=EmployeeRead.model_validate(employee).model_dump(mode="json"),
            correlation_id=ctx.correlation_id,
            tenant_id=tenant_id,
        )
        session.commit()
        session.refresh(employee)
        return EmployeeRead.model_validate(employee)

    def get_employee(self, session: Session, ctx: AuthContext, employee_id: uuid.UUID) -> EmployeeRead:
        return EmployeeRead.model_validate(self.get_employee_row(session, ctx, employee_id))

    def get_employee_row(self, session: Session, ctx: AuthContext, employee_id: uuid.UUID) -> Employee:
        stmt: Select[tuple[Employee]] = select(Employee).where(
            and_(Employee.id == employee_id, Employee.deleted_at.is_(None))
        )
        stmt = self.employee_repository.apply_scope_query(stmt, ctx)
        employee = session.scalar(stmt)
        if employee is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="employee not found")
        return employee

    def allocate_to(
        self,
        session: Session,
        ctx: AuthContext,
        employee_id: uuid.UUID,
        dto: AllocationCreate,
    ) -> AllocationRead:
        employee = self.get_employee_row(session, ctx, employee_id)
        if dto.start_date is not None and dto.end_date is not None and dto.end_date < dto.start_date:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="end_date must not be before start_date")
        self._ensure_target_exists(session, ctx, dto.target)

        capacity = _capacity()
        current = ledger.overlapping_allocation(employee.allocations, dto.start_date, dto.end_date)
        requested = Decimal(dto.allocation_percentage)
        if current + requested > capacity:
            observe_domain_rejection(CapacityExceededError.code)
            logger.warning(
                "workforce.allocation.capacity_exceeded",
                extra={"rule": CapacityExceededError.code, "employee_id": str(employee.id), "tenant_id": employee.tenant_id},
            )
            raise CapacityExceededError(
                f"Cannot allocate {ledger.format_percent(requested)}% - would exceed capacity. "
                f"Current allocation: {ledger.format_percent(current)}%, "
                f"Available: {ledger.format_percent(capacity - current)}%",
                details={
                    "employee_id": str(employee.id),
                    "requested": str(requested),
                    "current_allocation": str(current),
                    "available": str(ledger.available_capacity(current, capacity)),
                },
            )

        allocation = EmployeeAllocation(
            tenant_id=employee.tenant_id,
            target_type=dto.target.type,
            target_id=dto.target.id,
            allocation_percentage=requested,
            start_date=dto.start_date,
            end_date=dto.end_date,
        )
        employee.allocations.append(allocation)
        session.flush()

        read = self._to_read(allocation)
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type="workforce.allocation",
            entity_id=str(allocation.id),
            action="create",
            before=None,
            after=read.model_dump(mode="json"),
            correlation_id=ctx.correlation_id,
            tenant_id=employee.tenant_id,
        )
        events.publish(
            events.build_envelope(
                "workforce.allocation.created",
                actor_user_id=ctx.user_id,
                tenant_id=employee.tenant_id,
                correlation_id=ctx.correlation_id,
                payload={
                    "allocation_id": str(allocation.id),
                    "employee_id": str(employee.id),
                    "target_type": allocation.target_type,
                    "target_id": str(allocation.target_id),
                    "allocation_percentage": str(allocation.allocation_percentage),
                },
            )
        )
        session.commit()
        session.refresh(allocation)
        return self._to_read(allocation)

    def list_allocations(
        self,
        session: Session,
        ctx: AuthContext,
        employee_id: uuid.UUID,
        *,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> list[AllocationRead]:
        employee = self.get_employee_row(session, ctx, employee_id)
        rows = [
            item
            for item in employee.allocations
            if ledger.ranges_overlap(item.start_date, item.end_date, start_date, end_date)
        ]
        return [self._to_read(item) for item in rows]

    def get_total_allocation(
        self,
        session: Session,
        ctx: AuthContext,
        employee_id: uuid.UUID,
        start_date: date | None = None,
        end_date: date | None = None,
        *,
        today: date | None = None,
    ) -> Decimal:
        employee = self.get_employee_row(session, ctx, employee_id)
        return ledger.total_allocation(employee.allocations, start_date, end_date, today=today or _today())

    def get_available_capacity(
        self,
        session: Session,
        ctx: AuthContext,
        employee_id: uuid.UUID,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> Decimal:
        total = self.get_total_allocation(session, ctx, employee_id, start_date, end_date)
        return ledger.available_capacity(total, _capacity())

    def is_over_allocated(
        self,
        session: Session,
        ctx: AuthContext,
        employee_id: uuid.UUID,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> bool:
        total = self.get_total_allocation(session, ctx, employee_id, start_date, end_date)
        return ledger.is_over_allocated(total, _capacity())

    def get_capacity_summary(
        self,
        session: Session,
        ctx: AuthContext,
        employee_id: uuid.UUID,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> CapacitySummaryRead:
        employee = self.get_employee_row(session, ctx, employee_id)
        capacity = _capacity()
        total = ledger.total_allocation(employee.allocations, start_date, end_date, today=_today())
        available = ledger.available_capacity(total, capacity)
        return CapacitySummaryRead(
            employee_id=employee.id,
            start_date=start_date,
            end_date=end_date,
            total_allocation=total,
            available_capacity=available,
            is_over_allocated=ledger.is_over_allocated(total, capacity),
            capacity_hours_per_week=employee.capacity_hours_per_week,
            available_hours_per_week=ledger.available_hours(employee.capacity_hours_per_week, available, capacity),
        )

    def _ensure_target_exists(self, session: Session, ctx: AuthContext, target: ProjectTarget | TaskTarget) -> None:
        if isinstance(target, ProjectTarget):
            project_service.get_project_row(session, ctx, target.id)
        else:
            task_service.get_task_row(session, ctx, target.id)

    def _to_read(self, allocation: EmployeeAllocation) -> AllocationRead:
        target: ProjectTarget | TaskTarget
        if allocation.target_type == "project":
            target = ProjectTarget(id=allocation.target_id)
        else:
            target = TaskTarget(id=allocation.target_id)
        return AllocationRead(
            id=allocation.id,
            employee_id=allocation.employee_id,
            target=target,
            allocation_percentage=allocation.allocation_percentage,
            start_date=allocation.start_date,
            end_date=allocation.end_date,
            created_at=allocation.created_at,
        )


workforce_service = WorkforceService()
