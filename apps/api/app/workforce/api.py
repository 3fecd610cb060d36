from __future__ import annotations

import uuid
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.deps import failure_response, get_auth_context, require_permission
from app.core.database import get_db
from app.platform.security.context import AuthContext
from app.workforce.schemas import (
    AllocationCreate,
    AllocationRead,
    CapacitySummaryRead,
    EmployeeCreate,
    EmployeeRead,
)
from app.workforce.service import workforce_service

router = APIRouter(prefix="/api/workforce/employees", tags=["workforce.employees"])


@router.post("", response_model=EmployeeRead, status_code=status.HTTP_201_CREATED)
def create_employee(
    request: Request,
    dto: EmployeeCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> EmployeeRead | JSONResponse:
    try:
        require_permission(ctx, "workforce.allocations.write")
        return workforce_service.create_employee(db, ctx, dto)
    except HTTPException as exc:
        return failure_response(request, exc, "workforce_employee_create_failed")


@router.get("/{employee_id}", response_model=EmployeeRead)
def get_employee(
    request: Request,
    employee_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> EmployeeRead | JSONResponse:
    try:
        require_permission(ctx, "workforce.allocations.read")
        return workforce_service.get_employee(db, ctx, employee_id)
    except HTTPException as exc:
        return failure_response(request, exc, "workforce_employee_get_failed")


@router.post("/{employee_id}/allocations", response_model=AllocationRead, status_code=status.HTTP_201_CREATED)
def create_allocation(
    request: Request,
    employee_id: uuid.UUID,
    dto: AllocationCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> AllocationRead | JSONResponse:
    try:
        require_permission(ctx, "workforce.allocations.write")
        return workforce_service.allocate_to(db, ctx, employee_id, dto)
    except HTTPException as exc:
        return failure_response(request, exc, "workforce_allocation_create_failed")


@router.get("/{employee_id}/allocations", response_model=list[AllocationRead])
def list_allocations(
    request: Request,
    employee_id: uuid.UUID,
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[AllocationRead] | JSONResponse:
    try:
        require_permission(ctx, "workforce.allocations.read")
        return workforce_service.list_allocations(db, ctx, employee_id, start_date=start_date, end_date=end_date)
    except HTTPException as exc:
        return failure_response(request, exc, "workforce_allocation_list_failed")


@router.get("/{employee_id}/capacity", response_model=CapacitySummaryRead)
def get_capacity(
    request: Request,
    employee_id: uuid.UUID,
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> CapacitySummaryRead | JSONResponse:
    try:
        require_permission(ctx, "workforce.allocations.read")
        return workforce_service.get_capacity_summary(db, ctx, employee_id, start_date, end_date)
    except HTTPException as exc:
        return failure_response(request, exc, "workforce_capacity_failed")
