from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.deps import failure_response, get_auth_context, require_permission
from app.core.database import get_db
from app.platform.security.context import AuthContext
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
    TaskCreate,
    TaskDependencyCreate,
    TaskRead,
    TaskScheduleRead,
    TaskSlackRead,
    TaskStatusUpdate,
    TaskUpdate,
    TimeEntryCreate,
    TimeEntryRead,
    TimeEntryUpdate,
    TimeLogExportRow,
)
from app.projects.service import project_service, task_service, time_entry_service

router = APIRouter(prefix="/api/work/projects", tags=["work.projects"])
tasks_router = APIRouter(prefix="/api/work/tasks", tags=["work.tasks"])
time_entries_router = APIRouter(prefix="/api/work/time-entries", tags=["work.time_entries"])


@router.post("", response_model=ProjectRead, status_code=status.HTTP_201_CREATED)
def create_project(
    request: Request,
    dto: ProjectCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> ProjectRead | JSONResponse:
    try:
        require_permission(ctx, "work.projects.write")
        return project_service.create_project(db, ctx, dto)
    except HTTPException as exc:
        return failure_response(request, exc, "work_project_create_failed")


@router.get("", response_model=list[ProjectRead])
def list_projects(
    request: Request,
    is_template: bool | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[ProjectRead] | JSONResponse:
    try:
        require_permission(ctx, "work.projects.read")
        return project_service.list_projects(db, ctx, is_template=is_template, status_filter=status_filter)
    except HTTPException as exc:
        return failure_response(request, exc, "work_project_list_failed")


@router.get("/{project_id}", response_model=ProjectRead)
def get_project(
    request: Request,
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> ProjectRead | JSONResponse:
    try:
        require_permission(ctx, "work.projects.read")
        return project_service.get_project(db, ctx, project_id)
    except HTTPException as exc:
        return failure_response(request, exc, "work_project_get_failed")


@router.post("/{template_id}/instantiate", response_model=ProjectRead, status_code=status.HTTP_201_CREATED)
def create_project_from_template(
    request: Request,
    template_id: uuid.UUID,
    dto: ProjectFromTemplate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> ProjectRead | JSONResponse:
    try:
        require_permission(ctx, "work.projects.write")
        return project_service.create_from_template(db, ctx, template_id, dto)
    except HTTPException as exc:
        return failure_response(request, exc, "work_project_template_failed")


@router.get("/{project_id}/tasks", response_model=list[TaskRead])
def list_project_tasks(
    request: Request,
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[TaskRead] | JSONResponse:
    try:
        require_permission(ctx, "work.projects.read")
        return project_service.list_tasks(db, ctx, project_id)
    except HTTPException as exc:
        return failure_response(request, exc, "work_project_tasks_failed")


@router.put("/{project_id}/tasks/{task_id}", response_model=list[TaskRead])
def attach_project_task(
    request: Request,
    project_id: uuid.UUID,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[TaskRead] | JSONResponse:
    try:
        require_permission(ctx, "work.projects.write")
        return project_service.add_task(db, ctx, project_id, task_id)
    except HTTPException as exc:
        return failure_response(request, exc, "work_project_task_attach_failed")


@router.get("/{project_id}/tasks/ready", response_model=list[TaskRead])
def list_ready_tasks(
    request: Request,
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[TaskRead] | JSONResponse:
    try:
        require_permission(ctx, "work.projects.read")
        return project_service.list_ready_tasks(db, ctx, project_id)
    except HTTPException as exc:
        return failure_response(request, exc, "work_project_ready_tasks_failed")


@router.get("/{project_id}/tasks/blocked", response_model=list[TaskRead])
def list_blocked_tasks(
    request: Request,
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[TaskRead] | JSONResponse:
    try:
        require_permission(ctx, "work.projects.read")
        return project_service.list_blocked_tasks(db, ctx, project_id)
    except HTTPException as exc:
        return failure_response(request, exc, "work_project_blocked_tasks_failed")


@router.get("/{project_id}/critical-path", response_model=list[TaskRead])
def get_critical_path(
    request: Request,
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[TaskRead] | JSONResponse:
    try:
        require_permission(ctx, "work.projects.read")
        return project_service.get_critical_path(db, ctx, project_id)
    except HTTPException as exc:
        return failure_response(request, exc, "work_project_critical_path_failed")


@router.get("/{project_id}/tasks/{task_id}/slack", response_model=TaskSlackRead)
def get_task_slack(
    request: Request,
    project_id: uuid.UUID,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> TaskSlackRead | JSONResponse:
    try:
        require_permission(ctx, "work.projects.read")
        return project_service.get_task_slack(db, ctx, project_id, task_id)
    except HTTPException as exc:
        return failure_response(request, exc, "work_project_task_slack_failed")


@router.get("/{project_id}/timeline", response_model=ProjectTimelineRead)
def get_project_timeline(
    request: Request,
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> ProjectTimelineRead | JSONResponse:
    try:
        require_permission(ctx, "work.projects.read")
        return project_service.get_timeline(db, ctx, project_id)
    except HTTPException as exc:
        return failure_response(request, exc, "work_project_timeline_failed")


@router.get("/{project_id}/schedule-summary", response_model=ScheduleSummaryRead)
def get_schedule_summary(
    request: Request,
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> ScheduleSummaryRead | JSONResponse:
    try:
        require_permission(ctx, "work.projects.read")
        return project_service.get_schedule_summary(db, ctx, project_id)
    except HTTPException as exc:
        return failure_response(request, exc, "work_project_schedule_summary_failed")


@router.post("/{project_id}/members", response_model=ProjectMemberRead, status_code=status.HTTP_201_CREATED)
def add_project_member(
    request: Request,
    project_id: uuid.UUID,
    dto: ProjectMemberCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> ProjectMemberRead | JSONResponse:
    try:
        require_permission(ctx, "work.projects.write")
        return project_service.add_member(db, ctx, project_id, dto)
    except HTTPException as exc:
        return failure_response(request, exc, "work_project_member_add_failed")


@router.get("/{project_id}/members", response_model=list[ProjectMemberRead])
def list_project_members(
    request: Request,
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[ProjectMemberRead] | JSONResponse:
    try:
        require_permission(ctx, "work.projects.read")
        return project_service.list_members(db, ctx, project_id)
    except HTTPException as exc:
        return failure_response(request, exc, "work_project_members_failed")


@router.post("/{project_id}/percent-complete", response_model=ProjectRollupRead)
def recompute_project_percent_complete(
    request: Request,
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> ProjectRollupRead | JSONResponse:
    try:
        require_permission(ctx, "work.projects.write")
        return project_service.update_percent_complete(db, ctx, project_id)
    except HTTPException as exc:
        return failure_response(request, exc, "work_project_rollup_failed")


@router.post("/{project_id}/actual-cost", response_model=ProjectRollupRead)
def recompute_project_actual_cost(
    request: Request,
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> ProjectRollupRead | JSONResponse:
    try:
        require_permission(ctx, "work.projects.write")
        return project_service.update_actual_cost(db, ctx, project_id)
    except HTTPException as exc:
        return failure_response(request, exc, "work_project_rollup_failed")


@router.get("/{project_id}/budget-summary", response_model=BudgetSummaryRead)
def get_budget_summary(
    request: Request,
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> BudgetSummaryRead | JSONResponse:
    try:
        require_permission(ctx, "work.projects.read")
        return project_service.get_budget_summary(db, ctx, project_id)
    except HTTPException as exc:
        return failure_response(request, exc, "work_project_budget_summary_failed")


@router.get("/{project_id}/time-logs", response_model=list[TimeLogExportRow])
def export_time_logs(
    request: Request,
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[TimeLogExportRow] | JSONResponse:
    try:
        require_permission(ctx, "work.projects.read")
        return project_service.export_time_logs(db, ctx, project_id)
    except HTTPException as exc:
        return failure_response(request, exc, "work_project_time_logs_failed")


@tasks_router.post("", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task(
    request: Request,
    dto: TaskCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> TaskRead | JSONResponse:
    try:
        require_permission(ctx, "work.tasks.write")
        return task_service.create_task(db, ctx, dto)
    except HTTPException as exc:
        return failure_response(request, exc, "work_task_create_failed")


@tasks_router.get("/{task_id}", response_model=TaskRead)
def get_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> TaskRead | JSONResponse:
    try:
        require_permission(ctx, "work.tasks.read")
        return task_service.get_task(db, ctx, task_id)
    except HTTPException as exc:
        return failure_response(request, exc, "work_task_get_failed")


@tasks_router.patch("/{task_id}", response_model=TaskRead)
def update_task(
    request: Request,
    task_id: uuid.UUID,
    dto: TaskUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> TaskRead | JSONResponse:
    try:
        require_permission(ctx, "work.tasks.write")
        return task_service.update_task(db, ctx, task_id, dto)
    except HTTPException as exc:
        return failure_response(request, exc, "work_task_update_failed")


@tasks_router.delete("/{task_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> Any:
    try:
        require_permission(ctx, "work.tasks.write")
        task_service.soft_delete_task(db, ctx, task_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return failure_response(request, exc, "work_task_delete_failed")


@tasks_router.post("/{task_id}/dependencies", response_model=TaskScheduleRead)
def add_task_dependency(
    request: Request,
    task_id: uuid.UUID,
    dto: TaskDependencyCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> TaskScheduleRead | JSONResponse:
    try:
        require_permission(ctx, "work.tasks.write")
        return task_service.add_dependency(db, ctx, task_id, dto.depends_on_task_id)
    except HTTPException as exc:
        return failure_response(request, exc, "work_task_dependency_add_failed")


@tasks_router.delete("/{task_id}/dependencies/{depends_on_task_id}", response_model=TaskScheduleRead)
def remove_task_dependency(
    request: Request,
    task_id: uuid.UUID,
    depends_on_task_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> TaskScheduleRead | JSONResponse:
    try:
        require_permission(ctx, "work.tasks.write")
        return task_service.remove_dependency(db, ctx, task_id, depends_on_task_id)
    except HTTPException as exc:
        return failure_response(request, exc, "work_task_dependency_remove_failed")


@tasks_router.get("/{task_id}/schedule", response_model=TaskScheduleRead)
def get_task_schedule(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> TaskScheduleRead | JSONResponse:
    try:
        require_permission(ctx, "work.tasks.read")
        return task_service.get_schedule(db, ctx, task_id)
    except HTTPException as exc:
        return failure_response(request, exc, "work_task_schedule_failed")


@tasks_router.post("/{task_id}/status", response_model=TaskRead)
def change_task_status(
    request: Request,
    task_id: uuid.UUID,
    dto: TaskStatusUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> TaskRead | JSONResponse:
    try:
        require_permission(ctx, "work.tasks.write")
        return task_service.change_status(db, ctx, task_id, dto)
    except HTTPException as exc:
        return failure_response(request, exc, "work_task_status_failed")


@tasks_router.post("/{task_id}/percent-complete", response_model=TaskRead)
def recompute_task_percent_complete(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> TaskRead | JSONResponse:
    try:
        require_permission(ctx, "work.tasks.write")
        return task_service.update_percent_complete(db, ctx, task_id)
    except HTTPException as exc:
        return failure_response(request, exc, "work_task_percent_complete_failed")


@tasks_router.get("/{task_id}/billing", response_model=TaskBillingRead)
def get_task_billing(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> TaskBillingRead | JSONResponse:
    try:
        require_permission(ctx, "work.tasks.read")
        return task_service.get_billing(db, ctx, task_id)
    except HTTPException as exc:
        return failure_response(request, exc, "work_task_billing_failed")


@tasks_router.post("/{task_id}/time-entries", response_model=TimeEntryRead, status_code=status.HTTP_201_CREATED)
def log_time_entry(
    request: Request,
    task_id: uuid.UUID,
    dto: TimeEntryCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> TimeEntryRead | JSONResponse:
    try:
        require_permission(ctx, "work.time_entries.write")
        return time_entry_service.log_time(db, ctx, task_id, dto)
    except HTTPException as exc:
        return failure_response(request, exc, "work_time_entry_create_failed")


@time_entries_router.patch("/{entry_id}", response_model=TimeEntryRead)
def patch_time_entry(
    request: Request,
    entry_id: uuid.UUID,
    dto: TimeEntryUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> TimeEntryRead | JSONResponse:
    try:
        require_permission(ctx, "work.time_entries.write")
        return time_entry_service.update_time_entry(db, ctx, entry_id, dto)
    except HTTPException as exc:
        return failure_response(request, exc, "work_time_entry_update_failed")


@time_entries_router.delete("/{entry_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_time_entry(
    request: Request,
    entry_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> Any:
    try:
        require_permission(ctx, "work.time_entries.write")
        time_entry_service.delete_time_entry(db, ctx, entry_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return failure_response(request, exc, "work_time_entry_delete_failed")
