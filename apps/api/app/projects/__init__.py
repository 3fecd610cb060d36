from app.projects.api import router, tasks_router, time_entries_router
from app.projects.models import Project, ProjectMember, Task, TaskTimeEntry
from app.projects.schemas import (
    BudgetSummaryRead,
    ProjectCreate,
    ProjectRead,
    ProjectTimelineRead,
    ScheduleSummaryRead,
    TaskCreate,
    TaskRead,
    TaskScheduleRead,
    TaskSlackRead,
    TaskUpdate,
    TimeEntryCreate,
    TimeEntryRead,
    TimeLogExportRow,
)
from app.projects.service import (
    ProjectService,
    TaskService,
    TimeEntryService,
    project_service,
    task_service,
    time_entry_service,
)

__all__ = [
    "router",
    "tasks_router",
    "time_entries_router",
    "Project",
    "ProjectMember",
    "Task",
    "TaskTimeEntry",
    "BudgetSummaryRead",
    "ProjectCreate",
    "ProjectRead",
    "ProjectTimelineRead",
    "ScheduleSummaryRead",
    "TaskCreate",
    "TaskRead",
    "TaskScheduleRead",
    "TaskSlackRead",
    "TaskUpdate",
    "TimeEntryCreate",
    "TimeEntryRead",
    "TimeLogExportRow",
    "ProjectService",
    "TaskService",
    "TimeEntryService",
    "project_service",
    "task_service",
    "time_entry_service",
]
