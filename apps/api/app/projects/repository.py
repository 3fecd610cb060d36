from __future__ import annotations

from app.platform.security.repository import BaseRepository


class ProjectRepository(BaseRepository):
    resource = "work.project"


class TaskRepository(BaseRepository):
    resource = "work.task"


class TimeEntryRepository(BaseRepository):
    resource = "work.time_entry"
