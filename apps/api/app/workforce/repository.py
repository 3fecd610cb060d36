from __future__ import annotations

from app.platform.security.repository import BaseRepository


class EmployeeRepository(BaseRepository):
    resource = "workforce.employee"


class AllocationRepository(BaseRepository):
    resource = "workforce.allocation"
