from app.workforce.api import router
from app.workforce.models import Employee, EmployeeAllocation
from app.workforce.schemas import AllocationCreate, AllocationRead, CapacitySummaryRead, EmployeeCreate, EmployeeRead
from app.workforce.service import WorkforceService, workforce_service

__all__ = [
    "router",
    "Employee",
    "EmployeeAllocation",
    "AllocationCreate",
    "AllocationRead",
    "CapacitySummaryRead",
    "EmployeeCreate",
    "EmployeeRead",
    "WorkforceService",
    "workforce_service",
]
