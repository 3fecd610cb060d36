from __future__ import annotations

from typing import Any


class DomainRuleError(Exception):
    """Business-rule violation raised before any write is persisted.

    Callers translate these into validation errors (HTTP 422 at the API
    boundary). They are never retried automatically.
    """

    code = "domain_rule_violation"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class CapacityExceededError(DomainRuleError):
    code = "capacity_exceeded"


class OverlappingTimeEntryError(DomainRuleError):
    code = "time_entry_overlap"


class DuplicateTimeEntryError(DomainRuleError):
    code = "time_entry_duplicate"


class CyclicHierarchyError(DomainRuleError):
    code = "cyclic_hierarchy"


class CyclicDependencyError(DomainRuleError):
    code = "cyclic_dependency"


class DependencyBlockedError(DomainRuleError):
    code = "dependency_blocked"


class InvalidTemplateOperationError(DomainRuleError):
    code = "invalid_template_operation"
