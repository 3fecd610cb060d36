from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class AuthContext:
    """Explicit caller context threaded through every service call."""

    user_id: str
    tenant_id: str | None = None
    correlation_id: str | None = None
    is_super_admin: bool = False
    roles: list[str] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)

    def has_permission(self, permission: str) -> bool:
        return self.is_super_admin or permission in self.permissions
