from __future__ import annotations

from typing import Any

from sqlalchemy.sql import Select

from app.platform.security.context import AuthContext
from app.platform.security.errors import AuthorizationError


def is_admin_bypass(ctx: AuthContext) -> bool:
    if ctx.is_super_admin:
        return True
    role_set = {item.lower() for item in ctx.roles}
    permission_set = {item.lower() for item in ctx.permissions}
    return "admin" in role_set or "admin" in permission_set or "system.admin" in permission_set


class BaseRepository:
    """Tenant scoping shared by every bounded context.

    Rows carry a ``tenant_id`` column; callers outside the admin bypass only
    ever see or write rows of their own tenant.
    """

    resource = ""

    def apply_scope_query(self, query: Select[Any], ctx: AuthContext) -> Select[Any]:
        if is_admin_bypass(ctx) or ctx.tenant_id is None:
            return query

        for description in query.column_descriptions:
            model = description.get("entity")
            if model is not None and hasattr(model, "tenant_id"):
                query = query.where(getattr(model, "tenant_id") == ctx.tenant_id)
        return query

    def validate_write_scope(self, tenant_id: str, ctx: AuthContext) -> None:
        if is_admin_bypass(ctx) or ctx.tenant_id is None:
            return
        if tenant_id != ctx.tenant_id:
            raise AuthorizationError(f"Write to tenant '{tenant_id}' is outside scope for resource '{self.resource}'")

    def resolve_tenant(self, ctx: AuthContext, requested: str | None = None) -> str:
        tenant_id = requested or ctx.tenant_id
        if not tenant_id:
            raise AuthorizationError(f"tenant_id is required for resource '{self.resource}'")
        self.validate_write_scope(tenant_id, ctx)
        return tenant_id
