from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.errors import DomainRuleError
from app.platform.security.context import AuthContext
from app.platform.security.errors import AuthorizationError


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def _request_correlation_id(request: Request) -> str | None:
    return get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=_request_correlation_id(request),
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


async def domain_error_handler(request: Request, exc: DomainRuleError) -> JSONResponse:
    return error_response(request, status_code=422, code=exc.code, message=exc.message, details=exc.details or None)


async def authorization_error_handler(request: Request, exc: AuthorizationError) -> JSONResponse:
    return error_response(request, status_code=403, code="forbidden", message=str(exc))


def get_auth_context(
    request: Request,
    auth_user: AuthUser = Depends(get_auth_user),
    tenant_id_header: str | None = Header(default=None, alias="x-tenant-id"),
) -> AuthContext:
    roles = [str(item) for item in auth_user.roles]
    normalized = {item.lower() for item in roles}

    return AuthContext(
        user_id=auth_user.sub,
        tenant_id=tenant_id_header or auth_user.tenant_id,
        correlation_id=_request_correlation_id(request),
        is_super_admin=("admin" in normalized or "system.admin" in normalized),
        roles=roles,
        permissions=roles,
    )


def require_permission(ctx: AuthContext, permission: str) -> None:
    if not ctx.has_permission(permission):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def failure_response(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )
