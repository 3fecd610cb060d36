from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.deps import failure_response, get_auth_context, require_permission
from app.core.database import get_db
from app.crm.schemas import (
    AccountCreate,
    AccountRead,
    AccountUpdate,
    CompanyCreate,
    CompanyRead,
    CompanyUpdate,
    HierarchyCycleCheckRead,
)
from app.crm.service import account_service, company_service
from app.platform.security.context import AuthContext

router = APIRouter(prefix="/api/crm/accounts", tags=["crm.accounts"])
companies_router = APIRouter(prefix="/api/crm/companies", tags=["crm.companies"])


@router.post("", response_model=AccountRead, status_code=status.HTTP_201_CREATED)
def create_account(
    request: Request,
    dto: AccountCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> AccountRead | JSONResponse:
    try:
        require_permission(ctx, "crm.accounts.write")
        return account_service.create_account(db, ctx, dto)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_account_create_failed")


@router.get("/{account_id}", response_model=AccountRead)
def get_account(
    request: Request,
    account_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> AccountRead | JSONResponse:
    try:
        require_permission(ctx, "crm.accounts.read")
        return account_service.get_account(db, ctx, account_id)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_account_get_failed")


@router.patch("/{account_id}", response_model=AccountRead)
def patch_account(
    request: Request,
    account_id: uuid.UUID,
    dto: AccountUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> AccountRead | JSONResponse:
    try:
        require_permission(ctx, "crm.accounts.write")
        return account_service.update_account(db, ctx, account_id, dto)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_account_update_failed")


@router.delete("/{account_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_account(
    request: Request,
    account_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> Any:
    try:
        require_permission(ctx, "crm.accounts.write")
        account_service.soft_delete_account(db, ctx, account_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return failure_response(request, exc, "crm_account_delete_failed")


@router.get("/{account_id}/ancestors", response_model=list[AccountRead])
def list_account_ancestors(
    request: Request,
    account_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[AccountRead] | JSONResponse:
    try:
        require_permission(ctx, "crm.accounts.read")
        return account_service.get_ancestors(db, ctx, account_id)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_account_ancestors_failed")


@router.get("/{account_id}/children", response_model=list[AccountRead])
def list_account_children(
    request: Request,
    account_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[AccountRead] | JSONResponse:
    try:
        require_permission(ctx, "crm.accounts.read")
        return account_service.list_children(db, ctx, account_id)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_account_children_failed")


@router.get("/{account_id}/would-create-cycle", response_model=HierarchyCycleCheckRead)
def check_account_cycle(
    request: Request,
    account_id: uuid.UUID,
    parent_id: uuid.UUID = Query(),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> HierarchyCycleCheckRead | JSONResponse:
    try:
        require_permission(ctx, "crm.accounts.read")
        account_service.get_account(db, ctx, account_id)
        return HierarchyCycleCheckRead(
            node_id=account_id,
            parent_id=parent_id,
            would_create_cycle=account_service.would_create_cycle(db, ctx, account_id, parent_id),
        )
    except HTTPException as exc:
        return failure_response(request, exc, "crm_account_cycle_check_failed")


@companies_router.post("", response_model=CompanyRead, status_code=status.HTTP_201_CREATED)
def create_company(
    request: Request,
    dto: CompanyCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> CompanyRead | JSONResponse:
    try:
        require_permission(ctx, "crm.accounts.write")
        return company_service.create_company(db, ctx, dto)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_company_create_failed")


@companies_router.get("/{company_id}", response_model=CompanyRead)
def get_company(
    request: Request,
    company_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> CompanyRead | JSONResponse:
    try:
        require_permission(ctx, "crm.accounts.read")
        return company_service.get_company(db, ctx, company_id)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_company_get_failed")


@companies_router.patch("/{company_id}", response_model=CompanyRead)
def patch_company(
    request: Request,
    company_id: uuid.UUID,
    dto: CompanyUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> CompanyRead | JSONResponse:
    try:
        require_permission(ctx, "crm.accounts.write")
        return company_service.update_company(db, ctx, company_id, dto)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_company_update_failed")


@companies_router.get("/{company_id}/ancestors", response_model=list[CompanyRead])
def list_company_ancestors(
    request: Request,
    company_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[CompanyRead] | JSONResponse:
    try:
        require_permission(ctx, "crm.accounts.read")
        return company_service.get_ancestors(db, ctx, company_id)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_company_ancestors_failed")


@companies_router.get("/{company_id}/children", response_model=list[CompanyRead])
def list_company_children(
    request: Request,
    company_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[CompanyRead] | JSONResponse:
    try:
        require_permission(ctx, "crm.accounts.read")
        return company_service.list_children(db, ctx, company_id)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_company_children_failed")


@companies_router.get("/{company_id}/would-create-cycle", response_model=HierarchyCycleCheckRead)
def check_company_cycle(
    request: Request,
    company_id: uuid.UUID,
    parent_id: uuid.UUID = Query(),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> HierarchyCycleCheckRead | JSONResponse:
    try:
        require_permission(ctx, "crm.accounts.read")
        company_service.get_company(db, ctx, company_id)
        return HierarchyCycleCheckRead(
            node_id=company_id,
            parent_id=parent_id,
            would_create_cycle=company_service.would_create_cycle(db, ctx, company_id, parent_id),
        )
    except HTTPException as exc:
        return failure_response(request, exc, "crm_company_cycle_check_failed")
