from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class AccountCreate(BaseModel):
    name: str = Field(min_length=1)
    tenant_id: str | None = None
    status: str = "Active"
    parent_id: UUID | None = None


class AccountUpdate(BaseModel):
    name: str | None = None
    status: str | None = None
    parent_id: UUID | None = None


class AccountRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    name: str
    status: str
    parent_id: UUID | None
    created_at: datetime
    updated_at: datetime


class CompanyCreate(BaseModel):
    name: str = Field(min_length=1)
    tenant_id: str | None = None
    registration_number: str | None = None
    parent_company_id: UUID | None = None


class CompanyUpdate(BaseModel):
    name: str | None = None
    registration_number: str | None = None
    parent_company_id: UUID | None = None


class CompanyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    name: str
    registration_number: str | None
    parent_company_id: UUID | None
    created_at: datetime
    updated_at: datetime


class HierarchyCycleCheckRead(BaseModel):
    node_id: UUID
    parent_id: UUID
    would_create_cycle: bool
