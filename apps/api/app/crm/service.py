from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from pydantic import BaseModel
from sqlalchemy import Select, and_, select
from sqlalchemy.orm import Session

from app import audit, events
from app.core.config import get_settings
from app.core.errors import CyclicHierarchyError
from app.crm.hierarchy import iter_ancestors, would_create_cycle
from app.crm.models import CRMAccount, CRMCompany
from app.crm.repositories import AccountRepository, CompanyRepository
from app.crm.schemas import (
    AccountCreate,
    AccountRead,
    AccountUpdate,
    CompanyCreate,
    CompanyRead,
    CompanyUpdate,
)
from app.metrics import observe_domain_rejection
from app.platform.security.context import AuthContext
from app.platform.security.errors import AuthorizationError

logger = logging.getLogger("app.crm")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HierarchyService:
    """Create and re-parent rows of a self-referencing table.

    Subclasses bind the model, its parent column and the names used for
    audit entries, events and error messages.
    """

    model: Any = None
    parent_field = "parent_id"
    label = "node"
    entity_type = ""
    parent_changed_event = ""
    read_schema: type[BaseModel] = BaseModel

    def __init__(self, repository: Any) -> None:
        self.repository = repository

    def create(self, session: Session, ctx: AuthContext, dto: Any) -> Any:
        payload = dto.model_dump(mode="python")
        try:
            tenant_id = self.repository.resolve_tenant(ctx, payload.pop("tenant_id", None))
        except AuthorizationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

        name = payload.pop("name").strip()
        if not name:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="name is required")

        parent_id = payload.get(self.parent_field)
        if parent_id is not None:
            self._get_visible(session, ctx, parent_id, detail=f"parent {self.label} not found")

        row = self.model(tenant_id=tenant_id, name=name, **payload)
        session.add(row)
        session.flush()

        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(row.id),
            action="create",
            before=None,
            after=self._to_read(row).model_dump(mode="json"),
            correlation_id=ctx.correlation_id,
            tenant_id=tenant_id,
        )
        session.commit()
        session.refresh(row)
        return self._to_read(row)

    def get(self, session: Session, ctx: AuthContext, node_id: uuid.UUID) -> Any:
        return self._to_read(self._get_visible(session, ctx, node_id))

    def update(self, session: Session, ctx: AuthContext, node_id: uuid.UUID, dto: Any) -> Any:
        row = self._get_visible(session, ctx, node_id)
        before = self._to_read(row).model_dump(mode="json")
        fields_set = dto.model_fields_set

        changes: dict[str, Any] = {}
        for field_name in fields_set:
            if field_name == self.parent_field:
                continue
            value = getattr(dto, field_name)
            if field_name in {"name", "status"}:
                if value is None or not value.strip():
                    raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"{field_name} cannot be empty")
                value = value.strip()
            changes[field_name] = value

        previous_parent_id = getattr(row, self.parent_field)
        parent_changed = False
        if self.parent_field in fields_set:
            new_parent_id = getattr(dto, self.parent_field)
            if new_parent_id is not None:
                self._get_visible(session, ctx, new_parent_id, detail=f"parent {self.label} not found")
                if self.would_create_cycle(session, ctx, row.id, new_parent_id):
                    observe_domain_rejection(CyclicHierarchyError.code)
                    logger.warning(
                        "crm.hierarchy.cycle_rejected",
                        extra={"rule": CyclicHierarchyError.code, "entity_type": self.entity_type, "entity_id": str(row.id)},
                    )
                    raise CyclicHierarchyError(
                        f"Cannot set parent: this would create a circular {self.label} hierarchy.",
                        details={f"{self.label}_id": str(row.id), self.parent_field: str(new_parent_id)},
                    )
            if new_parent_id != previous_parent_id:
                changes[self.parent_field] = new_parent_id
                parent_changed = True

        if not changes:
            return self._to_read(row)

        for field_name, value in changes.items():
            setattr(row, field_name, value)
        row.row_version += 1
        session.flush()

        after = self._to_read(row).model_dump(mode="json")
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(row.id),
            action="update",
            before=before,
            after=after,
            correlation_id=ctx.correlation_id,
            tenant_id=row.tenant_id,
        )
        if parent_changed:
            events.publish(
                events.build_envelope(
                    self.parent_changed_event,
                    actor_user_id=ctx.user_id,
                    tenant_id=row.tenant_id,
                    correlation_id=ctx.correlation_id,
                    payload={
                        f"{self.label}_id": str(row.id),
                        "previous_parent_id": str(previous_parent_id) if previous_parent_id else None,
                        "parent_id": after[self.parent_field],
                    },
                )
            )
        session.commit()
        session.refresh(row)
        return self._to_read(row)

    def soft_delete(self, session: Session, ctx: AuthContext, node_id: uuid.UUID) -> None:
        row = self._get_visible(session, ctx, node_id)
        before = self._to_read(row).model_dump(mode="json")
        row.deleted_at = utcnow()
        row.row_version += 1
        audit.record(
            actor_user_id=ctx.user_id,
            entity_type=self.entity_type,
            entity_id=str(row.id),
            action="delete",
            before=before,
            after=None,
            correlation_id=ctx.correlation_id,
            tenant_id=row.tenant_id,
        )
        session.commit()

    def would_create_cycle(
        self,
        session: Session,
        ctx: AuthContext,
        node_id: uuid.UUID | None,
        parent_id: uuid.UUID | None,
    ) -> bool:
        return would_create_cycle(
            node_id,
            parent_id,
            self._stored_parent_lookup(session),
            max_depth=get_settings().hierarchy_max_depth,
        )

    def get_ancestors(self, session: Session, ctx: AuthContext, node_id: uuid.UUID) -> list[Any]:
        self._get_visible(session, ctx, node_id)
        ancestor_ids = list(
            iter_ancestors(node_id, self._parent_lookup(session, ctx), max_depth=get_settings().hierarchy_max_depth)
        )
        return [self._to_read(self._get_visible(session, ctx, ancestor_id)) for ancestor_id in ancestor_ids]

    def list_children(self, session: Session, ctx: AuthContext, node_id: uuid.UUID) -> list[Any]:
        self._get_visible(session, ctx, node_id)
        parent_column = getattr(self.model, self.parent_field)
        stmt: Select[Any] = select(self.model).where(
            and_(parent_column == node_id, self.model.deleted_at.is_(None))
        )
        stmt = self.repository.apply_scope_query(stmt, ctx)
        rows = session.scalars(stmt.order_by(self.model.name.asc())).all()
        return [self._to_read(row) for row in rows]

    def _parent_lookup(self, session: Session, ctx: AuthContext):  # type: ignore[no-untyped-def]
        def parent_of(node_id: uuid.UUID) -> uuid.UUID | None:
            row = self._load(session, ctx, node_id)
            if row is None:
                return None
            return getattr(row, self.parent_field)

        return parent_of

    def _stored_parent_lookup(self, session: Session):  # type: ignore[no-untyped-def]
        """Follow stored parent links, including soft-deleted rows, so a cycle cannot hide behind one."""
        parent_column = getattr(self.model, self.parent_field)

        def parent_of(node_id: uuid.UUID) -> uuid.UUID | None:
            return session.scalar(select(parent_column).where(self.model.id == node_id))

        return parent_of

    def _load(self, session: Session, ctx: AuthContext, node_id: uuid.UUID) -> Any:
        stmt: Select[Any] = select(self.model).where(
            and_(self.model.id == node_id, self.model.deleted_at.is_(None))
        )
        stmt = self.repository.apply_scope_query(stmt, ctx)
        return session.scalar(stmt)

    def _get_visible(self, session: Session, ctx: AuthContext, node_id: uuid.UUID, *, detail: str | None = None) -> Any:
        row = self._load(session, ctx, node_id)
        if row is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail or f"{self.label} not found")
        return row

    def _to_read(self, row: Any) -> Any:
        return self.read_schema.model_validate(row)


class AccountService(HierarchyService):
    model = CRMAccount
    parent_field = "parent_id"
    label = "account"
    entity_type = "crm.account"
    parent_changed_event = "crm.account.parent_changed"
    read_schema = AccountRead

    def __init__(self) -> None:
        super().__init__(AccountRepository())

    def create_account(self, session: Session, ctx: AuthContext, dto: AccountCreate) -> AccountRead:
        return self.create(session, ctx, dto)

    def get_account(self, session: Session, ctx: AuthContext, account_id: uuid.UUID) -> AccountRead:
        return self.get(session, ctx, account_id)

    def update_account(self, session: Session, ctx: AuthContext, account_id: uuid.UUID, dto: AccountUpdate) -> AccountRead:
        return self.update(session, ctx, account_id, dto)

    def soft_delete_account(self, session: Session, ctx: AuthContext, account_id: uuid.UUID) -> None:
        self.soft_delete(session, ctx, account_id)


class CompanyService(HierarchyService):
    model = CRMCompany
    parent_field = "parent_company_id"
    label = "company"
    entity_type = "crm.company"
    parent_changed_event = "crm.company.parent_changed"
    read_schema = CompanyRead

    def __init__(self) -> None:
        super().__init__(CompanyRepository())

    def create_company(self, session: Session, ctx: AuthContext, dto: CompanyCreate) -> CompanyRead:
        return self.create(session, ctx, dto)

    def get_company(self, session: Session, ctx: AuthContext, company_id: uuid.UUID) -> CompanyRead:
        return self.get(session, ctx, company_id)

    def update_company(self, session: Session, ctx: AuthContext, company_id: uuid.UUID, dto: CompanyUpdate) -> CompanyRead:
        return self.update(session, ctx, company_id, dto)

    def soft_delete_company(self, session: Session, ctx: AuthContext, company_id: uuid.UUID) -> None:
        self.soft_delete(session, ctx, company_id)


account_service = AccountService()
company_service = CompanyService()
