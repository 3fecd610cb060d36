from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import HTTPException
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.config import get_settings
from app.core.database import Base
from app.core.errors import CyclicHierarchyError
from app.crm.models import CRMAccount
from app.crm.schemas import AccountCreate, AccountUpdate, CompanyCreate, CompanyUpdate
from app.crm.service import account_service, company_service
from app.platform.security.context import AuthContext


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def ctx() -> AuthContext:
    return AuthContext(user_id="u1", tenant_id="tenant-a", permissions=["crm.accounts.read", "crm.accounts.write"])


def _chain(session: Session, ctx: AuthContext) -> tuple[uuid.UUID, uuid.UUID, uuid.UUID]:
    root = account_service.create_account(session, ctx, AccountCreate(name="Root"))
    child = account_service.create_account(session, ctx, AccountCreate(name="Child", parent_id=root.id))
    grandchild = account_service.create_account(session, ctx, AccountCreate(name="Grandchild", parent_id=child.id))
    return root.id, child.id, grandchild.id


def test_assigning_descendant_as_parent_is_rejected(db_session: Session, ctx: AuthContext) -> None:
    root_id, _child_id, grandchild_id = _chain(db_session, ctx)

    with pytest.raises(CyclicHierarchyError) as exc_info:
        account_service.update_account(db_session, ctx, root_id, AccountUpdate(parent_id=grandchild_id))
    assert exc_info.value.message == "Cannot set parent: this would create a circular account hierarchy."

    root = db_session.get(CRMAccount, root_id)
    assert root is not None
    assert root.parent_id is None


def test_self_parent_is_rejected(db_session: Session, ctx: AuthContext) -> None:
    root_id, _child_id, _grandchild_id = _chain(db_session, ctx)

    with pytest.raises(CyclicHierarchyError):
        account_service.update_account(db_session, ctx, root_id, AccountUpdate(parent_id=root_id))


def test_reparenting_and_detaching_publish_events(db_session: Session, ctx: AuthContext) -> None:
    root_id, child_id, grandchild_id = _chain(db_session, ctx)
    other = account_service.create_account(db_session, ctx, AccountCreate(name="Other"))

    moved = account_service.update_account(db_session, ctx, grandchild_id, AccountUpdate(parent_id=other.id))
    assert moved.parent_id == other.id

    detached = account_service.update_account(db_session, ctx, child_id, AccountUpdate(parent_id=None))
    assert detached.parent_id is None

    parent_events = [item for item in events.published_events if item["event_type"] == "crm.account.parent_changed"]
    assert len(parent_events) == 2
    assert parent_events[0]["payload"]["previous_parent_id"] == str(child_id)
    assert parent_events[0]["payload"]["parent_id"] == str(other.id)
    assert parent_events[1]["payload"]["previous_parent_id"] == str(root_id)
    assert parent_events[1]["payload"]["parent_id"] is None


def test_would_create_cycle_query_does_not_write(db_session: Session, ctx: AuthContext) -> None:
    root_id, child_id, grandchild_id = _chain(db_session, ctx)

    assert account_service.would_create_cycle(db_session, ctx, root_id, grandchild_id) is True
    assert account_service.would_create_cycle(db_session, ctx, grandchild_id, root_id) is False
    assert account_service.would_create_cycle(db_session, ctx, child_id, None) is False
    assert [item.id for item in account_service.get_ancestors(db_session, ctx, grandchild_id)] == [child_id, root_id]
    assert [item.id for item in account_service.list_children(db_session, ctx, root_id)] == [child_id]


def test_missing_parent_returns_not_found(db_session: Session, ctx: AuthContext) -> None:
    with pytest.raises(HTTPException) as exc_info:
        account_service.create_account(db_session, ctx, AccountCreate(name="Orphan", parent_id=uuid.uuid4()))
    assert exc_info.value.status_code == 404


def test_soft_deleted_parent_is_not_visible(db_session: Session, ctx: AuthContext) -> None:
    root_id, child_id, _grandchild_id = _chain(db_session, ctx)
    account_service.soft_delete_account(db_session, ctx, root_id)

    with pytest.raises(HTTPException) as exc_info:
        account_service.update_account(db_session, ctx, child_id, AccountUpdate(parent_id=root_id))
    assert exc_info.value.status_code == 404


def test_cycle_through_soft_deleted_ancestor_is_rejected(db_session: Session, ctx: AuthContext) -> None:
    root_id, child_id, grandchild_id = _chain(db_session, ctx)
    account_service.soft_delete_account(db_session, ctx, child_id)

    assert account_service.would_create_cycle(db_session, ctx, root_id, grandchild_id) is True
    with pytest.raises(CyclicHierarchyError):
        account_service.update_account(db_session, ctx, root_id, AccountUpdate(parent_id=grandchild_id))

    root = db_session.get(CRMAccount, root_id)
    assert root is not None
    assert root.parent_id is None


def test_other_tenant_rows_are_invisible(db_session: Session, ctx: AuthContext) -> None:
    root_id, _child_id, _grandchild_id = _chain(db_session, ctx)
    other_ctx = AuthContext(user_id="u2", tenant_id="tenant-b")

    with pytest.raises(HTTPException) as exc_info:
        account_service.get_account(db_session, other_ctx, root_id)
    assert exc_info.value.status_code == 404


def test_company_hierarchy_rejects_cycles(db_session: Session, ctx: AuthContext) -> None:
    holding = company_service.create_company(db_session, ctx, CompanyCreate(name="Holding", registration_number="HR-1"))
    subsidiary = company_service.create_company(
        db_session, ctx, CompanyCreate(name="Subsidiary", parent_company_id=holding.id)
    )

    with pytest.raises(CyclicHierarchyError) as exc_info:
        company_service.update_company(db_session, ctx, holding.id, CompanyUpdate(parent_company_id=subsidiary.id))
    assert "circular company hierarchy" in exc_info.value.message

    renamed = company_service.update_company(db_session, ctx, subsidiary.id, CompanyUpdate(name="Subsidiary EU"))
    assert renamed.name == "Subsidiary EU"
    assert renamed.parent_company_id == holding.id
