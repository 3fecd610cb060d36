from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.auth import AuthUser, get_current_user as auth_get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def roles() -> list[str]:
    return ["crm.accounts.read", "crm.accounts.write"]


@pytest.fixture()
def client(db_session: Session, roles: list[str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="user-1", roles=roles, tenant_id="tenant-a")

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[auth_get_current_user] = override_auth_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create(client: TestClient, path: str, **payload) -> dict:  # type: ignore[no-untyped-def]
    response = client.post(path, json=payload)
    assert response.status_code == 201
    return response.json()


def test_account_cycle_is_rejected_with_error_envelope(client: TestClient) -> None:
    root = _create(client, "/api/crm/accounts", name="Root")
    child = _create(client, "/api/crm/accounts", name="Child", parent_id=root["id"])

    response = client.patch(
        f"/api/crm/accounts/{root['id']}",
        json={"parent_id": child["id"]},
        headers={"X-Correlation-Id": "cycle-corr-1"},
    )

    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "cyclic_hierarchy"
    assert body["message"] == "Cannot set parent: this would create a circular account hierarchy."
    assert body["correlation_id"] == "cycle-corr-1"

    unchanged = client.get(f"/api/crm/accounts/{root['id']}")
    assert unchanged.json()["parent_id"] is None


def test_would_create_cycle_endpoint(client: TestClient) -> None:
    root = _create(client, "/api/crm/accounts", name="Root")
    child = _create(client, "/api/crm/accounts", name="Child", parent_id=root["id"])
    other = _create(client, "/api/crm/accounts", name="Other")

    cyclic = client.get(f"/api/crm/accounts/{root['id']}/would-create-cycle", params={"parent_id": child["id"]})
    assert cyclic.status_code == 200
    assert cyclic.json()["would_create_cycle"] is True

    fine = client.get(f"/api/crm/accounts/{other['id']}/would-create-cycle", params={"parent_id": child["id"]})
    assert fine.json()["would_create_cycle"] is False


def test_reparent_ancestors_and_children(client: TestClient) -> None:
    root = _create(client, "/api/crm/accounts", name="Root")
    middle = _create(client, "/api/crm/accounts", name="Middle")
    leaf = _create(client, "/api/crm/accounts", name="Leaf", parent_id=middle["id"])

    moved = client.patch(f"/api/crm/accounts/{middle['id']}", json={"parent_id": root["id"]})
    assert moved.status_code == 200
    assert moved.json()["parent_id"] == root["id"]

    ancestors = client.get(f"/api/crm/accounts/{leaf['id']}/ancestors")
    assert [item["name"] for item in ancestors.json()] == ["Middle", "Root"]

    children = client.get(f"/api/crm/accounts/{root['id']}/children")
    assert [item["id"] for item in children.json()] == [middle["id"]]


def test_deleted_account_is_not_found(client: TestClient) -> None:
    account = _create(client, "/api/crm/accounts", name="Gone")

    deleted = client.delete(f"/api/crm/accounts/{account['id']}")
    assert deleted.status_code == 200
    assert deleted.json() == {"status": "deleted"}

    response = client.get(f"/api/crm/accounts/{account['id']}")
    assert response.status_code == 404
    assert response.json()["code"] == "crm_account_get_failed"


def test_company_cycle_is_rejected(client: TestClient) -> None:
    holding = _create(client, "/api/crm/companies", name="Holding")
    subsidiary = _create(client, "/api/crm/companies", name="Subsidiary", parent_company_id=holding["id"])

    response = client.patch(f"/api/crm/companies/{holding['id']}", json={"parent_company_id": subsidiary["id"]})

    assert response.status_code == 422
    assert response.json()["code"] == "cyclic_hierarchy"


@pytest.mark.parametrize("roles", [["crm.accounts.read"]])
def test_write_requires_permission(client: TestClient) -> None:
    response = client.post("/api/crm/accounts", json={"name": "Nope"})

    assert response.status_code == 403
    body = response.json()
    assert body["code"] == "crm_account_create_failed"
    assert body["message"] == "Missing permission: crm.accounts.write"
