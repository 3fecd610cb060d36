from __future__ import annotations

from collections.abc import Generator
from decimal import Decimal

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
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_auth_user() -> AuthUser:
        # Tenant comes from the x-tenant-id header in these tests.
        return AuthUser(sub="rm-1", roles=["admin"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[auth_get_current_user] = override_auth_user
    with TestClient(app, headers={"x-tenant-id": "tenant-a"}) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_allocation_capacity_flow(client: TestClient) -> None:
    project = client.post("/api/work/projects", json={"name": "Platform"})
    assert project.status_code == 201
    assert project.json()["tenant_id"] == "tenant-a"

    employee = client.post("/api/workforce/employees", json={"name": "Jordan", "capacity_hours_per_week": "40"})
    assert employee.status_code == 201
    employee_id = employee.json()["id"]

    first = client.post(
        f"/api/workforce/employees/{employee_id}/allocations",
        json={
            "target": {"type": "project", "id": project.json()["id"]},
            "allocation_percentage": "70",
            "start_date": "2026-01-01",
            "end_date": "2026-06-30",
        },
    )
    assert first.status_code == 201
    assert first.json()["target"]["type"] == "project"

    rejected = client.post(
        f"/api/workforce/employees/{employee_id}/allocations",
        json={
            "target": {"type": "project", "id": project.json()["id"]},
            "allocation_percentage": "40",
            "start_date": "2026-06-01",
            "end_date": "2026-12-31",
        },
    )
    assert rejected.status_code == 422
    body = rejected.json()
    assert body["code"] == "capacity_exceeded"
    assert body["message"] == "Cannot allocate 40% - would exceed capacity. Current allocation: 70%, Available: 30%"
    assert body["details"]["employee_id"] == employee_id

    capacity = client.get(
        f"/api/workforce/employees/{employee_id}/capacity",
        params={"start_date": "2026-03-01", "end_date": "2026-03-31"},
    )
    assert capacity.status_code == 200
    summary = capacity.json()
    assert Decimal(summary["total_allocation"]) == Decimal("70")
    assert Decimal(summary["available_capacity"]) == Decimal("30")
    assert summary["is_over_allocated"] is False
    assert Decimal(summary["available_hours_per_week"]) == Decimal("12.00")

    listed = client.get(f"/api/workforce/employees/{employee_id}/allocations")
    assert len(listed.json()) == 1


def test_unknown_target_type_is_rejected(client: TestClient) -> None:
    employee = client.post("/api/workforce/employees", json={"name": "Morgan"})
    assert employee.status_code == 201

    response = client.post(
        f"/api/workforce/employees/{employee.json()['id']}/allocations",
        json={"target": {"type": "client", "id": employee.json()["id"]}, "allocation_percentage": "10"},
    )
    assert response.status_code == 422


def test_missing_employee_returns_not_found(client: TestClient) -> None:
    response = client.get("/api/workforce/employees/00000000-0000-4000-8000-000000000000/capacity")

    assert response.status_code == 404
    assert response.json()["code"] == "workforce_capacity_failed"
