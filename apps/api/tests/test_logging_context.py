from __future__ import annotations

import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import AuthUser, get_current_user as auth_get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.middleware.rate_limit import reset_rate_limiter
from app.main import app


ALL_ROLES = [
    "crm.accounts.read",
    "crm.accounts.write",
    "work.projects.read",
    "work.projects.write",
    "workforce.allocations.read",
    "workforce.allocations.write",
]


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
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="user-1", roles=ALL_ROLES, tenant_id="tenant-a")

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[auth_get_current_user] = override_auth_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    account_id = uuid.uuid4()
    path = f"/api/crm/accounts/{account_id}"
    response = client.get(path, headers={"X-Correlation-Id": "abc-123", "X-Tenant-Id": "tenant-a"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/accounts/{id}"
        and getattr(record, "status_code", None) == 404
        and getattr(record, "tenant_id", None) == "tenant-a"
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_rule_rejection_is_logged_with_rule_and_correlation_id(
    client: TestClient,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)

    project = client.post("/api/work/projects", json={"name": "Busy"})
    assert project.status_code == 201
    employee = client.post("/api/workforce/employees", json={"name": "Riley"})
    assert employee.status_code == 201
    employee_id = employee.json()["id"]
    allocation = {
        "target": {"type": "project", "id": project.json()["id"]},
        "allocation_percentage": "80",
        "start_date": "2026-01-01",
        "end_date": "2026-01-31",
    }
    assert client.post(f"/api/workforce/employees/{employee_id}/allocations", json=allocation).status_code == 201

    rejected = client.post(
        f"/api/workforce/employees/{employee_id}/allocations",
        json=allocation,
        headers={"X-Correlation-Id": "log-rule-1"},
    )
    assert rejected.status_code == 422

    rule_records = [record for record in caplog.records if record.name == "app.workforce"]
    assert any(
        record.getMessage() == "workforce.allocation.capacity_exceeded"
        and record.levelno == logging.WARNING
        and getattr(record, "rule", None) == "capacity_exceeded"
        and getattr(record, "employee_id", None) == employee_id
        and getattr(record, "correlation_id", None) == "log-rule-1"
        for record in rule_records
    )
