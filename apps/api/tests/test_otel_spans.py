from __future__ import annotations

import os
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from app.core.auth import AuthUser, get_current_user as auth_get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.otel import setup_inmemory_otel
from app.platform.security.context import AuthContext
from app.projects.schemas import ProjectCreate, TaskCreate, TimeEntryCreate
from app.projects.service import project_service, task_service, time_entry_service


ALL_ROLES = [
    "work.projects.read",
    "work.projects.write",
    "work.tasks.read",
    "work.tasks.write",
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
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


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


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post(
        "/api/work/projects",
        json={"name": "OTel Project"},
        headers={"X-Correlation-Id": "otel-corr-1", "X-Tenant-Id": "tenant-a"},
    )
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)
    assert any(span.attributes.get("tenant_id") == "tenant-a" for span in spans)


def test_rollup_spans_carry_project_id(db_session: Session, span_exporter: InMemorySpanExporter) -> None:
    ctx = AuthContext(user_id="u1", tenant_id="tenant-a")
    project = project_service.create_project(db_session, ctx, ProjectCreate(name="Traced"))
    task = task_service.create_task(db_session, ctx, TaskCreate(name="Traced task", project_id=project.id))
    start = datetime(2026, 2, 2, 9, 0, tzinfo=timezone.utc)
    time_entry_service.log_time(
        db_session,
        ctx,
        task.id,
        TimeEntryCreate(started_at=start, ended_at=start + timedelta(minutes=60), billing_rate=Decimal("50")),
    )

    spans = span_exporter.get_finished_spans()
    rollup_spans = [span for span in spans if span.name == "work.project.rollup.actual_cost"]
    assert rollup_spans
    assert all(span.attributes.get("project_id") == str(project.id) for span in rollup_spans)
