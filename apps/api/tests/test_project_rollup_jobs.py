from __future__ import annotations

import logging
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from decimal import Decimal
import uuid

import pytest
from fastapi import HTTPException
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.config import get_settings
from app.core.database import Base
from app.platform.security.context import AuthContext
from app.projects.jobs import run_project_rollups
from app.projects.models import Project
from app.projects.schemas import ProjectCreate, TaskCreate, TimeEntryCreate
from app.projects.service import project_service, task_service, time_entry_service


@pytest.fixture()
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    try:
        yield SessionLocal
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("ROLLUP_AUTO_RECOMPUTE", "false")
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()


def _seed(session: Session) -> str:
    ctx = AuthContext(user_id="u1", tenant_id="tenant-a")
    project = project_service.create_project(session, ctx, ProjectCreate(name="Nightly"))
    done = task_service.create_task(session, ctx, TaskCreate(name="Done", status="completed", project_id=project.id))
    task_service.create_task(session, ctx, TaskCreate(name="Open", project_id=project.id))
    start = datetime(2026, 2, 2, 9, 0, tzinfo=timezone.utc)
    time_entry_service.log_time(
        session,
        ctx,
        done.id,
        TimeEntryCreate(started_at=start, ended_at=start + timedelta(minutes=30), billing_rate=Decimal("200")),
    )
    return str(project.id)


def test_rollup_job_persists_both_rollups(session_factory: sessionmaker[Session], caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    with session_factory() as session:
        project_id = _seed(session)

    result = run_project_rollups(project_id, "tenant-a", session_factory=session_factory)

    assert result == {"project_id": project_id, "percent_complete": "50.00", "actual_cost": "100.00"}
    with session_factory() as session:
        project = session.get(Project, uuid.UUID(project_id))
        assert project is not None
        assert project.percent_complete == Decimal("50")
        assert project.actual_cost == Decimal("100")

    assert any(
        record.name == "app.projects.jobs"
        and record.getMessage() == "work.project.rollup_job_completed"
        and getattr(record, "project_id", None) == project_id
        for record in caplog.records
    )
    assert [item["event_type"] for item in events.published_events].count("work.project.rollup_updated") == 1


def test_rollup_job_respects_tenant_scope(session_factory: sessionmaker[Session], caplog: pytest.LogCaptureFixture) -> None:
    with session_factory() as session:
        project_id = _seed(session)

    with pytest.raises(HTTPException) as exc_info:
        run_project_rollups(project_id, "tenant-b", session_factory=session_factory)

    assert exc_info.value.status_code == 404
    assert any(record.getMessage() == "work.project.rollup_failed" for record in caplog.records)
