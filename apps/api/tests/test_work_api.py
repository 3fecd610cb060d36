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


ALL_ROLES = [
    "work.projects.read",
    "work.projects.write",
    "work.tasks.read",
    "work.tasks.write",
    "work.time_entries.write",
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
        return AuthUser(sub="user-1", roles=ALL_ROLES, tenant_id="tenant-a")

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[auth_get_current_user] = override_auth_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _post(client: TestClient, path: str, payload: dict, expected: int = 201) -> dict:
    response = client.post(path, json=payload)
    assert response.status_code == expected, response.text
    return response.json()


def test_task_dependency_flow(client: TestClient) -> None:
    project = _post(client, "/api/work/projects", {"name": "Release"})
    spec = _post(
        client,
        "/api/work/tasks",
        {"name": "Spec", "project_id": project["id"], "start_date": "2026-05-01", "end_date": "2026-05-10"},
    )
    build = _post(
        client,
        "/api/work/tasks",
        {"name": "Build", "project_id": project["id"], "start_date": "2026-05-05", "end_date": "2026-05-20"},
    )

    schedule = _post(client, f"/api/work/tasks/{build['id']}/dependencies", {"depends_on_task_id": spec["id"]}, 200)
    assert schedule["earliest_start_date"] == "2026-05-10"
    assert schedule["violates_dependency_constraints"] is True
    assert schedule["is_blocked"] is True

    cycle = client.post(f"/api/work/tasks/{spec['id']}/dependencies", json={"depends_on_task_id": build["id"]})
    assert cycle.status_code == 422
    assert cycle.json()["code"] == "cyclic_dependency"

    blocked = client.post(f"/api/work/tasks/{build['id']}/status", json={"status": "completed"})
    assert blocked.status_code == 422
    assert blocked.json()["code"] == "dependency_blocked"

    blocked_list = client.get(f"/api/work/projects/{project['id']}/tasks/blocked")
    assert [item["id"] for item in blocked_list.json()] == [build["id"]]

    _post(client, f"/api/work/tasks/{spec['id']}/status", {"status": "completed"}, 200)
    done = _post(client, f"/api/work/tasks/{build['id']}/status", {"status": "completed"}, 200)
    assert done["status"] == "completed"

    refreshed = client.get(f"/api/work/projects/{project['id']}")
    assert Decimal(refreshed.json()["percent_complete"]) == Decimal("100")


def test_time_entries_and_budget_summary(client: TestClient) -> None:
    project = _post(client, "/api/work/projects", {"name": "Consulting", "budget": "200.00", "currency": "USD"})
    task = _post(client, "/api/work/tasks", {"name": "Workshop", "project_id": project["id"]})

    entry = _post(
        client,
        f"/api/work/tasks/{task['id']}/time-entries",
        {
            "started_at": "2026-05-04T09:00:00Z",
            "ended_at": "2026-05-04T11:00:00Z",
            "billing_rate": "90",
            "user_name": "Robin",
        },
    )
    assert entry["duration_minutes"] == 120

    overlap = client.post(
        f"/api/work/tasks/{task['id']}/time-entries",
        json={"started_at": "2026-05-04T10:30:00Z", "ended_at": "2026-05-04T12:00:00Z"},
    )
    assert overlap.status_code == 422
    assert overlap.json()["code"] == "time_entry_overlap"
    assert overlap.json()["message"] == "Time entry overlaps with an existing entry for this user."

    patched = client.patch(f"/api/work/time-entries/{entry['id']}", json={"note": "prep included"})
    assert patched.status_code == 200
    assert patched.json()["note"] == "prep included"

    summary = client.get(f"/api/work/projects/{project['id']}/budget-summary")
    assert summary.status_code == 200
    body = summary.json()
    assert Decimal(body["actual_cost"]) == Decimal("180.00")
    assert Decimal(body["variance"]) == Decimal("20.00")
    assert Decimal(body["utilization_percentage"]) == Decimal("90.00")
    assert body["is_over_budget"] is False
    assert body["total_billable_minutes"] == 120

    logs = client.get(f"/api/work/projects/{project['id']}/time-logs")
    assert [row["user_name"] for row in logs.json()] == ["Robin"]

    billing = client.get(f"/api/work/tasks/{task['id']}/billing")
    assert Decimal(billing.json()["total_billing_amount"]) == Decimal("180.00")


def test_instantiate_template(client: TestClient) -> None:
    template = _post(client, "/api/work/projects", {"name": "Audit template", "budget": "5000", "is_template": True})
    _post(client, f"/api/work/projects/{template['id']}/members", {"user_id": "auditor-1", "role": "lead"})
    _post(client, "/api/work/tasks", {"name": "Planning", "project_id": template["id"]})

    project = _post(client, f"/api/work/projects/{template['id']}/instantiate", {"name": "Audit 2026"})
    assert project["template_id"] == template["id"]
    assert project["is_template"] is False
    assert project["status"] == "planning"

    tasks = client.get(f"/api/work/projects/{project['id']}/tasks")
    assert [item["name"] for item in tasks.json()] == ["Planning"]

    again = client.post(f"/api/work/projects/{project['id']}/instantiate", json={"name": "Copy of copy"})
    assert again.status_code == 422
    assert again.json()["code"] == "invalid_template_operation"
    assert again.json()["message"] == "Cannot create project from non-template."


def test_missing_project_returns_not_found_envelope(client: TestClient) -> None:
    response = client.get("/api/work/projects/00000000-0000-4000-8000-000000000000")

    assert response.status_code == 404
    assert response.json()["code"] == "work_project_get_failed"
    assert response.json()["message"] == "project not found"


def test_task_updates_and_schedule_routes(client: TestClient) -> None:
    project = _post(client, "/api/work/projects", {"name": "Rollout", "start_date": "2026-05-04", "end_date": "2026-05-30"})
    plan = _post(
        client,
        "/api/work/tasks",
        {"name": "Plan", "project_id": project["id"], "start_date": "2026-05-04", "end_date": "2026-05-08"},
    )
    ship = _post(
        client,
        "/api/work/tasks",
        {"name": "Ship", "project_id": project["id"], "start_date": "2026-05-06", "end_date": "2026-05-10"},
    )
    schedule = _post(client, f"/api/work/tasks/{ship['id']}/dependencies", {"depends_on_task_id": plan["id"]}, 200)
    assert schedule["violates_dependency_constraints"] is True

    moved = client.patch(f"/api/work/tasks/{ship['id']}", json={"start_date": "2026-05-08", "end_date": "2026-05-12"})
    assert moved.status_code == 200
    assert moved.json()["start_date"] == "2026-05-08"
    assert client.get(f"/api/work/tasks/{ship['id']}/schedule").json()["violates_dependency_constraints"] is False

    cycle = client.patch(f"/api/work/tasks/{plan['id']}", json={"parent_id": plan["id"]})
    assert cycle.status_code == 422
    assert cycle.json()["code"] == "cyclic_hierarchy"

    path = client.get(f"/api/work/projects/{project['id']}/critical-path")
    assert [item["id"] for item in path.json()] == [plan["id"], ship["id"]]

    summary = client.get(f"/api/work/projects/{project['id']}/schedule-summary").json()
    assert summary["critical_path_length"] == 8
    assert summary["on_schedule"] is True

    timeline = client.get(f"/api/work/projects/{project['id']}/timeline").json()
    assert timeline["end_date"] == "2026-05-12"

    slack = client.get(f"/api/work/projects/{project['id']}/tasks/{ship['id']}/slack")
    assert slack.json() == {"task_id": ship["id"], "slack_days": 0}

    deleted = client.delete(f"/api/work/tasks/{ship['id']}")
    assert deleted.status_code == 200
    assert deleted.json() == {"status": "deleted"}
    missing = client.get(f"/api/work/tasks/{ship['id']}")
    assert missing.status_code == 404
    assert missing.json()["code"] == "work_task_get_failed"


def test_delete_time_entry_route(client: TestClient) -> None:
    task = _post(client, "/api/work/tasks", {"name": "Review"})
    entry = _post(client, f"/api/work/tasks/{task['id']}/time-entries", {"duration_minutes": 30, "billing_rate": "60"})

    deleted = client.delete(f"/api/work/time-entries/{entry['id']}")
    assert deleted.status_code == 200

    billing = client.get(f"/api/work/tasks/{task['id']}/billing")
    assert billing.json()["total_billable_minutes"] == 0

    again = client.delete(f"/api/work/time-entries/{entry['id']}")
    assert again.status_code == 404
    assert again.json()["code"] == "work_time_entry_delete_failed"
