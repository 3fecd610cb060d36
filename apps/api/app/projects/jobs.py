from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from typing import Any

from sqlalchemy.orm import Session

from app.core.celery_app import celery_app
from app.core.database import SessionLocal
from app.platform.security.context import AuthContext
from app.projects.service import project_service, recompute_project_rollups

logger = logging.getLogger("app.projects.jobs")

ROLLUP_KINDS = ("percent_complete", "actual_cost")


def run_project_rollups(
    project_id: str,
    tenant_id: str | None,
    *,
    session_factory: Callable[[], Session] = SessionLocal,
) -> dict[str, Any]:
    """Recompute every roll-up of one project in its own session."""
    ctx = AuthContext(user_id="system", tenant_id=tenant_id, is_super_admin=tenant_id is None)
    session = session_factory()
    try:
        project = project_service.get_project_row(session, ctx, uuid.UUID(project_id))
        recompute_project_rollups(session, project, actor_user_id=ctx.user_id, kinds=ROLLUP_KINDS)
        session.commit()
        result = {
            "project_id": str(project.id),
            "percent_complete": str(project.percent_complete),
            "actual_cost": str(project.actual_cost),
        }
    except Exception:
        session.rollback()
        logger.exception("work.project.rollup_failed", extra={"project_id": project_id, "tenant_id": tenant_id})
        raise
    finally:
        session.close()

    logger.info("work.project.rollup_job_completed", extra={"project_id": project_id, "tenant_id": tenant_id})
    return result


@celery_app.task(name="work.projects.recompute_rollups")
def recompute_rollups_task(project_id: str, tenant_id: str | None = None) -> dict[str, Any]:
    return run_project_rollups(project_id, tenant_id)
