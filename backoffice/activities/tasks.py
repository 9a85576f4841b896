from __future__ import annotations

import logging

from backoffice.activities.service import evaluator
from backoffice.core.celery_app import celery_app
from backoffice.core.database import SessionLocal
from backoffice.crm.service import task_service


logger = logging.getLogger("backoffice.activities.tasks")


@celery_app.task(name="backoffice.activities.evaluate_perpetual")
def evaluate_perpetual_activities_task() -> dict:
    session = SessionLocal()
    try:
        result = evaluator.evaluate_perpetual(session)
    finally:
        session.close()
    if result.errors:
        logger.warning("critical_activity_batch_partial", extra={"error": "; ".join(result.errors.values())})
    return result.model_dump()


@celery_app.task(name="backoffice.tasks.mark_overdue")
def mark_overdue_tasks_task() -> int:
    session = SessionLocal()
    try:
        return task_service.mark_overdue(session)
    finally:
        session.close()
