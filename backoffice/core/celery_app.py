from celery import Celery

from backoffice.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "backoffice",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["backoffice.activities.tasks"],
)
celery_app.conf.beat_schedule = {
    "evaluate-perpetual-activities": {
        "task": "backoffice.activities.evaluate_perpetual",
        "schedule": float(settings.evaluator_schedule_seconds),
    },
    "mark-overdue-tasks": {
        "task": "backoffice.tasks.mark_overdue",
        "schedule": 900.0,
    },
}
