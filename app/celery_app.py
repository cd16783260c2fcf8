"""Celery application instance shared across the backend.

Start a worker with beat embedded:
    celery -A app.celery_app worker -B -Q reminder -l info --concurrency=2
"""

from celery import Celery

from config import settings

BROKER_URL = settings.REDIS_URL

celery_app = Celery("remindme_backend", broker=BROKER_URL, backend=BROKER_URL)

# Global task settings
celery_app.conf.task_acks_late = True
celery_app.conf.task_reject_on_worker_lost = True

celery_app.conf.task_routes = {
    "app.workers.reminder.dispatch_due": {"queue": "reminder"},
}

# Beat schedule: sweep due reminders every minute. A tick still queued when
# the next one is due is dropped; the sweep lease covers the rest.
celery_app.conf.beat_schedule = {
    "dispatch-due-reminders": {
        "task": "app.workers.reminder.dispatch_due",
        "schedule": settings.SWEEP_INTERVAL_SEC,
        "options": {"expires": settings.SWEEP_INTERVAL_SEC},
    }
}

# --- Ensure tasks are registered ---
import app.workers.reminder  # noqa: E402,F401
