"""Celery application instance shared across the backend.

Start a worker (with the embedded beat scheduler) with:
    celery -A app.celery_app worker -B -Q nudge -l info --concurrency=1
"""

from celery import Celery

from app.logging_setup import setup_logging
from config import settings

setup_logging()

BROKER_URL = settings.REDIS_URL

celery_app = Celery("nudge_backend", broker=BROKER_URL, backend=BROKER_URL)

# Global task settings
celery_app.conf.task_acks_late = True
celery_app.conf.task_reject_on_worker_lost = True
celery_app.conf.task_default_retry_delay = 30  # seconds
celery_app.conf.worker_hijack_root_logger = False

celery_app.conf.task_routes = {
    "app.workers.nudge.run_cycle": {"queue": "nudge"},
    "app.workers.nudge.trigger_event": {"queue": "nudge"},
}

# Beat schedule: scan trips and dispatch nudges on a fixed interval
celery_app.conf.beat_schedule = {
    "nudge-cycle": {
        "task": "app.workers.nudge.run_cycle",
        "schedule": settings.NUDGE_INTERVAL_SECONDS,
    }
}

# --- Ensure tasks are registered ---
import app.workers.nudge  # noqa: E402,F401
