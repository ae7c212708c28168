"""
Celery application configuration with retry support and beat scheduling
"""
from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init
from dotenv import load_dotenv
from sqlalchemy.exc import OperationalError

load_dotenv()

from srs.core.config import settings  # noqa: E402
from srs.core.exceptions import ConcurrencyError  # noqa: E402

# Create Celery app
app = Celery(
    "srs_worker",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=[
        "srs.worker.tasks.fsrs_tasks",
        "srs.worker.tasks.session_tasks",
    ],
)

# Celery configuration with retry settings
app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=3600,  # 1 hour max per task
    task_soft_time_limit=3300,  # 55 minutes soft limit
    worker_prefetch_multiplier=1,  # Process one task at a time
    worker_max_tasks_per_child=50,
    # Retry configuration
    task_acks_late=True,  # Acknowledge after task completes
    task_reject_on_worker_lost=True,  # Reject task if worker dies
    task_default_retry_delay=2,  # Initial retry delay (seconds)
)


# Retryable exceptions for automatic retry
RETRYABLE_EXCEPTIONS = (
    ConnectionError,
    TimeoutError,
    OperationalError,
    ConcurrencyError,
)

# Default retry settings for tasks
DEFAULT_RETRY_KWARGS = {
    "autoretry_for": RETRYABLE_EXCEPTIONS,
    "retry_backoff": True,  # Exponential backoff
    "retry_backoff_max": 600,  # Max 10 minutes between retries
    "retry_jitter": True,
    "max_retries": 5,
}

# Task routing
app.conf.task_routes = {
    "srs.worker.tasks.fsrs_tasks.*": {"queue": "optimization"},
    "srs.worker.tasks.session_tasks.*": {"queue": "maintenance"},
}

# Celery beat schedule for periodic tasks
app.conf.beat_schedule = {
    # Job trigger: drain PENDING optimization / rebuild jobs
    "process-pending-jobs": {
        "task": "process_pending_jobs",
        "schedule": crontab(minute="*"),
        "options": {"queue": "optimization"},
    },
    # FSRS parameter optimization - runs weekly on Sunday at 3 AM UTC
    "weekly-fsrs-optimization": {
        "task": "scheduled_fsrs_optimization",
        "schedule": crontab(hour=3, minute=0, day_of_week=0),
        "options": {"queue": "optimization"},
    },
    # Daily maintenance tasks
    "daily-cleanup-abandoned-sessions": {
        "task": "cleanup_abandoned_sessions",
        "schedule": crontab(hour=4, minute=0),
        "options": {"queue": "maintenance"},
    },
}


@worker_process_init.connect
def init_worker_process(**kwargs):
    """Per-process setup: loguru sinks and a fresh database engine"""
    from srs.core.database import get_engine
    from srs.core.logging import setup_logging

    setup_logging()
    get_engine()


if __name__ == "__main__":
    app.start()
