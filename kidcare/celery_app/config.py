"""
Celery configuration settings.

This module provides configuration values for Celery workers,
including queue definitions, timeouts and the retention schedule.
"""

from celery.schedules import crontab

from kidcare.core.config import settings


class CeleryConfig:
    """Celery configuration class."""

    # Broker and backend URLs
    broker_url = settings.CELERY_BROKER_URL
    result_backend = settings.CELERY_RESULT_BACKEND

    # Serialization
    task_serializer = "json"
    result_serializer = "json"
    accept_content = ["json"]

    # Timezone
    timezone = "UTC"
    enable_utc = True

    # Task settings
    task_track_started = True
    task_time_limit = 1800  # 30 minutes hard limit
    task_soft_time_limit = 1500  # 25 minutes soft limit

    # Result settings
    result_expires = 86400  # 24 hours

    # Worker settings
    worker_prefetch_multiplier = 1
    worker_concurrency = 2

    # Task routing - embedding-heavy work goes to its own queue
    task_routes = {
        "kidcare.celery_app.tasks.indexing.*": {"queue": "indexing"},
    }

    # Default queue
    task_default_queue = "default"

    # Retry settings
    task_acks_late = True  # Acknowledge after task completion
    task_reject_on_worker_lost = True  # Requeue if worker dies

    # Periodic jobs (celery beat)
    beat_schedule = {
        "purge-expired-text-chunks": {
            "task": "kidcare.celery_app.tasks.indexing.purge_expired_chunks",
            "schedule": crontab(hour=3, minute=0),
        },
    }
