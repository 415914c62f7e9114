"""
Celery Application Configuration

Run the sync queue with a single consumer so cycles apply one at a time:
    celery -A workers.celery_app worker -Q sync --concurrency=1
    celery -A workers.celery_app beat
"""

from datetime import timedelta

from celery import Celery
from celery.signals import after_setup_logger

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "fleetwatch",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.sync"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.sync.*": {"queue": "sync"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    beat_schedule={
        "sync-device-events": {
            "task": "workers.sync.sync_device_events",
            "schedule": timedelta(minutes=settings.sync_interval_minutes),
            "options": {"queue": "sync"},
        },
    },
)


@after_setup_logger.connect
def _configure_structlog(**_kwargs):
    from core.logging import configure_logging

    configure_logging(settings.log_level, settings.log_json)
