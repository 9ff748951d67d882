"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "ps_monitor",
    broker=settings.redis_url,
    backend=settings.redis_url,
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
        "workers.audit.*": {"queue": "audit"},
        "workers.expiration.*": {"queue": "analysis"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    beat_schedule={
        "capture-ps-changes": {
            "task": "workers.audit.capture_ps_changes",
            "schedule": crontab(minute=f"*/{settings.audit_capture_interval_minutes}"),
            "options": {"queue": "audit"},
        },
        "refresh-expiration-analysis-daily": {
            "task": "workers.expiration.refresh_expiration_analysis",
            "schedule": crontab(hour=settings.expiration_refresh_hour, minute=0),
            "kwargs": {
                "lookback_years": settings.expiration_lookback_years,
                "window_days": settings.expiration_window_days,
            },
            "options": {"queue": "analysis"},
        },
    },
)

celery_app.autodiscover_tasks(["workers"])
