from __future__ import annotations

import os
from typing import Any, Dict

from celery import Celery

from apps.common.settings import AppSettings, load_settings


def beat_schedule(settings: AppSettings) -> Dict[str, Dict[str, Any]]:
    return {
        "reconcile-ledger": {
            "task": "scan_review.reconcile_ledger",
            "schedule": settings.sweep_interval_s,
        },
    }


SETTINGS = load_settings()

celery_app = Celery(
    "scan_review_workers",
    broker=SETTINGS.redis_url,
    backend=SETTINGS.redis_url,
    include=["apps.workers.tasks"],
)

celery_app.conf.update(
    task_track_started=True,
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    result_expires=int(os.getenv("CELERY_RESULT_EXPIRES_S", "86400")),  # 1 day
    beat_schedule=beat_schedule(SETTINGS),
)
celery_app.conf.broker_connection_retry_on_startup = True
