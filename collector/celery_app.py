"""Celery application setup for the collector task queue."""

from __future__ import annotations

import os

from celery import Celery
from celery.schedules import crontab


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def create_celery_app() -> Celery:
    """Instantiate the Celery app with environment driven configuration.

    Broker and result backend default to the collector's Redis URL and fall back
    to in-memory transports, so the eager default needs no running services.
    """

    redis_url = os.getenv("COLLECTOR_REDIS_URL") or None
    broker_url = os.getenv("COLLECTOR_CELERY_BROKER_URL") or redis_url or "memory://"
    backend_url = os.getenv("COLLECTOR_CELERY_RESULT_BACKEND") or redis_url or "cache+memory://"

    app = Celery("collector", broker=broker_url, backend=backend_url, include=["collector.tasks"])
    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        task_always_eager=_env_flag("COLLECTOR_CELERY_TASK_ALWAYS_EAGER", True),
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        broker_connection_retry_on_startup=True,
        timezone="UTC",
        enable_utc=True,
        # Job cadences live in scheduler_jobs; beat only drives the minute tick.
        beat_schedule={
            "collector-scheduler-tick": {
                "task": "collector.scheduler_tick",
                "schedule": crontab(),
            },
        },
    )
    return app


celery_app = create_celery_app()


__all__ = ["celery_app", "create_celery_app"]
