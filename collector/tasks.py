"""Celery tasks wrapping collection, validation and scheduled maintenance."""

from __future__ import annotations

import logging
from functools import lru_cache

from celery import Task

from .celery_app import celery_app
from .config import load_collector_config
from .service import CatalogService, build_session_factory

LOGGER = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_service() -> CatalogService:
    config = load_collector_config()
    session_factory = build_session_factory(config.db_url)
    service = CatalogService(session_factory, config)
    service.scheduler.ensure_builtin_jobs()
    return service


@celery_app.task(name="collector.run_collection", bind=True)
def run_collection_task(self: Task, task_id: str) -> dict:
    LOGGER.info("Running collection task %s (celery id %s)", task_id, self.request.id)
    result = get_service().orchestrator.run_task(task_id)
    return {"task_id": task_id, "status": result.get("status")}


@celery_app.task(name="collector.validate_urls", bind=True)
def validate_urls_task(self: Task, limit: int | None = None) -> dict:
    return get_service().validator.validate_batch(limit)


@celery_app.task(name="collector.health_sweep", bind=True)
def health_sweep_task(self: Task) -> list[dict]:
    return [
        {"source": source.name, "status": result.status, "latency_ms": result.latency_ms}
        for source, result in get_service().health.sweep()
    ]


@celery_app.task(name="collector.merge_duplicates", bind=True)
def merge_duplicates_task(self: Task) -> dict:
    return get_service().persistence.merge_duplicates()


@celery_app.task(name="collector.scheduler_tick", bind=True)
def scheduler_tick_task(self: Task) -> list[dict]:
    executions = get_service().scheduler.run_due()
    if executions:
        LOGGER.info("Scheduler tick ran %d job(s)", len(executions))
    return executions


__all__ = [
    "get_service",
    "health_sweep_task",
    "merge_duplicates_task",
    "run_collection_task",
    "scheduler_tick_task",
    "validate_urls_task",
]
