"""Wiring of the collector components behind one outbound interface."""

from __future__ import annotations

import logging
from typing import Any, Mapping

import httpx
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from models import Base

from .cache import KeyValueCache
from .collect_log import cleanup_logs, list_task_logs
from .config import CollectorConfig, ConfigurationError
from .health import HealthMonitor
from .maintenance import cleanup_invalid_entries, rebuild_search_index, system_health_check, warmup_cache
from .orchestrator import CollectorOrchestrator, Dispatcher
from .persistence import CatalogPersistence
from .repair import RepairWorkflow
from .scheduler import JobHandler, SchedulerService
from .sources import SourceRegistry
from .task_manager import TaskManager
from .validator import UrlValidator

LOGGER = logging.getLogger(__name__)

_ENGINE_OPTIONS = {
    "pool_size": 2,
    "max_overflow": 0,
    "pool_pre_ping": True,
    "pool_recycle": 1800,
}


def build_session_factory(db_url: str, *, create_schema: bool = True):
    if not db_url:
        raise ConfigurationError("A database URL is required (COLLECTOR_DATABASE_URL or --db-url)")
    options = {} if db_url.startswith("sqlite") else dict(_ENGINE_OPTIONS)
    engine = create_engine(db_url, future=True, **options)
    if create_schema:
        Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


class CatalogService:
    """Entry point for collaborators: collection control, health, catalog reads."""

    def __init__(
        self,
        session_factory,
        config: CollectorConfig,
        *,
        cache: KeyValueCache | None = None,
        transport: httpx.BaseTransport | None = None,
        dispatcher: Dispatcher | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.config = config
        self.cache = cache or KeyValueCache.from_url(config.redis_url)
        self.registry = SourceRegistry(session_factory)
        self.persistence = CatalogPersistence(session_factory)
        self.tasks = TaskManager(session_factory, config)
        self.health = HealthMonitor(session_factory, config, transport=transport)
        self.orchestrator = CollectorOrchestrator(
            session_factory,
            config,
            registry=self.registry,
            health=self.health,
            persistence=self.persistence,
            task_manager=self.tasks,
            transport=transport,
            dispatcher=dispatcher,
        )
        self.validator = UrlValidator(session_factory, config, transport=transport)
        self.repair = RepairWorkflow(
            session_factory,
            config,
            registry=self.registry,
            persistence=self.persistence,
            validator=self.validator,
            transport=transport,
        )
        self.scheduler = SchedulerService(session_factory, self.job_handlers())

    def job_handlers(self) -> dict[str, JobHandler]:
        retention = self.config.retention

        def _days(params: Mapping[str, Any], default: int) -> int:
            return int(params.get("days") or default)

        def _cleanup_logs(params: Mapping[str, Any]) -> dict:
            # A "days" param overrides every retention window for this run.
            return {
                "logs": cleanup_logs(self.session_factory, _days(params, retention.log_days)),
                "tasks": self.tasks.cleanup_old_tasks(_days(params, retention.task_days)),
                "executions": self.scheduler.cleanup_executions(_days(params, retention.execution_days)),
            }

        def _health_sweep(_params: Mapping[str, Any]) -> list[dict]:
            return [
                {"source": source.name, "status": result.status, "latency_ms": result.latency_ms}
                for source, result in self.health.sweep()
            ]

        return {
            "warmup": lambda params: warmup_cache(self.cache, self.session_factory),
            "collect_incremental": lambda params: {"task_id": self.trigger_collection("incremental", params)},
            "collect_full": lambda params: {"task_id": self.trigger_collection("full", params)},
            "collect_category": lambda params: {"task_id": self.trigger_collection("category", params)},
            "validate_urls": lambda params: self.validator.validate_batch(params.get("limit")),
            "health_check_sources": _health_sweep,
            "cleanup_logs": _cleanup_logs,
            "cleanup_invalid": lambda params: {
                "removed": cleanup_invalid_entries(
                    self.session_factory, _days(params, retention.invalid_entry_days)
                )
            },
            "merge_duplicates": lambda params: self.persistence.merge_duplicates(),
            "rebuild_index": lambda params: {"indexed": rebuild_search_index(self.session_factory)},
            "system_health": lambda params: system_health_check(
                self.session_factory, unhealthy_success_rate=self.config.health.unhealthy_success_rate
            ),
            "repair_invalid": lambda params: self.repair.repair_batch(int(params.get("limit") or 20)),
        }

    def trigger_collection(self, mode: str, scope: Mapping[str, Any] | None = None) -> str:
        return self.orchestrator.trigger_collection(mode, scope)

    def get_task_status(self, task_id: str) -> dict | None:
        task = self.tasks.get_task(task_id)
        if task is not None:
            task["logs"] = list_task_logs(self.session_factory, task_id, limit=50)
        return task

    def list_recent_tasks(self, page: int = 1, page_size: int = 20) -> dict:
        return self.tasks.list_recent_tasks(page, page_size)

    def report_invalid_url(self, entry_id: str, url: str, error_class: str = "user_report") -> dict:
        return self.validator.report_invalid_url(entry_id, url, error_class, reporter="user")

    def get_source_health(self) -> list[dict]:
        return self.health.get_source_health()

    def get_entry(self, entry_id: str) -> dict | None:
        return self.persistence.get_entry(entry_id)

    def list_entries(self, category: str | None = None, **filters: Any) -> dict:
        return self.persistence.list_entries(category=category, **filters)

    def search(self, keyword: str, page: int = 1) -> dict:
        return self.persistence.search(keyword, page=page)

    def close(self) -> None:
        self.health.close()
        self.validator.close()
