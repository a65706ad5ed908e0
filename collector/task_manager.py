"""Collection task records and their lifecycle."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Mapping

from sqlalchemy import delete, func, select

from models import CollectionLogEntry, CollectionTask, utcnow

from .config import CollectorConfig, ConfigurationError

LOGGER = logging.getLogger(__name__)

MODE_FULL = "full"
MODE_INCREMENTAL = "incremental"
MODE_CATEGORY = "category"
MODE_SOURCE = "source"
MODES = (MODE_FULL, MODE_INCREMENTAL, MODE_CATEGORY, MODE_SOURCE)

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_PAUSED = "paused"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED, STATUS_CANCELLED})

_TRANSITIONS: dict[str, frozenset[str]] = {
    STATUS_PENDING: frozenset({STATUS_RUNNING, STATUS_CANCELLED, STATUS_FAILED}),
    STATUS_RUNNING: frozenset({STATUS_PAUSED, STATUS_COMPLETED, STATUS_FAILED, STATUS_CANCELLED}),
    STATUS_PAUSED: frozenset({STATUS_RUNNING, STATUS_CANCELLED}),
    STATUS_COMPLETED: frozenset(),
    STATUS_FAILED: frozenset(),
    STATUS_CANCELLED: frozenset(),
}

COUNTER_FIELDS = ("processed_count", "new_count", "updated_count", "skipped_count", "error_count")


class InvalidTransitionError(RuntimeError):
    """Raised when a task is asked to move to a state its current state forbids."""


class TaskNotFoundError(LookupError):
    """Raised when a task id does not exist."""


def _positive_int(scope: Mapping[str, Any], key: str) -> int | None:
    value = scope.get(key)
    if value is None or value == "":
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{key} must be an integer, got {value!r}") from exc
    if parsed < 1:
        raise ConfigurationError(f"{key} must be >= 1, got {parsed}")
    return parsed


def _id_list(scope: Mapping[str, Any], key: str) -> list:
    value = scope.get(key) or []
    if isinstance(value, (str, int)):
        value = [value]
    return [item for item in value if item not in (None, "")]


def task_to_payload(task: CollectionTask) -> dict:
    return {
        "id": task.id,
        "mode": task.mode,
        "status": task.status,
        "config": dict(task.config or {}),
        "processed": task.processed_count,
        "new": task.new_count,
        "updated": task.updated_count,
        "skipped": task.skipped_count,
        "errored": task.error_count,
        "checkpoint": task.checkpoint,
        "last_error": task.last_error,
        "created_at": task.created_at.isoformat() if task.created_at else None,
        "started_at": task.started_at.isoformat() if task.started_at else None,
        "paused_at": task.paused_at.isoformat() if task.paused_at else None,
        "finished_at": task.finished_at.isoformat() if task.finished_at else None,
    }


class TaskManager:
    """Creates tasks, enforces the status machine and stores progress."""

    def __init__(self, session_factory, config: CollectorConfig) -> None:
        self._session_factory = session_factory
        self._config = config

    def build_task_config(self, mode: str, scope: Mapping[str, Any] | None = None) -> dict:
        if mode not in MODES:
            raise ConfigurationError(f"Unknown collection mode {mode!r}; expected one of {', '.join(MODES)}")
        scope = scope or {}
        source_ids = [int(item) for item in _id_list(scope, "source_ids")]
        category_ids = [str(item) for item in _id_list(scope, "category_ids")]
        if mode == MODE_CATEGORY and not category_ids:
            raise ConfigurationError("Category collection needs at least one category id")
        if mode == MODE_SOURCE and not source_ids:
            raise ConfigurationError("Source collection needs at least one source id")

        max_pages = _positive_int(scope, "max_pages")
        max_videos = _positive_int(scope, "max_videos")
        if mode == MODE_INCREMENTAL:
            max_pages = max_pages or self._config.collect.incremental_max_pages
            max_videos = max_videos or self._config.collect.incremental_max_videos
        elif mode == MODE_FULL and max_pages is None:
            max_pages = self._config.collect.full_max_pages

        return {
            "source_ids": source_ids,
            "category_ids": category_ids,
            "page_start": _positive_int(scope, "page_start") or 1,
            "max_pages": max_pages,
            "max_videos": max_videos,
        }

    def create_task(self, mode: str, scope: Mapping[str, Any] | None = None) -> str:
        task_config = self.build_task_config(mode, scope)
        with self._session_factory() as session:
            task = CollectionTask(mode=mode, status=STATUS_PENDING, config=task_config, created_at=utcnow())
            session.add(task)
            session.commit()
            LOGGER.info("Created %s collection task %s", mode, task.id)
            return task.id

    def get_task(self, task_id: str) -> dict | None:
        with self._session_factory() as session:
            task = session.get(CollectionTask, task_id)
            return task_to_payload(task) if task is not None else None

    def get_status(self, task_id: str) -> str:
        with self._session_factory() as session:
            status = session.scalar(select(CollectionTask.status).where(CollectionTask.id == task_id))
        if status is None:
            raise TaskNotFoundError(f"Unknown task '{task_id}'")
        return status

    def list_recent_tasks(self, page: int = 1, page_size: int = 20, status: str | None = None) -> dict:
        page = max(1, int(page))
        page_size = max(1, min(100, int(page_size)))
        conditions = [CollectionTask.status == status] if status else []
        with self._session_factory() as session:
            total = session.scalar(select(func.count()).select_from(CollectionTask).where(*conditions)) or 0
            rows = session.scalars(
                select(CollectionTask)
                .where(*conditions)
                .order_by(CollectionTask.created_at.desc(), CollectionTask.id.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            ).all()
            items = [task_to_payload(row) for row in rows]
        return {"items": items, "total": total, "page": page, "page_size": page_size}

    def _transition(self, task_id: str, target: str, *, error: str | None = None) -> str:
        with self._session_factory() as session:
            task = session.get(CollectionTask, task_id)
            if task is None:
                raise TaskNotFoundError(f"Unknown task '{task_id}'")
            current = task.status
            if target not in _TRANSITIONS.get(current, frozenset()):
                raise InvalidTransitionError(f"Task {task_id} cannot move from {current} to {target}")

            now = utcnow()
            task.status = target
            if target == STATUS_RUNNING:
                task.started_at = task.started_at or now
                task.paused_at = None
            elif target == STATUS_PAUSED:
                task.paused_at = now
            elif target in TERMINAL_STATUSES:
                task.finished_at = now
            if error is not None:
                task.last_error = error
            session.commit()
        LOGGER.info("Task %s: %s -> %s", task_id, current, target)
        return current

    def mark_running(self, task_id: str) -> str:
        return self._transition(task_id, STATUS_RUNNING)

    def mark_paused(self, task_id: str) -> str:
        return self._transition(task_id, STATUS_PAUSED)

    def mark_completed(self, task_id: str) -> str:
        return self._transition(task_id, STATUS_COMPLETED)

    def mark_failed(self, task_id: str, error: str) -> str:
        return self._transition(task_id, STATUS_FAILED, error=error)

    def mark_cancelled(self, task_id: str) -> str:
        return self._transition(task_id, STATUS_CANCELLED)

    def save_progress(self, task_id: str, counters: Mapping[str, int], checkpoint: Mapping[str, Any] | None) -> None:
        """Store absolute counter values and a full checkpoint snapshot."""

        with self._session_factory() as session:
            task = session.get(CollectionTask, task_id)
            if task is None:
                raise TaskNotFoundError(f"Unknown task '{task_id}'")
            for name in COUNTER_FIELDS:
                if name in counters:
                    setattr(task, name, int(counters[name]))
            if checkpoint is not None:
                task.checkpoint = {
                    "sources": {key: dict(value) for key, value in (checkpoint.get("sources") or {}).items()}
                }
            session.commit()

    def cleanup_old_tasks(self, days: int) -> int:
        """Delete finished tasks (and their logs) older than ``days``."""

        cutoff = utcnow() - timedelta(days=days)
        with self._session_factory() as session:
            task_ids = list(
                session.scalars(
                    select(CollectionTask.id).where(
                        CollectionTask.status.in_(sorted(TERMINAL_STATUSES)),
                        CollectionTask.created_at < cutoff,
                    )
                )
            )
            if not task_ids:
                return 0
            session.execute(delete(CollectionLogEntry).where(CollectionLogEntry.task_id.in_(task_ids)))
            session.execute(delete(CollectionTask).where(CollectionTask.id.in_(task_ids)))
            session.commit()
        LOGGER.info("Removed %d finished task(s) older than %d days", len(task_ids), days)
        return len(task_ids)
