"""Buffered per-task audit log backed by ``collection_logs``."""

from __future__ import annotations

import logging
import threading
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from models import CollectionLogEntry, utcnow

LOGGER = logging.getLogger(__name__)

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class CollectLogger:
    """Collects task log rows in memory and writes them in small batches.

    Every entry is mirrored to the module logger straight away; the database
    copy is written once ``buffer_size`` entries are pending and on ``flush``.
    """

    def __init__(self, session_factory, task_id: str, *, buffer_size: int = 20) -> None:
        self._session_factory = session_factory
        self._task_id = task_id
        self._buffer_size = max(1, buffer_size)
        self._buffer: list[CollectionLogEntry] = []
        self._lock = threading.Lock()

    def log(
        self,
        level: str,
        action: str,
        message: str,
        *,
        source_name: str | None = None,
        entry_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        LOGGER.log(
            _LEVELS.get(level, logging.INFO),
            "[task %s]%s %s: %s",
            self._task_id,
            f" [{source_name}]" if source_name else "",
            action,
            message,
        )
        entry = CollectionLogEntry(
            task_id=self._task_id,
            level=level,
            source_name=source_name,
            action=action,
            message=message,
            details=details,
            entry_id=entry_id,
            created_at=utcnow(),
        )
        with self._lock:
            self._buffer.append(entry)
            pending = len(self._buffer)
        if pending >= self._buffer_size:
            self.flush()

    def info(self, action: str, message: str, **kwargs: Any) -> None:
        self.log("info", action, message, **kwargs)

    def warning(self, action: str, message: str, **kwargs: Any) -> None:
        self.log("warning", action, message, **kwargs)

    def error(self, action: str, message: str, **kwargs: Any) -> None:
        self.log("error", action, message, **kwargs)

    def flush(self) -> int:
        with self._lock:
            pending, self._buffer = self._buffer, []
        if not pending:
            return 0
        try:
            with self._session_factory() as session:
                session.add_all(pending)
                session.commit()
        except SQLAlchemyError:
            # Audit rows are best effort; the stdlib log already has them.
            LOGGER.exception("Dropped %d task log row(s) for %s", len(pending), self._task_id)
            return 0
        return len(pending)


def list_task_logs(session_factory, task_id: str, *, limit: int = 200) -> list[dict]:
    with session_factory() as session:
        rows = session.scalars(
            select(CollectionLogEntry)
            .where(CollectionLogEntry.task_id == task_id)
            .order_by(CollectionLogEntry.created_at.asc(), CollectionLogEntry.id.asc())
            .limit(limit)
        ).all()
        return [
            {
                "level": row.level,
                "source_name": row.source_name,
                "action": row.action,
                "message": row.message,
                "details": row.details,
                "entry_id": row.entry_id,
                "created_at": row.created_at.isoformat() if row.created_at else None,
            }
            for row in rows
        ]


def cleanup_logs(session_factory, days: int) -> int:
    cutoff = utcnow() - timedelta(days=days)
    with session_factory() as session:
        result = session.execute(delete(CollectionLogEntry).where(CollectionLogEntry.created_at < cutoff))
        session.commit()
    removed = result.rowcount or 0
    LOGGER.info("Removed %d collection log row(s) older than %d days", removed, days)
    return removed
