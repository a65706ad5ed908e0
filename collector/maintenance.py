"""Housekeeping jobs: cache warmup, retention, search rebuild and a health summary."""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import and_, delete, func, or_, select

from models import (
    CatalogEntry,
    CatalogSearchEntry,
    CollectionTask,
    InvalidUrlReport,
    Source,
    SourceHealth,
    utcnow,
)

from .cache import LATEST_TTL, TOP_RATED_TTL, KeyValueCache
from .persistence import entry_to_payload
from .reconciler import sync_search_entry

LOGGER = logging.getLogger(__name__)

HEALTHY = "healthy"
WARNING = "warning"
CRITICAL = "critical"


def warmup_cache(cache: KeyValueCache, session_factory, *, per_category: int = 20, top: int = 50) -> dict[str, int]:
    """Write the latest valid entries per category and the top-rated list."""

    if not cache.enabled:
        LOGGER.info("Cache warmup skipped: cache disabled")
        return {"keys": 0}

    written = 0
    with session_factory() as session:
        categories = [
            category
            for category in session.scalars(
                select(CatalogEntry.category).where(CatalogEntry.is_valid.is_(True)).distinct()
            )
            if category
        ]
        for category in sorted(categories):
            rows = session.scalars(
                select(CatalogEntry)
                .where(CatalogEntry.is_valid.is_(True), CatalogEntry.category == category)
                .order_by(CatalogEntry.updated_at.desc(), CatalogEntry.id.asc())
                .limit(per_category)
            ).all()
            if cache.put(f"latest:{category}", [entry_to_payload(row) for row in rows], LATEST_TTL):
                written += 1

        top_rows = session.scalars(
            select(CatalogEntry)
            .where(CatalogEntry.is_valid.is_(True))
            .order_by(CatalogEntry.quality_score.desc(), CatalogEntry.updated_at.desc(), CatalogEntry.id.asc())
            .limit(top)
        ).all()
        if cache.put("top_rated", [entry_to_payload(row) for row in top_rows], TOP_RATED_TTL):
            written += 1

    LOGGER.info("Cache warmup wrote %d key(s)", written)
    return {"keys": written}


def cleanup_invalid_entries(session_factory, days: int) -> int:
    """Delete entries that stayed invalid without an update for ``days``."""

    cutoff = utcnow() - timedelta(days=days)
    with session_factory() as session:
        entry_ids = list(
            session.scalars(
                select(CatalogEntry.id).where(
                    CatalogEntry.is_valid.is_(False),
                    CatalogEntry.updated_at < cutoff,
                )
            )
        )
        if not entry_ids:
            return 0
        session.execute(delete(CatalogSearchEntry).where(CatalogSearchEntry.entry_id.in_(entry_ids)))
        session.execute(delete(InvalidUrlReport).where(InvalidUrlReport.entry_id.in_(entry_ids)))
        session.execute(delete(CatalogEntry).where(CatalogEntry.id.in_(entry_ids)))
        session.commit()
    LOGGER.info("Removed %d invalid entr(ies) older than %d days", len(entry_ids), days)
    return len(entry_ids)


def rebuild_search_index(session_factory) -> int:
    with session_factory() as session:
        session.execute(delete(CatalogSearchEntry))
        count = 0
        for entry in session.scalars(select(CatalogEntry).where(CatalogEntry.is_valid.is_(True))):
            sync_search_entry(session, entry)
            count += 1
        session.commit()
    LOGGER.info("Rebuilt search projection for %d entries", count)
    return count


def _escalate(current: str, level: str) -> str:
    order = (HEALTHY, WARNING, CRITICAL)
    return level if order.index(level) > order.index(current) else current


def system_health_check(session_factory, *, unhealthy_success_rate: float = 80.0) -> dict:
    """Collection-wide metrics with a healthy/warning/critical verdict.

    A source counts as unhealthy when its last probe errored or timed out, or when
    its smoothed success rate has dropped below ``unhealthy_success_rate``.
    """

    now = utcnow()
    since = now - timedelta(hours=24)
    with session_factory() as session:
        total = session.scalar(select(func.count()).select_from(CatalogEntry)) or 0
        valid = session.scalar(
            select(func.count()).select_from(CatalogEntry).where(CatalogEntry.is_valid.is_(True))
        ) or 0
        avg_quality = session.scalar(select(func.avg(CatalogEntry.quality_score))) or 0
        new_today = session.scalar(
            select(func.count()).select_from(CatalogEntry).where(CatalogEntry.created_at >= since)
        ) or 0
        finished = dict(
            session.execute(
                select(CollectionTask.status, func.count())
                .where(
                    CollectionTask.finished_at >= since,
                    CollectionTask.status.in_(["completed", "failed"]),
                )
                .group_by(CollectionTask.status)
            ).all()
        )
        unhealthy_sources = session.scalar(
            select(func.count())
            .select_from(SourceHealth)
            .join(Source, Source.id == SourceHealth.source_id)
            .where(
                Source.is_active.is_(True),
                or_(
                    SourceHealth.status.in_(["error", "timeout"]),
                    and_(SourceHealth.total_checks > 0, SourceHealth.success_rate < unhealthy_success_rate),
                ),
            )
        ) or 0

    completed = finished.get("completed", 0)
    failed = finished.get("failed", 0)
    valid_rate = (valid / total * 100) if total else 100.0
    task_success_rate = (completed / (completed + failed) * 100) if (completed + failed) else 100.0
    metrics = {
        "total_entries": total,
        "valid_entries": valid,
        "invalid_entries": total - valid,
        "valid_rate": round(valid_rate, 1),
        "avg_quality_score": round(float(avg_quality), 1),
        "new_entries_24h": new_today,
        "tasks_completed_24h": completed,
        "tasks_failed_24h": failed,
        "task_success_rate": round(task_success_rate, 1),
        "unhealthy_sources": unhealthy_sources,
    }

    status = HEALTHY
    issues: list[str] = []
    if total:
        if valid_rate < 80:
            issues.append(f"Valid entry rate {valid_rate:.1f}% is below 80%")
            status = _escalate(status, CRITICAL if valid_rate < 60 else WARNING)
        if avg_quality < 60:
            issues.append(f"Average quality score {float(avg_quality):.1f} is below 60")
            status = _escalate(status, CRITICAL if avg_quality < 40 else WARNING)
    if task_success_rate < 80:
        issues.append(f"Task success rate {task_success_rate:.1f}% is below 80%")
        status = _escalate(status, CRITICAL if task_success_rate < 60 else WARNING)
    if new_today == 0:
        issues.append("No new entries in the last 24 hours")
        status = _escalate(status, WARNING)
    if unhealthy_sources:
        issues.append(f"{unhealthy_sources} source(s) failing health checks")
        status = _escalate(status, WARNING)

    if status != HEALTHY:
        LOGGER.warning("System health %s: %s", status, "; ".join(issues))
    return {"status": status, "issues": issues, "metrics": metrics}
