"""Cron-style maintenance and collection jobs with an execution history."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping

from celery.schedules import ParseException, crontab
from sqlalchemy import delete, select

from models import SchedulerExecution, SchedulerJob, utcnow

from .config import ConfigurationError

LOGGER = logging.getLogger(__name__)

JOB_TYPES = (
    "warmup",
    "collect_incremental",
    "collect_full",
    "collect_category",
    "validate_urls",
    "health_check_sources",
    "cleanup_logs",
    "cleanup_invalid",
    "merge_duplicates",
    "rebuild_index",
    "system_health",
    "repair_invalid",
)

JobHandler = Callable[[Mapping[str, Any]], Any]


class CadenceError(ValueError):
    """Raised for cron expressions that cannot be parsed."""


@dataclass(slots=True)
class BuiltinJob:
    id: str
    name: str
    cron: str
    job_type: str
    params: dict[str, Any] = field(default_factory=dict)
    description: str = ""


BUILTIN_JOBS: tuple[BuiltinJob, ...] = (
    BuiltinJob("hourly_warmup", "Hourly cache warmup", "0 * * * *", "warmup",
               description="Refresh cached latest and top-rated lists"),
    BuiltinJob("hourly_collect", "Hourly incremental collection", "0 * * * *", "collect_incremental",
               {"max_pages": 3, "max_videos": 100}),
    BuiltinJob("daily_collect", "Daily incremental collection", "0 2 * * *", "collect_incremental",
               {"max_pages": 10, "max_videos": 500}),
    BuiltinJob("daily_validate", "Playback URL validation", "0 */2 * * *", "validate_urls",
               {"limit": 100}),
    BuiltinJob("daily_health", "Daily system health check", "0 2 * * *", "system_health"),
    BuiltinJob("daily_cleanup", "Daily log cleanup", "0 2 * * *", "cleanup_logs"),
    BuiltinJob("weekly_full_collect", "Weekly full collection", "0 3 * * 0", "collect_full"),
    BuiltinJob("weekly_merge", "Weekly duplicate merge", "0 3 * * 0", "merge_duplicates"),
    BuiltinJob("weekly_cleanup", "Weekly invalid entry cleanup", "0 3 * * 0", "cleanup_invalid"),
    BuiltinJob("weekly_reindex", "Weekly search index rebuild", "0 3 * * 0", "rebuild_index"),
    BuiltinJob("health_check", "Source health sweep", "0 */6 * * *", "health_check_sources"),
)


def parse_cadence(expression: str) -> crontab:
    """Parse a five-field cron expression (minute hour day month weekday)."""

    fields = (expression or "").split()
    if len(fields) != 5:
        raise CadenceError(f"Cron expression needs 5 fields, got {expression!r}")
    minute, hour, day_of_month, month_of_year, day_of_week = fields
    try:
        return crontab(
            minute=minute,
            hour=hour,
            day_of_month=day_of_month,
            month_of_year=month_of_year,
            day_of_week=day_of_week,
        )
    except (ValueError, ParseException) as exc:
        raise CadenceError(f"Invalid cron expression {expression!r}: {exc}") from exc


def cadence_matches(schedule: crontab, moment: datetime) -> bool:
    # crontab numbers weekdays from Sunday = 0.
    return (
        moment.minute in schedule.minute
        and moment.hour in schedule.hour
        and moment.day in schedule.day_of_month
        and moment.month in schedule.month_of_year
        and moment.isoweekday() % 7 in schedule.day_of_week
    )


def _floor_minute(moment: datetime) -> datetime:
    return moment.replace(second=0, microsecond=0)


def job_to_payload(job: SchedulerJob) -> dict:
    return {
        "id": job.id,
        "name": job.name,
        "description": job.description,
        "cron": job.cron,
        "job_type": job.job_type,
        "params": dict(job.params or {}),
        "enabled": job.enabled,
        "is_builtin": job.is_builtin,
        "last_run_at": job.last_run_at.isoformat() if job.last_run_at else None,
    }


def execution_to_payload(execution: SchedulerExecution) -> dict:
    return {
        "id": execution.id,
        "job_id": execution.job_id,
        "status": execution.status,
        "message": execution.message,
        "duration_ms": execution.duration_ms,
        "manual": execution.manual,
        "executed_at": execution.executed_at.isoformat() if execution.executed_at else None,
    }


def _summarize(result: Any) -> str:
    if result is None:
        return "ok"
    if isinstance(result, str):
        return result
    try:
        return json.dumps(result, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(result)


class SchedulerService:
    """Stores jobs, decides which are due, and records every execution.

    Overlapping runs are not prevented; every job type is safe to repeat.
    """

    def __init__(self, session_factory, handlers: Mapping[str, JobHandler] | None = None) -> None:
        self._session_factory = session_factory
        self._handlers: dict[str, JobHandler] = dict(handlers or {})

    def register_handler(self, job_type: str, handler: JobHandler) -> None:
        if job_type not in JOB_TYPES:
            raise ConfigurationError(f"Unknown job type {job_type!r}")
        self._handlers[job_type] = handler

    def ensure_builtin_jobs(self) -> int:
        """Insert missing built-in jobs; existing rows keep operator edits."""

        created = 0
        with self._session_factory() as session:
            existing = set(session.scalars(select(SchedulerJob.id)))
            for builtin in BUILTIN_JOBS:
                if builtin.id in existing:
                    continue
                session.add(
                    SchedulerJob(
                        id=builtin.id,
                        name=builtin.name,
                        description=builtin.description,
                        cron=builtin.cron,
                        job_type=builtin.job_type,
                        params=dict(builtin.params),
                        enabled=True,
                        is_builtin=True,
                    )
                )
                created += 1
            session.commit()
        if created:
            LOGGER.info("Registered %d built-in scheduler job(s)", created)
        return created

    def list_jobs(self) -> list[dict]:
        with self._session_factory() as session:
            jobs = session.scalars(select(SchedulerJob).order_by(SchedulerJob.id.asc())).all()
            return [job_to_payload(job) for job in jobs]

    def get_job(self, job_id: str) -> dict:
        with self._session_factory() as session:
            return job_to_payload(self._require(session, job_id))

    @staticmethod
    def _require(session, job_id: str) -> SchedulerJob:
        job = session.get(SchedulerJob, job_id)
        if job is None:
            raise ConfigurationError(f"Unknown scheduler job '{job_id}'")
        return job

    def create_job(
        self,
        job_id: str,
        name: str,
        cron: str,
        job_type: str,
        params: Mapping[str, Any] | None = None,
        *,
        description: str | None = None,
        enabled: bool = True,
    ) -> dict:
        if not job_id:
            raise ConfigurationError("Job id must not be empty")
        if job_type not in JOB_TYPES:
            raise ConfigurationError(f"Unknown job type {job_type!r}")
        parse_cadence(cron)
        with self._session_factory() as session:
            if session.get(SchedulerJob, job_id) is not None:
                raise ConfigurationError(f"Scheduler job '{job_id}' already exists")
            job = SchedulerJob(
                id=job_id,
                name=name,
                description=description,
                cron=cron,
                job_type=job_type,
                params=dict(params or {}),
                enabled=enabled,
                is_builtin=False,
            )
            session.add(job)
            session.commit()
            return job_to_payload(job)

    def update_job(
        self,
        job_id: str,
        *,
        cron: str | None = None,
        enabled: bool | None = None,
        params: Mapping[str, Any] | None = None,
        name: str | None = None,
        description: str | None = None,
    ) -> dict:
        if cron is not None:
            parse_cadence(cron)
        with self._session_factory() as session:
            job = self._require(session, job_id)
            if cron is not None:
                job.cron = cron
            if enabled is not None:
                job.enabled = enabled
            if params is not None:
                job.params = dict(params)
            if name is not None:
                job.name = name
            if description is not None:
                job.description = description
            session.commit()
            return job_to_payload(job)

    def delete_job(self, job_id: str) -> None:
        with self._session_factory() as session:
            job = self._require(session, job_id)
            if job.is_builtin:
                raise ConfigurationError(f"Built-in job '{job_id}' cannot be deleted; disable or reset it")
            session.delete(job)
            session.commit()

    def reset_job(self, job_id: str) -> dict:
        builtin = next((item for item in BUILTIN_JOBS if item.id == job_id), None)
        if builtin is None:
            raise ConfigurationError(f"'{job_id}' is not a built-in job")
        with self._session_factory() as session:
            job = self._require(session, job_id)
            job.cron = builtin.cron
            job.params = dict(builtin.params)
            job.name = builtin.name
            job.description = builtin.description
            job.enabled = True
            session.commit()
            return job_to_payload(job)

    def trigger(self, job_id: str) -> dict:
        """Run a job now, regardless of its cadence or enabled flag."""

        with self._session_factory() as session:
            job = job_to_payload(self._require(session, job_id))
        return self._execute(job, manual=True, now=utcnow())

    def run_due(self, now: datetime | None = None) -> list[dict]:
        """Run every enabled job whose cadence matches ``now``'s minute, once."""

        moment = _floor_minute(now or utcnow())
        with self._session_factory() as session:
            jobs = [
                job_to_payload(job)
                for job in session.scalars(
                    select(SchedulerJob).where(SchedulerJob.enabled.is_(True)).order_by(SchedulerJob.id.asc())
                )
                if job.last_run_at is None or _floor_minute(job.last_run_at) != moment
            ]

        executions: list[dict] = []
        for job in jobs:
            try:
                schedule = parse_cadence(job["cron"])
            except CadenceError as exc:
                LOGGER.error("Job %s has an invalid cadence: %s", job["id"], exc)
                continue
            if not cadence_matches(schedule, moment):
                continue
            executions.append(self._execute(job, manual=False, now=moment))
        return executions

    def _execute(self, job: Mapping[str, Any], *, manual: bool, now: datetime) -> dict:
        handler = self._handlers.get(job["job_type"])
        started = time.perf_counter()
        if handler is None:
            status, message = "failed", f"No handler registered for job type {job['job_type']!r}"
        else:
            try:
                result = handler(dict(job.get("params") or {}))
            except Exception as exc:  # noqa: BLE001 - recorded, never blocks other jobs
                LOGGER.exception("Scheduler job %s failed", job["id"])
                status, message = "failed", str(exc) or exc.__class__.__name__
            else:
                status, message = "success", _summarize(result)
        duration_ms = int((time.perf_counter() - started) * 1000)

        with self._session_factory() as session:
            execution = SchedulerExecution(
                job_id=job["id"],
                status=status,
                message=message,
                duration_ms=duration_ms,
                manual=manual,
                executed_at=utcnow(),
            )
            session.add(execution)
            stored = session.get(SchedulerJob, job["id"])
            if stored is not None:
                stored.last_run_at = now
            session.commit()
            payload = execution_to_payload(execution)

        LOGGER.info("Job %s %s in %d ms%s", job["id"], status, duration_ms, " (manual)" if manual else "")
        return payload

    def list_executions(self, job_id: str | None = None, limit: int = 50) -> list[dict]:
        conditions = [SchedulerExecution.job_id == job_id] if job_id else []
        with self._session_factory() as session:
            rows = session.scalars(
                select(SchedulerExecution)
                .where(*conditions)
                .order_by(SchedulerExecution.executed_at.desc(), SchedulerExecution.id.desc())
                .limit(max(1, limit))
            ).all()
            return [execution_to_payload(row) for row in rows]

    def cleanup_executions(self, days: int) -> int:
        cutoff = utcnow() - timedelta(days=days)
        with self._session_factory() as session:
            result = session.execute(delete(SchedulerExecution).where(SchedulerExecution.executed_at < cutoff))
            session.commit()
        return result.rowcount or 0
