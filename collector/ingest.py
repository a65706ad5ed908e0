"""Command-line entrypoint for catalog collection and maintenance."""

from __future__ import annotations

import argparse
import json
import logging
from typing import Any, Sequence

from .config import CollectorConfig, ConfigurationError, load_collector_config
from .scheduler import CadenceError
from .service import CatalogService, build_session_factory
from .sources import RESPONSE_FORMATS, list_adapters
from .task_manager import MODES, InvalidTransitionError, TaskNotFoundError

LOGGER = logging.getLogger(__name__)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Collect video catalogs from resource sites")
    parser.add_argument("--db-url", type=str, default=None, help="SQLAlchemy database URL (defaults to COLLECTOR_DATABASE_URL)")
    parser.add_argument("--redis-url", type=str, default=None, help="Redis URL for the cache (defaults to COLLECTOR_REDIS_URL)")
    parser.add_argument("--max-workers", type=int, default=None, help="Sources collected concurrently")
    subparsers = parser.add_subparsers(dest="command", required=True)

    collect = subparsers.add_parser("collect", help="Create a collection task and run it")
    collect.add_argument("--mode", choices=MODES, default="incremental", help="Collection mode")
    collect.add_argument("--source-id", dest="source_ids", type=int, action="append", default=[], help="Limit to a source id (repeatable)")
    collect.add_argument("--category-id", dest="category_ids", action="append", default=[], help="Source category id (repeatable)")
    collect.add_argument("--page-start", type=int, default=None, help="First list page to fetch")
    collect.add_argument("--max-pages", type=int, default=None, help="Page ceiling per category")
    collect.add_argument("--max-videos", type=int, default=None, help="Stop after this many records")
    collect.add_argument("--enqueue", action="store_true", help="Dispatch through Celery instead of running inline")

    resume = subparsers.add_parser("resume", help="Continue a paused task from its checkpoint")
    resume.add_argument("task_id")
    pause = subparsers.add_parser("pause", help="Pause a running task")
    pause.add_argument("task_id")
    cancel = subparsers.add_parser("cancel", help="Cancel a task")
    cancel.add_argument("task_id")

    status = subparsers.add_parser("status", help="Show one task, or the most recent ones")
    status.add_argument("task_id", nargs="?")
    status.add_argument("--page", type=int, default=1)

    validate = subparsers.add_parser("validate", help="Probe playback URLs of the least recently checked entries")
    validate.add_argument("--limit", type=int, default=None)
    repair = subparsers.add_parser("repair", help="Re-fetch play groups for invalid entries")
    repair.add_argument("--limit", type=int, default=20)

    health = subparsers.add_parser("health", help="Show source health")
    health.add_argument("--probe", action="store_true", help="Probe every active source first")

    subparsers.add_parser("merge", help="Merge duplicate catalog entries")

    add_source = subparsers.add_parser("add-source", help="Register or update a catalog source")
    add_source.add_argument("name")
    add_source.add_argument("base_url")
    add_source.add_argument("--weight", type=int, default=50)
    add_source.add_argument("--adapter", choices=list_adapters(), default="maccms")
    add_source.add_argument("--format", dest="response_format", choices=RESPONSE_FORMATS, default="auto")
    add_source.add_argument("--category-id", dest="category_ids", action="append", default=[])
    add_source.add_argument("--inactive", action="store_true")

    scheduler = subparsers.add_parser("scheduler", help="Scheduled jobs")
    scheduler_commands = scheduler.add_subparsers(dest="scheduler_command", required=True)
    scheduler_commands.add_parser("tick", help="Run every job due this minute")
    scheduler_commands.add_parser("list", help="List jobs")
    trigger = scheduler_commands.add_parser("trigger", help="Run one job now")
    trigger.add_argument("job_id")
    executions = scheduler_commands.add_parser("executions", help="Recent executions")
    executions.add_argument("--job-id", default=None)
    executions.add_argument("--limit", type=int, default=20)
    return parser


def configure_logging() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


def build_config(args: argparse.Namespace) -> CollectorConfig:
    config = load_collector_config()
    if args.db_url:
        config.db_url = args.db_url
    if args.redis_url:
        config.redis_url = args.redis_url
    if args.max_workers is not None:
        if args.max_workers < 1:
            raise ConfigurationError("--max-workers must be >= 1")
        config.collect.max_workers = args.max_workers
    return config


def _print(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _collect(service: CatalogService, args: argparse.Namespace) -> int:
    scope = {
        "source_ids": args.source_ids,
        "category_ids": args.category_ids,
        "page_start": args.page_start,
        "max_pages": args.max_pages,
        "max_videos": args.max_videos,
    }
    if args.enqueue:
        task_id = service.trigger_collection(args.mode, scope)
        _print({"task_id": task_id})
        return 0
    task_id = service.tasks.create_task(args.mode, scope)
    result = service.orchestrator.run_task(task_id)
    _print(result)
    return 0 if result.get("status") == "completed" else 1


def _run_command(service: CatalogService, args: argparse.Namespace) -> int:
    command = args.command
    if command == "collect":
        return _collect(service, args)
    if command == "resume":
        result = service.orchestrator.run_task(args.task_id)
        _print(result)
        return 0 if result.get("status") == "completed" else 1
    if command == "pause":
        service.orchestrator.pause_task(args.task_id)
        _print(service.get_task_status(args.task_id))
        return 0
    if command == "cancel":
        service.orchestrator.cancel_task(args.task_id)
        _print(service.get_task_status(args.task_id))
        return 0
    if command == "status":
        if args.task_id:
            task = service.get_task_status(args.task_id)
            if task is None:
                LOGGER.error("Unknown task %s", args.task_id)
                return 1
            _print(task)
        else:
            _print(service.list_recent_tasks(args.page))
        return 0
    if command == "validate":
        _print(service.validator.validate_batch(args.limit))
        return 0
    if command == "repair":
        _print(service.repair.repair_batch(args.limit))
        return 0
    if command == "health":
        if args.probe:
            service.health.sweep()
        _print(service.get_source_health())
        return 0
    if command == "merge":
        _print(service.persistence.merge_duplicates())
        return 0
    if command == "add-source":
        source_id = service.registry.register_source(
            args.name,
            args.base_url,
            weight=args.weight,
            adapter=args.adapter,
            response_format=args.response_format,
            category_ids=args.category_ids,
            is_active=not args.inactive,
        )
        _print({"source_id": source_id})
        return 0
    if command == "scheduler":
        service.scheduler.ensure_builtin_jobs()
        sub = args.scheduler_command
        if sub == "tick":
            executions = service.scheduler.run_due()
            _print(executions)
            return 0 if all(item["status"] == "success" for item in executions) else 1
        if sub == "list":
            _print(service.scheduler.list_jobs())
            return 0
        if sub == "trigger":
            execution = service.scheduler.trigger(args.job_id)
            _print(execution)
            return 0 if execution["status"] == "success" else 1
        if sub == "executions":
            _print(service.scheduler.list_executions(args.job_id, args.limit))
            return 0
    raise ConfigurationError(f"Unsupported command {command!r}")


def main(argv: Sequence[str] | None = None) -> int:
    configure_logging()
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    try:
        config = build_config(args)
    except ValueError as exc:
        parser.error(str(exc))

    if not config.db_url:
        parser.error("--db-url is required (or set COLLECTOR_DATABASE_URL)")

    service = CatalogService(build_session_factory(config.db_url), config)
    try:
        return _run_command(service, args)
    except (ConfigurationError, CadenceError, InvalidTransitionError, TaskNotFoundError, KeyError) as exc:
        LOGGER.error("%s", exc)
        return 2
    finally:
        service.close()


__all__ = ["build_arg_parser", "build_config", "configure_logging", "main"]


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
