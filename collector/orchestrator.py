"""Collection runs: source fan-out, paging, batching and checkpoints."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from typing import Any, Callable, Mapping, Sequence

import httpx
from sqlalchemy.exc import SQLAlchemyError

from models import Source

from .collect_log import CollectLogger
from .config import CollectorConfig
from .health import HealthMonitor, HealthResult, STATUS_ERROR, STATUS_HEALTHY
from .http_client import HttpFetcher
from .parsers import CanonicalRecord
from .persistence import CatalogPersistence, CatalogPersistenceError
from .reconciler import OUTCOME_NEW, OUTCOME_SKIPPED, OUTCOME_UPDATED, ReconcileOutcome
from .sources import SourceRegistry, get_adapter
from .spider import CatalogSpider
from .task_manager import (
    STATUS_CANCELLED,
    STATUS_PAUSED,
    STATUS_PENDING,
    STATUS_RUNNING,
    TERMINAL_STATUSES,
    TaskManager,
    TaskNotFoundError,
)

LOGGER = logging.getLogger(__name__)

Dispatcher = Callable[[str], Any]


class CollectionInterrupted(Exception):
    """Raised inside a run when the task was paused, cancelled or failed elsewhere."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


@dataclass(slots=True)
class SourceCursor:
    source_index: int
    category_index: int = 0
    page: int = 1
    last_item_id: str | None = None
    done: bool = False

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any] | None, source_index: int, page_start: int) -> "SourceCursor":
        if not isinstance(payload, Mapping):
            return cls(source_index=source_index, page=page_start)
        return cls(
            source_index=int(payload.get("source_index", source_index)),
            category_index=int(payload.get("category_index", 0)),
            page=int(payload.get("page", page_start)),
            last_item_id=payload.get("last_item_id") or None,
            done=bool(payload.get("done", False)),
        )


@dataclass(slots=True)
class SourceOutcome:
    pages_ok: int = 0
    pages_failed: int = 0
    error: str | None = None

    def as_health_result(self) -> HealthResult:
        if self.error is None and (self.pages_ok > 0 or self.pages_failed == 0):
            return HealthResult(healthy=True, status=STATUS_HEALTHY)
        return HealthResult(
            healthy=False,
            status=STATUS_ERROR,
            error=self.error or f"{self.pages_failed} page(s) failed",
        )


class _RunState:
    """Counters and checkpoint shared by the workers of one task run."""

    def __init__(self, task_id: str, task: Mapping[str, Any], task_manager: TaskManager) -> None:
        self.task_id = task_id
        self._task_manager = task_manager
        self._lock = threading.Lock()
        self.stop_event = threading.Event()
        self.stop_reason: str | None = None
        self.counters = {
            "processed_count": int(task.get("processed") or 0),
            "new_count": int(task.get("new") or 0),
            "updated_count": int(task.get("updated") or 0),
            "skipped_count": int(task.get("skipped") or 0),
            "error_count": int(task.get("errored") or 0),
        }
        checkpoint = task.get("checkpoint") or {}
        self.cursors: dict[str, dict[str, Any]] = dict(checkpoint.get("sources") or {})
        config = task.get("config") or {}
        self.max_videos: int | None = config.get("max_videos")

    def cursor_for(self, source: Source, source_index: int, page_start: int) -> SourceCursor:
        with self._lock:
            payload = self.cursors.get(str(source.id))
        return SourceCursor.from_payload(payload, source_index, page_start)

    def budget_left(self) -> int | None:
        if self.max_videos is None:
            return None
        with self._lock:
            return max(0, self.max_videos - self.counters["processed_count"])

    def record_outcomes(self, outcomes: Sequence[ReconcileOutcome]) -> None:
        with self._lock:
            self.counters["processed_count"] += len(outcomes)
            for outcome in outcomes:
                if outcome.status == OUTCOME_NEW:
                    self.counters["new_count"] += 1
                elif outcome.status == OUTCOME_UPDATED:
                    self.counters["updated_count"] += 1
                elif outcome.status == OUTCOME_SKIPPED:
                    self.counters["skipped_count"] += 1

    def record_error(self, count: int = 1) -> None:
        with self._lock:
            self.counters["error_count"] += count

    def save(self, source: Source | None = None, cursor: SourceCursor | None = None) -> None:
        with self._lock:
            if source is not None and cursor is not None:
                self.cursors[str(source.id)] = asdict(cursor)
            self._task_manager.save_progress(
                self.task_id,
                dict(self.counters),
                {"sources": {key: dict(value) for key, value in self.cursors.items()}},
            )

    def request_stop(self, reason: str) -> None:
        with self._lock:
            if self.stop_reason is None:
                self.stop_reason = reason
        self.stop_event.set()


def _chunks(records: Sequence[CanonicalRecord], size: int) -> list[list[CanonicalRecord]]:
    return [list(records[index:index + size]) for index in range(0, len(records), size)]


def _default_dispatch(task_id: str) -> Any:
    from .tasks import run_collection_task

    return run_collection_task.delay(task_id)


class CollectorOrchestrator:
    """Runs collection tasks end to end."""

    def __init__(
        self,
        session_factory,
        config: CollectorConfig,
        *,
        registry: SourceRegistry | None = None,
        health: HealthMonitor | None = None,
        persistence: CatalogPersistence | None = None,
        task_manager: TaskManager | None = None,
        transport: httpx.BaseTransport | None = None,
        dispatcher: Dispatcher | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._config = config
        self._transport = transport
        self._registry = registry or SourceRegistry(session_factory)
        self._health = health or HealthMonitor(session_factory, config, transport=transport)
        self._persistence = persistence or CatalogPersistence(session_factory)
        self._tasks = task_manager or TaskManager(session_factory, config)
        self._dispatch = dispatcher or _default_dispatch

    @property
    def task_manager(self) -> TaskManager:
        return self._tasks

    def trigger_collection(self, mode: str, scope: Mapping[str, Any] | None = None) -> str:
        """Create a task and hand it to the task queue; returns the task id."""

        task_id = self._tasks.create_task(mode, scope)
        self._dispatch(task_id)
        return task_id

    def resume_task(self, task_id: str) -> str:
        status = self._tasks.get_status(task_id)
        if status not in {STATUS_PAUSED, STATUS_PENDING}:
            LOGGER.warning("Task %s is %s; nothing to resume", task_id, status)
            return status
        self._dispatch(task_id)
        return status

    def pause_task(self, task_id: str) -> None:
        self._tasks.mark_paused(task_id)

    def cancel_task(self, task_id: str) -> None:
        self._tasks.mark_cancelled(task_id)

    def run_task(self, task_id: str) -> dict:
        """Execute (or continue) one task until it completes, fails or is stopped."""

        status = self._tasks.get_status(task_id)
        if status in TERMINAL_STATUSES:
            LOGGER.info("Task %s already %s; not running it again", task_id, status)
            return self._tasks.get_task(task_id) or {}
        if status in {STATUS_PENDING, STATUS_PAUSED}:
            self._tasks.mark_running(task_id)

        task = self._tasks.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Unknown task '{task_id}'")
        clog = CollectLogger(self._session_factory, task_id, buffer_size=self._config.collect.log_buffer_size)
        run = _RunState(task_id, task, self._tasks)
        task_config = task.get("config") or {}

        try:
            self._run(run, task, task_config, clog)
        except (CatalogPersistenceError, SQLAlchemyError) as exc:
            try:
                run.save()
            except SQLAlchemyError:
                LOGGER.exception("Could not save the final checkpoint of task %s", task_id)
            clog.error("task_failed", f"Catalog store error: {exc}")
            clog.flush()
            self._tasks.mark_failed(task_id, str(exc))
            return self._tasks.get_task(task_id) or {}

        run.save()
        if run.stop_reason is not None:
            clog.info("task_stopped", f"Stopped with status {run.stop_reason}; checkpoint kept")
            clog.flush()
            return self._tasks.get_task(task_id) or {}

        clog.info(
            "task_completed",
            "Collection finished",
            details={key: value for key, value in run.counters.items()},
        )
        clog.flush()
        if self._tasks.get_status(task_id) == STATUS_RUNNING:
            self._tasks.mark_completed(task_id)
        return self._tasks.get_task(task_id) or {}

    def _run(self, run: _RunState, task: Mapping[str, Any], task_config: Mapping[str, Any], clog: CollectLogger) -> None:
        source_ids = task_config.get("source_ids") or []
        sources = self._registry.get_sources(source_ids) if source_ids else self._registry.list_active_sources()
        page_start = int(task_config.get("page_start") or 1)

        indexed = [
            (index, source)
            for index, source in enumerate(sources)
            if not run.cursor_for(source, index, page_start).done
        ]
        eligible_ids = {source.id for source in self._health.eligible_sources([source for _, source in indexed])}
        indexed = [(index, source) for index, source in indexed if source.id in eligible_ids]
        if not indexed:
            clog.warning("no_sources", "No eligible sources for this task")
            return

        clog.info(
            "task_started",
            f"Collecting from {len(indexed)} source(s)",
            details={"mode": task.get("mode"), "sources": [source.name for _, source in indexed]},
        )

        outcomes: dict[int, SourceOutcome] = {}
        max_workers = max(1, min(self._config.collect.max_workers, len(indexed)))
        persistence_error: CatalogPersistenceError | None = None
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = {
                executor.submit(self._collect_source, run, index, source, task_config, clog): source
                for index, source in indexed
            }
            for future, source in futures.items():
                try:
                    outcomes[source.id] = future.result()
                except CollectionInterrupted:
                    continue
                except CatalogPersistenceError as exc:
                    persistence_error = persistence_error or exc
                    run.request_stop("failed")

        for _, source in indexed:
            outcome = outcomes.get(source.id)
            if outcome is not None:
                self._health.record_result(source.id, outcome.as_health_result())

        if persistence_error is not None:
            raise persistence_error

    def _check_interrupt(self, run: _RunState) -> None:
        if run.stop_event.is_set():
            raise CollectionInterrupted(run.stop_reason or "stopped")
        status = self._tasks.get_status(run.task_id)
        if status in {STATUS_PAUSED, STATUS_CANCELLED}:
            run.request_stop(status)
            raise CollectionInterrupted(status)

    def _build_spider(self, source: Source, fetcher: HttpFetcher) -> CatalogSpider:
        adapter = get_adapter(source.adapter or "maccms")
        normalizer = adapter.build_normalizer(source, self._config.canonical_category)
        return CatalogSpider(source, normalizer, fetcher)

    def _collect_source(
        self,
        run: _RunState,
        source_index: int,
        source: Source,
        task_config: Mapping[str, Any],
        clog: CollectLogger,
    ) -> SourceOutcome:
        outcome = SourceOutcome()
        fetcher = HttpFetcher(self._config, transport=self._transport)
        try:
            spider = self._build_spider(source, fetcher)
            self._walk_source(run, source_index, source, spider, task_config, clog, outcome)
        except (CollectionInterrupted, CatalogPersistenceError):
            raise
        except SQLAlchemyError as exc:
            LOGGER.exception("Task store error while collecting from %s", source.name)
            raise CatalogPersistenceError(str(exc)) from exc
        except Exception as exc:  # noqa: BLE001 - one bad source must not end the task
            LOGGER.exception("Source %s failed", source.name)
            run.record_error()
            outcome.error = str(exc)
            clog.error("source_failed", str(exc), source_name=source.name)
        finally:
            fetcher.close()
        return outcome

    def _walk_source(
        self,
        run: _RunState,
        source_index: int,
        source: Source,
        spider: CatalogSpider,
        task_config: Mapping[str, Any],
        clog: CollectLogger,
        outcome: SourceOutcome,
    ) -> None:
        page_start = int(task_config.get("page_start") or 1)
        max_pages = task_config.get("max_pages")
        last_page = page_start + int(max_pages) - 1 if max_pages else None
        # Explicit task categories win; otherwise the source walks its own configured ids.
        scoped = task_config.get("category_ids") or source.category_ids or []
        categories: list[str | None] = [str(category) for category in scoped] or [None]
        batch_size = max(1, self._config.collect.batch_size)

        cursor = run.cursor_for(source, source_index, page_start)
        clog.info(
            "source_started",
            f"Starting at category #{cursor.category_index} page {cursor.page}",
            source_name=source.name,
        )

        while cursor.category_index < len(categories):
            category_id = categories[cursor.category_index]
            self._check_interrupt(run)
            exhausted = False
            for spider_page in spider.iter_pages(category_id, start_page=cursor.page, last_page=last_page):
                if spider_page.failed:
                    outcome.pages_failed += 1
                    run.record_error()
                    clog.warning(
                        "page_failed",
                        spider_page.error or "page fetch failed",
                        source_name=source.name,
                        details={"page": spider_page.page, "category": category_id},
                    )
                else:
                    outcome.pages_ok += 1
                    exhausted = self._process_page(
                        run, source, spider, spider_page.records, cursor, batch_size, clog
                    )

                cursor.page = spider_page.page + 1
                cursor.last_item_id = None
                run.save(source, cursor)
                if exhausted:
                    break
                self._check_interrupt(run)

            if exhausted:
                clog.info("budget_reached", "Video limit reached", source_name=source.name)
                break
            cursor.category_index += 1
            cursor.page = page_start
            cursor.last_item_id = None
            run.save(source, cursor)

        cursor.done = True
        run.save(source, cursor)
        clog.info(
            "source_finished",
            f"{outcome.pages_ok} page(s) collected, {outcome.pages_failed} failed",
            source_name=source.name,
        )

    def _process_page(
        self,
        run: _RunState,
        source: Source,
        spider: CatalogSpider,
        records: Sequence[CanonicalRecord],
        cursor: SourceCursor,
        batch_size: int,
        clog: CollectLogger,
    ) -> bool:
        """Store one page in batches; returns True once the video budget is spent."""

        if cursor.last_item_id:
            ids = [record.source_item_id for record in records]
            if cursor.last_item_id in ids:
                records = records[ids.index(cursor.last_item_id) + 1:]

        for batch in _chunks(records, batch_size):
            budget = run.budget_left()
            if budget is not None:
                if budget <= 0:
                    return True
                batch = batch[:budget]

            if self._config.collect.detail_lookup:
                missing = [record for record in batch if not record.play_index]
                if missing:
                    resolved = {record.source_item_id: record for record in spider.fetch_details(missing)}
                    batch = [resolved.get(record.source_item_id, record) for record in batch]

            outcomes = self._persistence.store_batch(batch, source)
            run.record_outcomes(outcomes)
            cursor.last_item_id = batch[-1].source_item_id
            run.save(source, cursor)
            clog.info(
                "batch_stored",
                f"{len(outcomes)} record(s) stored",
                source_name=source.name,
                details={
                    "page": cursor.page,
                    "new": [outcome.entry_id for outcome in outcomes if outcome.status == OUTCOME_NEW],
                    "updated": [outcome.entry_id for outcome in outcomes if outcome.status == OUTCOME_UPDATED],
                },
            )

        budget = run.budget_left()
        return budget is not None and budget <= 0
