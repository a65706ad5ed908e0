import json
import unittest
from unittest.mock import MagicMock, patch

import httpx
from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from collector.collect_log import list_task_logs
from collector.config import CollectorConfig
from collector.health import CIRCUIT_HALF_OPEN, STATUS_HEALTHY
from collector.orchestrator import CollectorOrchestrator
from collector.persistence import CatalogPersistence, CatalogPersistenceError
from collector.sources import SourceRegistry
from collector.task_manager import (
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PAUSED,
    TaskManager,
)
from models import Base, CatalogEntry, SourceHealth

LOW_SYNOPSIS = "低优先级来源的剧情简介，一个普通的故事，讲述了很多事情。"
HIGH_SYNOPSIS = "高优先级来源提供的完整剧情简介，内容足够长，可以满足评分要求。"


def _session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


def _item(item_id, title, host, *, synopsis="", cast="", rating=""):
    return {
        "vod_id": item_id,
        "vod_name": title,
        "type_name": "电影",
        "vod_year": "2023",
        "vod_content": synopsis,
        "vod_actor": cast,
        "vod_score": rating,
        "vod_play_from": "m3u8",
        "vod_play_url": f"第1集$https://{host}/play/{item_id}.m3u8",
    }


class FakeSites:
    """Serves MacCMS list pages per host from in-memory fixtures."""

    def __init__(self) -> None:
        self.pages: dict[str, list[list[dict]]] = {}
        self.failures: dict[tuple[str, int], int] = {}
        self.requests: list[tuple[str, str | None, str | None, str | None]] = []
        self.on_request = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        params = request.url.params
        self.requests.append((host, params.get("ac"), params.get("pg"), params.get("t")))
        if self.on_request is not None:
            self.on_request(host, params)
        if params.get("ac") == "detail":
            return httpx.Response(200, text=json.dumps({"list": []}))
        pages = self.pages.get(host, [])
        page = int(params.get("pg", "1"))
        status = self.failures.get((host, page))
        if status:
            return httpx.Response(status)
        items = pages[page - 1] if page <= len(pages) else []
        body = {"page": page, "pagecount": len(pages), "list": items}
        return httpx.Response(200, text=json.dumps(body, ensure_ascii=False))

    def list_pages(self, host: str) -> list[str]:
        return [page for req_host, action, page, _ in self.requests if req_host == host and action == "list"]


class CollectorOrchestratorTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = _session_factory()
        self.config = CollectorConfig()
        # SQLite's shared in-memory connection is not safe across worker threads.
        self.config.collect.max_workers = 1
        self.registry = SourceRegistry(self.session_factory)
        self.sites = FakeSites()
        self.dispatched: list[str] = []

    def _orchestrator(self, **kwargs) -> CollectorOrchestrator:
        orchestrator = CollectorOrchestrator(
            self.session_factory,
            self.config,
            registry=self.registry,
            transport=httpx.MockTransport(self.sites.handler),
            dispatcher=self.dispatched.append,
            **kwargs,
        )
        return orchestrator

    def _entries(self) -> list[CatalogEntry]:
        with self.session_factory() as session:
            return list(session.scalars(select(CatalogEntry).order_by(CatalogEntry.title)))

    def test_two_sources_merge_into_one_entry(self) -> None:
        alpha = self.registry.register_source("alpha", "https://alpha.example.com/api.php/provide/vod/", weight=50)
        beta = self.registry.register_source("beta", "https://beta.example.com/api.php/provide/vod/", weight=90)
        self.sites.pages["alpha.example.com"] = [
            [_item(1, "示例电影", "alpha.example.com", synopsis=LOW_SYNOPSIS, cast="张三", rating="7.1")]
        ]
        self.sites.pages["beta.example.com"] = [[_item(9, "示例 电影", "beta.example.com", synopsis=HIGH_SYNOPSIS)]]
        orchestrator = self._orchestrator()

        task_id = orchestrator.trigger_collection("full")
        self.assertEqual(self.dispatched, [task_id])
        result = orchestrator.run_task(task_id)

        self.assertEqual(result["status"], STATUS_COMPLETED)
        self.assertEqual((result["processed"], result["new"], result["updated"]), (2, 1, 1))
        entries = self._entries()
        self.assertEqual(len(entries), 1)
        entry = entries[0]
        self.assertEqual(entry.synopsis, HIGH_SYNOPSIS)
        self.assertEqual(entry.cast, "张三")
        self.assertEqual(set(entry.play_index), {"alpha-m3u8", "beta-m3u8"})
        self.assertEqual(entry.source_names, ["alpha", "beta"])
        self.assertEqual(entry.quality_score, 100)

        checkpoint = result["checkpoint"]["sources"]
        self.assertTrue(checkpoint[str(alpha)]["done"])
        self.assertTrue(checkpoint[str(beta)]["done"])
        with self.session_factory() as session:
            statuses = {row.source_id: row.status for row in session.scalars(select(SourceHealth))}
        self.assertEqual(statuses, {alpha: STATUS_HEALTHY, beta: STATUS_HEALTHY})
        actions = [row["action"] for row in list_task_logs(self.session_factory, task_id)]
        self.assertIn("batch_stored", actions)
        self.assertEqual(actions[-1], "task_completed")

    def test_rerun_reports_skipped(self) -> None:
        self.registry.register_source("alpha", "https://alpha.example.com/api", weight=50)
        self.sites.pages["alpha.example.com"] = [[_item(1, "T1", "alpha.example.com")]]
        orchestrator = self._orchestrator()

        orchestrator.run_task(orchestrator.trigger_collection("full"))
        second = orchestrator.run_task(orchestrator.trigger_collection("full"))

        self.assertEqual((second["new"], second["skipped"]), (0, 1))
        self.assertEqual(len(self._entries()), 1)

    def test_resume_from_checkpoint_skips_stored_items(self) -> None:
        alpha = self.registry.register_source("alpha", "https://alpha.example.com/api", weight=50)
        host = "alpha.example.com"
        self.sites.pages[host] = [
            [_item(11, "T11", host)],
            [_item(21, "T21", host), _item(22, "T22", host), _item(23, "T23", host)],
            [_item(31, "T31", host)],
        ]
        orchestrator = self._orchestrator()
        manager = orchestrator.task_manager
        task_id = manager.create_task("full")
        manager.mark_running(task_id)
        manager.save_progress(
            task_id,
            {"processed_count": 2, "new_count": 2},
            {"sources": {str(alpha): {"source_index": 0, "category_index": 0, "page": 2, "last_item_id": "21"}}},
        )
        manager.mark_paused(task_id)

        result = orchestrator.run_task(task_id)

        self.assertEqual(result["status"], STATUS_COMPLETED)
        self.assertEqual(self.sites.list_pages(host), ["2", "3"])
        self.assertEqual([entry.title for entry in self._entries()], ["T22", "T23", "T31"])
        self.assertEqual((result["processed"], result["new"]), (5, 5))

    def test_pause_then_resume_continues_where_it_stopped(self) -> None:
        self.registry.register_source("alpha", "https://alpha.example.com/api", weight=50)
        host = "alpha.example.com"
        self.sites.pages[host] = [[_item(page, f"T{page}", host)] for page in (1, 2, 3)]
        orchestrator = self._orchestrator()
        task_id = orchestrator.trigger_collection("full")

        def pause_on_page_two(req_host, params):
            if params.get("pg") == "2":
                orchestrator.pause_task(task_id)

        self.sites.on_request = pause_on_page_two
        paused = orchestrator.run_task(task_id)

        self.assertEqual(paused["status"], STATUS_PAUSED)
        self.assertEqual(paused["processed"], 2)
        cursor = next(iter(paused["checkpoint"]["sources"].values()))
        self.assertEqual(cursor["page"], 3)
        self.assertFalse(cursor["done"])

        self.sites.on_request = None
        self.assertEqual(orchestrator.resume_task(task_id), STATUS_PAUSED)
        self.assertEqual(self.dispatched, [task_id, task_id])
        finished = orchestrator.run_task(task_id)

        self.assertEqual(finished["status"], STATUS_COMPLETED)
        self.assertEqual(finished["processed"], 3)
        self.assertEqual(self.sites.list_pages(host), ["1", "2", "3"])
        self.assertEqual(len(self._entries()), 3)

    def test_cancelled_task_is_not_run_again(self) -> None:
        self.registry.register_source("alpha", "https://alpha.example.com/api", weight=50)
        host = "alpha.example.com"
        self.sites.pages[host] = [[_item(page, f"T{page}", host)] for page in (1, 2, 3)]
        orchestrator = self._orchestrator()
        task_id = orchestrator.trigger_collection("full")

        def cancel_on_page_two(req_host, params):
            if params.get("pg") == "2":
                orchestrator.cancel_task(task_id)

        self.sites.on_request = cancel_on_page_two
        cancelled = orchestrator.run_task(task_id)
        self.sites.on_request = None
        requests_before = len(self.sites.requests)
        again = orchestrator.run_task(task_id)

        self.assertEqual(cancelled["status"], STATUS_CANCELLED)
        self.assertEqual(again["status"], STATUS_CANCELLED)
        self.assertEqual(len(self.sites.requests), requests_before)
        with self.assertLogs("collector.orchestrator", level="WARNING"):
            self.assertEqual(orchestrator.resume_task(task_id), STATUS_CANCELLED)
        self.assertEqual(self.dispatched, [task_id])

    def test_persistence_failure_fails_the_task(self) -> None:
        self.registry.register_source("alpha", "https://alpha.example.com/api", weight=50)
        self.sites.pages["alpha.example.com"] = [[_item(1, "T1", "alpha.example.com")]]
        persistence = MagicMock(spec=CatalogPersistence)
        persistence.store_batch.side_effect = CatalogPersistenceError("database is locked")
        orchestrator = self._orchestrator(persistence=persistence)

        result = orchestrator.run_task(orchestrator.trigger_collection("full"))

        self.assertEqual(result["status"], STATUS_FAILED)
        self.assertEqual(result["last_error"], "database is locked")
        self.assertEqual(result["processed"], 0)

    def test_checkpoint_store_failure_fails_the_task(self) -> None:
        alpha = self.registry.register_source("alpha", "https://alpha.example.com/api", weight=50)
        host = "alpha.example.com"
        self.sites.pages[host] = [[_item(1, "T1", host)], [_item(2, "T2", host)]]
        orchestrator = self._orchestrator()
        task_id = orchestrator.trigger_collection("full")
        save_progress = TaskManager.save_progress
        calls: list[tuple] = []

        def locked_on_second_save(manager, *args, **kwargs):
            calls.append(args)
            if len(calls) == 2:
                raise OperationalError("UPDATE collection_tasks", {}, Exception("database is locked"))
            return save_progress(manager, *args, **kwargs)

        with patch.object(TaskManager, "save_progress", autospec=True, side_effect=locked_on_second_save):
            with self.assertLogs("collector.orchestrator", level="ERROR"):
                result = orchestrator.run_task(task_id)

        self.assertEqual(result["status"], STATUS_FAILED)
        self.assertIn("database is locked", result["last_error"])
        self.assertEqual(result["processed"], 1)
        self.assertEqual(self.sites.list_pages(host), ["1"])
        with self.session_factory() as session:
            self.assertIsNone(session.get(SourceHealth, alpha))

    def test_open_circuit_source_sits_out(self) -> None:
        alpha = self.registry.register_source("alpha", "https://alpha.example.com/api", weight=50)
        beta = self.registry.register_source("beta", "https://beta.example.com/api", weight=90)
        self.sites.pages["alpha.example.com"] = [[_item(1, "T1", "alpha.example.com")]]
        self.sites.pages["beta.example.com"] = [[_item(2, "T2", "beta.example.com")]]
        with self.session_factory() as session:
            session.add(SourceHealth(source_id=alpha, circuit_state="open", consecutive_failures=3, status="error"))
            session.commit()
        orchestrator = self._orchestrator()

        with self.assertLogs("collector.health", level="WARNING"):
            result = orchestrator.run_task(orchestrator.trigger_collection("full"))

        self.assertEqual(result["status"], STATUS_COMPLETED)
        self.assertEqual(self.sites.list_pages("alpha.example.com"), [])
        self.assertEqual([entry.title for entry in self._entries()], ["T2"])
        with self.session_factory() as session:
            self.assertEqual(session.get(SourceHealth, alpha).circuit_state, CIRCUIT_HALF_OPEN)
            self.assertEqual(session.get(SourceHealth, beta).status, STATUS_HEALTHY)

    def test_video_budget_stops_incremental_run(self) -> None:
        self.registry.register_source("alpha", "https://alpha.example.com/api", weight=50)
        host = "alpha.example.com"
        self.sites.pages[host] = [
            [_item(page * 10 + offset, f"T{page}{offset}", host) for offset in range(3)] for page in (1, 2, 3)
        ]
        orchestrator = self._orchestrator()

        result = orchestrator.run_task(orchestrator.trigger_collection("incremental", {"max_videos": 2}))

        self.assertEqual(result["status"], STATUS_COMPLETED)
        self.assertEqual(result["processed"], 2)
        self.assertEqual(self.sites.list_pages(host), ["1"])

    def test_failed_page_counts_as_error(self) -> None:
        self.registry.register_source("alpha", "https://alpha.example.com/api", weight=50)
        host = "alpha.example.com"
        self.sites.pages[host] = [[_item(page, f"T{page}", host)] for page in (1, 2, 3)]
        self.sites.failures[(host, 2)] = 503
        orchestrator = self._orchestrator()

        with self.assertLogs("collector.spider", level="WARNING"):
            result = orchestrator.run_task(orchestrator.trigger_collection("full"))

        self.assertEqual(result["status"], STATUS_COMPLETED)
        self.assertEqual((result["processed"], result["errored"]), (2, 1))
        self.assertEqual([entry.title for entry in self._entries()], ["T1", "T3"])

    def test_scoped_task_walks_given_sources_and_categories(self) -> None:
        self.registry.register_source("alpha", "https://alpha.example.com/api", weight=50)
        beta = self.registry.register_source("beta", "https://beta.example.com/api", weight=90)
        self.sites.pages["beta.example.com"] = [[_item(2, "T2", "beta.example.com")]]
        orchestrator = self._orchestrator()

        task_id = orchestrator.trigger_collection("source", {"source_ids": [beta], "category_ids": ["6", "7"]})
        result = orchestrator.run_task(task_id)

        self.assertEqual(result["status"], STATUS_COMPLETED)
        hosts = {host for host, _, _, _ in self.sites.requests}
        self.assertEqual(hosts, {"beta.example.com"})
        self.assertEqual([category for _, _, _, category in self.sites.requests], ["6", "7"])

    def test_unscoped_task_walks_each_source_own_categories(self) -> None:
        self.registry.register_source("alpha", "https://alpha.example.com/api", weight=50, category_ids=["1", "2"])
        self.registry.register_source("beta", "https://beta.example.com/api", weight=90, category_ids=["13"])
        self.sites.pages["alpha.example.com"] = [[_item(1, "T1", "alpha.example.com")]]
        self.sites.pages["beta.example.com"] = [[_item(2, "T2", "beta.example.com")]]
        orchestrator = self._orchestrator()

        result = orchestrator.run_task(orchestrator.trigger_collection("full"))

        self.assertEqual(result["status"], STATUS_COMPLETED)
        walked: dict[str, list[str]] = {}
        for host, action, _, category in self.sites.requests:
            if action == "list":
                walked.setdefault(host, []).append(category)
        self.assertEqual(walked, {"alpha.example.com": ["1", "2"], "beta.example.com": ["13"]})
        self.assertEqual([entry.title for entry in self._entries()], ["T1", "T2"])


if __name__ == "__main__":
    unittest.main()
