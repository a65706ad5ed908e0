import unittest
from datetime import datetime, timedelta

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from collector.config import ConfigurationError
from collector.scheduler import (
    BUILTIN_JOBS,
    JOB_TYPES,
    CadenceError,
    SchedulerService,
    cadence_matches,
    parse_cadence,
)
from models import Base, SchedulerExecution, utcnow

# 2026-10-18 is a Sunday.
SUNDAY_3AM = datetime(2026, 10, 18, 3, 0, 25)


def _session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


class CadenceTestCase(unittest.TestCase):
    def test_matches_minute_hour_and_weekday(self) -> None:
        weekly = parse_cadence("0 3 * * 0")
        every_two_hours = parse_cadence("0 */2 * * *")

        self.assertTrue(cadence_matches(weekly, SUNDAY_3AM))
        self.assertFalse(cadence_matches(weekly, SUNDAY_3AM + timedelta(days=1)))
        self.assertFalse(cadence_matches(weekly, SUNDAY_3AM + timedelta(minutes=1)))
        self.assertTrue(cadence_matches(every_two_hours, datetime(2026, 10, 19, 4, 0)))
        self.assertFalse(cadence_matches(every_two_hours, datetime(2026, 10, 19, 5, 0)))

    def test_rejects_malformed_expressions(self) -> None:
        for expression in ("", "* * *", "61 * * * *", "* 25 * * *", "* * * * * *"):
            with self.subTest(expression=expression):
                with self.assertRaises(CadenceError):
                    parse_cadence(expression)

    def test_builtin_jobs_parse(self) -> None:
        for job in BUILTIN_JOBS:
            parse_cadence(job.cron)
            self.assertIn(job.job_type, JOB_TYPES)


class SchedulerServiceTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = _session_factory()
        self.calls: list[tuple[str, dict]] = []
        handlers = {job_type: self._recorder(job_type) for job_type in JOB_TYPES}
        self.scheduler = SchedulerService(self.session_factory, handlers)
        self.scheduler.ensure_builtin_jobs()

    def _recorder(self, job_type):
        def handler(params):
            self.calls.append((job_type, params))
            return {"job_type": job_type}

        return handler

    def test_builtin_jobs_are_seeded_once(self) -> None:
        self.scheduler.update_job("hourly_collect", params={"max_pages": 1})

        self.assertEqual(self.scheduler.ensure_builtin_jobs(), 0)
        self.assertEqual(len(self.scheduler.list_jobs()), len(BUILTIN_JOBS))
        self.assertEqual(self.scheduler.get_job("hourly_collect")["params"], {"max_pages": 1})

    def test_run_due_runs_matching_jobs_once_per_minute(self) -> None:
        executions = self.scheduler.run_due(SUNDAY_3AM)

        self.assertEqual(
            sorted(execution["job_id"] for execution in executions),
            [
                "hourly_collect",
                "hourly_warmup",
                "weekly_cleanup",
                "weekly_full_collect",
                "weekly_merge",
                "weekly_reindex",
            ],
        )
        self.assertTrue(all(execution["status"] == "success" for execution in executions))
        self.assertFalse(any(execution["manual"] for execution in executions))
        self.assertIn(("collect_incremental", {"max_pages": 3, "max_videos": 100}), self.calls)

        self.assertEqual(self.scheduler.run_due(SUNDAY_3AM + timedelta(seconds=20)), [])
        self.assertEqual(self.scheduler.get_job("weekly_merge")["last_run_at"], "2026-10-18T03:00:00")

    def test_disabled_job_only_runs_when_triggered(self) -> None:
        self.scheduler.update_job("weekly_merge", enabled=False)

        due = [execution["job_id"] for execution in self.scheduler.run_due(SUNDAY_3AM)]
        manual = self.scheduler.trigger("weekly_merge")

        self.assertNotIn("weekly_merge", due)
        self.assertTrue(manual["manual"])
        self.assertEqual(manual["status"], "success")
        self.assertEqual(self.scheduler.list_executions("weekly_merge")[0]["id"], manual["id"])

    def test_failures_are_recorded(self) -> None:
        def broken(params):
            raise RuntimeError("redis unavailable")

        self.scheduler.register_handler("warmup", broken)

        with self.assertLogs("collector.scheduler", level="ERROR"):
            execution = self.scheduler.trigger("hourly_warmup")

        self.assertEqual(execution["status"], "failed")
        self.assertEqual(execution["message"], "redis unavailable")

    def test_missing_handler_is_a_failed_execution(self) -> None:
        scheduler = SchedulerService(self.session_factory)

        execution = scheduler.trigger("daily_health")

        self.assertEqual(execution["status"], "failed")
        self.assertIn("system_health", execution["message"])

    def test_custom_job_lifecycle(self) -> None:
        created = self.scheduler.create_job(
            "movies_nightly",
            "Nightly movie category",
            "30 1 * * *",
            "collect_category",
            {"category_ids": ["6"]},
        )
        self.assertFalse(created["is_builtin"])

        with self.assertRaises(ConfigurationError):
            self.scheduler.create_job("movies_nightly", "dup", "30 1 * * *", "collect_category")
        with self.assertRaises(ConfigurationError):
            self.scheduler.create_job("other", "bad type", "30 1 * * *", "mine_bitcoin")
        with self.assertRaises(CadenceError):
            self.scheduler.create_job("other", "bad cron", "every night", "collect_category")
        with self.assertRaises(CadenceError):
            self.scheduler.update_job("movies_nightly", cron="99 * * * *")

        self.scheduler.delete_job("movies_nightly")
        with self.assertRaises(ConfigurationError):
            self.scheduler.get_job("movies_nightly")

    def test_builtin_jobs_reset_but_never_delete(self) -> None:
        self.scheduler.update_job("daily_cleanup", cron="15 4 * * *", enabled=False, params={"days": 7})

        with self.assertRaises(ConfigurationError):
            self.scheduler.delete_job("daily_cleanup")
        reset = self.scheduler.reset_job("daily_cleanup")

        self.assertEqual((reset["cron"], reset["enabled"], reset["params"]), ("0 2 * * *", True, {}))
        with self.assertRaises(ConfigurationError):
            self.scheduler.register_handler("unknown", lambda params: None)

    def test_cleanup_executions(self) -> None:
        self.scheduler.trigger("hourly_warmup")
        with self.session_factory() as session:
            session.add(
                SchedulerExecution(
                    job_id="hourly_warmup",
                    status="success",
                    executed_at=utcnow() - timedelta(days=45),
                )
            )
            session.commit()

        self.assertEqual(self.scheduler.cleanup_executions(30), 1)
        self.assertEqual(len(self.scheduler.list_executions("hourly_warmup")), 1)


if __name__ == "__main__":
    unittest.main()
