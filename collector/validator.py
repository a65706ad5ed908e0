"""Playback URL liveness checks and invalid-URL reports."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Mapping

import httpx
from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from models import CatalogEntry, InvalidUrlReport, utcnow

from .config import CollectorConfig, ConfigurationError
from .http_client import HttpFetchError, HttpFetcher

LOGGER = logging.getLogger(__name__)

ERROR_CLASSES = ("timeout", "http_4xx", "http_5xx", "network", "parse_error", "user_report")
REPORTERS = ("system", "user")


@dataclass(slots=True)
class ProbeOutcome:
    """Result of probing the first episode of every play group."""

    alive: bool
    probed: int = 0
    failures: list[tuple[str, str]] = field(default_factory=list)

    @property
    def first_failure(self) -> tuple[str, str] | None:
        return self.failures[0] if self.failures else None


def first_episode_urls(play_index: Mapping[str, object] | None) -> list[str]:
    urls: list[str] = []
    for episodes in (play_index or {}).values():
        if not isinstance(episodes, list):
            continue
        for episode in episodes:
            url = episode.get("url") if isinstance(episode, Mapping) else None
            if url:
                urls.append(str(url))
                break
    return urls


class UrlValidator:
    """Batch liveness checks; only ``is_valid`` and ``last_checked`` are written."""

    def __init__(
        self,
        session_factory,
        config: CollectorConfig,
        *,
        fetcher: HttpFetcher | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._config = config
        self._fetcher = fetcher or HttpFetcher(
            config,
            timeout=config.timeout.validate_timeout,
            transport=transport,
        )

    def probe_play_index(self, play_index: Mapping[str, object] | None) -> ProbeOutcome:
        urls = first_episode_urls(play_index)
        outcome = ProbeOutcome(alive=False)
        for url in urls:
            outcome.probed += 1
            try:
                self._fetcher.probe(url)
            except HttpFetchError as exc:
                outcome.failures.append((url, exc.kind))
                continue
            outcome.alive = True
        return outcome

    def validate_batch(self, limit: int | None = None) -> dict[str, int]:
        """Probe valid entries not checked within the recheck window, oldest first."""

        limit = limit or self._config.validator.batch_limit
        due_before = utcnow() - timedelta(days=self._config.validator.recheck_after_days)
        with self._session_factory() as session:
            rows = session.execute(
                select(CatalogEntry.id, CatalogEntry.play_index)
                .where(
                    CatalogEntry.is_valid.is_(True),
                    or_(CatalogEntry.last_checked.is_(None), CatalogEntry.last_checked < due_before),
                )
                .order_by(
                    CatalogEntry.last_checked.is_(None).desc(),
                    CatalogEntry.last_checked.asc(),
                    CatalogEntry.id.asc(),
                )
                .limit(limit)
            ).all()

        stats = {"checked": 0, "valid": 0, "invalid": 0, "unprobed": 0}
        results: list[tuple[str, ProbeOutcome]] = []
        for entry_id, play_index in rows:
            outcome = self.probe_play_index(play_index)
            results.append((entry_id, outcome))
            stats["checked"] += 1
            if outcome.probed == 0:
                stats["unprobed"] += 1
            elif outcome.alive:
                stats["valid"] += 1
            else:
                stats["invalid"] += 1

        now = utcnow()
        with self._session_factory() as session:
            for entry_id, outcome in results:
                values: dict[str, object] = {"last_checked": now}
                if outcome.probed and not outcome.alive:
                    values["is_valid"] = False
                    url, error_class = outcome.first_failure
                    session.add(
                        InvalidUrlReport(
                            entry_id=entry_id,
                            url=url,
                            error_class=error_class,
                            reporter="system",
                            created_at=now,
                        )
                    )
                    LOGGER.warning("Entry %s has no live play group (%s: %s)", entry_id, error_class, url)
                session.execute(update(CatalogEntry).where(CatalogEntry.id == entry_id).values(**values))
            session.commit()

        LOGGER.info(
            "Validated %d entries: %d valid, %d invalid, %d without play groups",
            stats["checked"],
            stats["valid"],
            stats["invalid"],
            stats["unprobed"],
        )
        return stats

    def report_invalid_url(
        self,
        entry_id: str,
        url: str,
        error_class: str = "user_report",
        reporter: str = "user",
    ) -> dict:
        """Store a report; returns the report id and whether the entry was flipped."""

        if reporter not in REPORTERS:
            raise ConfigurationError(f"Unknown reporter {reporter!r}")
        if error_class not in ERROR_CLASSES:
            raise ConfigurationError(f"Unknown error class {error_class!r}")
        if not url:
            raise ConfigurationError("A report needs the failing URL")

        with self._session_factory() as session:
            result = self._record_report(session, entry_id, url, error_class, reporter)
            session.commit()
        return result

    def _record_report(self, session: Session, entry_id: str, url: str, error_class: str, reporter: str) -> dict:
        exists = session.scalar(select(CatalogEntry.id).where(CatalogEntry.id == entry_id))
        if exists is None:
            raise ConfigurationError(f"Unknown catalog entry '{entry_id}'")

        report = InvalidUrlReport(
            entry_id=entry_id,
            url=url,
            error_class=error_class,
            reporter=reporter,
            created_at=utcnow(),
        )
        session.add(report)
        session.flush()

        flip = reporter == "system"
        if not flip:
            open_reports = session.scalar(
                select(func.count())
                .select_from(InvalidUrlReport)
                .where(
                    InvalidUrlReport.entry_id == entry_id,
                    InvalidUrlReport.reporter == "user",
                    InvalidUrlReport.resolved.is_(False),
                )
            ) or 0
            flip = open_reports >= self._config.validator.user_report_threshold
        if flip:
            session.execute(update(CatalogEntry).where(CatalogEntry.id == entry_id).values(is_valid=False))
            LOGGER.info("Entry %s marked invalid after %s report", entry_id, reporter)
        return {"report_id": report.id, "flipped": flip}

    def close(self) -> None:
        self._fetcher.close()
