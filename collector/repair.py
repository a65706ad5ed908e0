"""Re-fetching play groups for entries the validator marked invalid."""

from __future__ import annotations

import logging

import httpx
from sqlalchemy import select, update

from models import CatalogEntry, InvalidUrlReport, utcnow

from .config import CollectorConfig
from .http_client import HttpFetcher
from .persistence import CatalogPersistence
from .reconciler import entry_id_for, match_key
from .sources import SourceRegistry, get_adapter
from .spider import CatalogSpider
from .validator import UrlValidator

LOGGER = logging.getLogger(__name__)


class RepairWorkflow:
    """Looks titles up again on every source and revalidates the merged result."""

    def __init__(
        self,
        session_factory,
        config: CollectorConfig,
        *,
        registry: SourceRegistry | None = None,
        persistence: CatalogPersistence | None = None,
        validator: UrlValidator | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._config = config
        self._transport = transport
        self._registry = registry or SourceRegistry(session_factory)
        self._persistence = persistence or CatalogPersistence(session_factory)
        self._validator = validator or UrlValidator(session_factory, config, transport=transport)

    def repair_batch(self, limit: int = 20) -> dict[str, int]:
        with self._session_factory() as session:
            entries = session.execute(
                select(CatalogEntry.id, CatalogEntry.title)
                .where(CatalogEntry.is_valid.is_(False))
                # Never-checked entries first, then the oldest attempt.
                .order_by(
                    CatalogEntry.last_checked.is_(None).desc(),
                    CatalogEntry.last_checked.asc(),
                    CatalogEntry.id.asc(),
                )
                .limit(limit)
            ).all()

        stats = {"attempted": 0, "repaired": 0, "still_invalid": 0}
        if not entries:
            return stats

        sources = self._registry.list_active_sources()
        fetcher = HttpFetcher(self._config, transport=self._transport)
        try:
            spiders = [
                CatalogSpider(
                    source,
                    get_adapter(source.adapter or "maccms").build_normalizer(source, self._config.canonical_category),
                    fetcher,
                )
                for source in sources
            ]
            for entry_id, title in entries:
                stats["attempted"] += 1
                if self._repair_entry(entry_id, title, spiders):
                    stats["repaired"] += 1
                else:
                    stats["still_invalid"] += 1
        finally:
            fetcher.close()

        LOGGER.info(
            "Repair pass: %d attempted, %d repaired, %d still invalid",
            stats["attempted"],
            stats["repaired"],
            stats["still_invalid"],
        )
        return stats

    def _repair_entry(self, entry_id: str, title: str, spiders: list[CatalogSpider]) -> bool:
        for spider in spiders:
            matches = [
                record
                for record in spider.search(title)
                if entry_id_for(match_key(record)) == entry_id
            ]
            if matches:
                self._persistence.store_batch(matches, spider.source)

        with self._session_factory() as session:
            play_index = session.scalar(select(CatalogEntry.play_index).where(CatalogEntry.id == entry_id))
        outcome = self._validator.probe_play_index(play_index)
        now = utcnow()
        with self._session_factory() as session:
            session.execute(update(CatalogEntry).where(CatalogEntry.id == entry_id).values(last_checked=now))
            if outcome.alive:
                session.execute(
                    update(CatalogEntry).where(CatalogEntry.id == entry_id).values(is_valid=True)
                )
                session.execute(
                    update(InvalidUrlReport)
                    .where(InvalidUrlReport.entry_id == entry_id, InvalidUrlReport.resolved.is_(False))
                    .values(resolved=True, resolved_at=now)
                )
            session.commit()
        if outcome.alive:
            LOGGER.info("Entry %s (%s) repaired", entry_id, title)
        return outcome.alive
