"""Database persistence helpers for catalog ingestion and catalog reads."""

from __future__ import annotations

import logging
from typing import Sequence

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import CatalogEntry, CatalogSearchEntry, Source

from .parsers import CanonicalRecord, normalize_region
from .reconciler import Reconciler, ReconcileOutcome

LOGGER = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


class CatalogPersistenceError(RuntimeError):
    """Raised when the catalog store rejects a read or write."""


def entry_to_payload(entry: CatalogEntry) -> dict:
    return {
        "id": entry.id,
        "title": entry.title,
        "category": entry.category,
        "year": entry.year,
        "region": entry.region,
        "genre": entry.genre,
        "sub_genres": list(entry.sub_genres or []),
        "cast": entry.cast,
        "director": entry.director,
        "synopsis": entry.synopsis,
        "cover_url": entry.cover_url,
        "play_index": dict(entry.play_index or {}),
        "rating": entry.rating,
        "remark": entry.remark,
        "quality_score": entry.quality_score,
        "source_names": list(entry.source_names or []),
        "is_valid": entry.is_valid,
        "last_checked": entry.last_checked.isoformat() if entry.last_checked else None,
        "updated_at": entry.updated_at.isoformat() if entry.updated_at else None,
    }


def _page_bounds(page: int, page_size: int) -> tuple[int, int]:
    page = max(1, int(page))
    page_size = min(MAX_PAGE_SIZE, max(1, int(page_size)))
    return page, page_size


class CatalogPersistence:
    """Runs reconciler batches in one transaction each and serves catalog reads."""

    def __init__(self, session_factory, reconciler: Reconciler | None = None) -> None:
        self._session_factory = session_factory
        self._reconciler = reconciler or Reconciler()

    def store_batch(self, records: Sequence[CanonicalRecord], source: Source) -> list[ReconcileOutcome]:
        if not records:
            return []
        try:
            try:
                return self._apply(records, source)
            except IntegrityError:
                # A concurrent writer inserted the same entry; the second pass merges into it.
                LOGGER.info("Concurrent insert while storing from %s; retrying the batch", source.name)
                return self._apply(records, source)
        except SQLAlchemyError as exc:
            LOGGER.exception("Failed to store batch of %d record(s) from %s", len(records), source.name)
            raise CatalogPersistenceError(str(exc)) from exc

    def _apply(self, records: Sequence[CanonicalRecord], source: Source) -> list[ReconcileOutcome]:
        with self._session_factory() as session:
            outcomes = self._reconciler.apply_batch(session, records, source)
            session.commit()
            return outcomes

    def merge_duplicates(self) -> dict[str, int]:
        try:
            with self._session_factory() as session:
                stats = self._reconciler.merge_duplicates(session)
                session.commit()
                return stats
        except SQLAlchemyError as exc:
            raise CatalogPersistenceError(str(exc)) from exc

    def get_entry(self, entry_id: str) -> dict | None:
        with self._session_factory() as session:
            entry = session.get(CatalogEntry, entry_id)
            return entry_to_payload(entry) if entry is not None else None

    def list_entries(
        self,
        *,
        category: str | None = None,
        year: str | None = None,
        region: str | None = None,
        genre: str | None = None,
        valid_only: bool = True,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> dict:
        """Filtered listing, most recently updated first."""

        page, page_size = _page_bounds(page, page_size)
        conditions = []
        if category:
            conditions.append(CatalogEntry.category == category)
        if year:
            conditions.append(CatalogEntry.year == str(year))
        if region:
            conditions.append(CatalogEntry.region == normalize_region(region))
        if genre:
            conditions.append(CatalogEntry.genre == genre)
        if valid_only:
            conditions.append(CatalogEntry.is_valid.is_(True))

        with self._session_factory() as session:
            total = session.scalar(select(func.count()).select_from(CatalogEntry).where(*conditions)) or 0
            rows = session.scalars(
                select(CatalogEntry)
                .where(*conditions)
                .order_by(CatalogEntry.updated_at.desc(), CatalogEntry.id.asc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            ).all()
            items = [entry_to_payload(row) for row in rows]
        return {"items": items, "total": total, "page": page, "page_size": page_size}

    def search(self, keyword: str, *, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE) -> dict:
        """Substring search over the title/cast/director/synopsis projection."""

        page, page_size = _page_bounds(page, page_size)
        needle = (keyword or "").strip().lower()
        if not needle:
            return {"items": [], "total": 0, "page": page, "page_size": page_size}

        pattern = f"%{needle}%"
        conditions = [
            or_(CatalogSearchEntry.document.like(pattern), CatalogSearchEntry.title.like(pattern)),
            CatalogEntry.is_valid.is_(True),
        ]
        with self._session_factory() as session:
            base = select(CatalogEntry).join(CatalogSearchEntry, CatalogSearchEntry.entry_id == CatalogEntry.id)
            total = session.scalar(
                select(func.count())
                .select_from(CatalogEntry)
                .join(CatalogSearchEntry, CatalogSearchEntry.entry_id == CatalogEntry.id)
                .where(*conditions)
            ) or 0
            rows = session.scalars(
                base.where(*conditions)
                .order_by(CatalogEntry.quality_score.desc(), CatalogEntry.updated_at.desc(), CatalogEntry.id.asc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            ).all()
            items = [entry_to_payload(row) for row in rows]
        return {"items": items, "total": total, "page": page, "page_size": page_size}
