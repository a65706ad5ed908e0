"""Deduplication, field-level merging and quality scoring of catalog entries.

Every source record is folded into the entry identified by its match key
``(normalized title, year, category)``. Merging is field-wise and order
independent: each contested field remembers which priority supplied it, so
ingesting the same records in any order converges to the same entry.
"""

from __future__ import annotations

import hashlib
import json
import logging
import unicodedata
from collections import defaultdict
from dataclasses import dataclass, field, replace
from typing import Any, Sequence
from urllib.parse import urlparse

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from models import CatalogEntry, CatalogSearchEntry, InvalidUrlReport, Source, utcnow

from .parsers import CanonicalRecord, play_index_to_payload

LOGGER = logging.getLogger(__name__)

PREFER_HIGHER_PRIORITY = "prefer-higher-priority"
PREFER_NON_EMPTY = "prefer-non-empty"
UNION = "union"

MERGE_POLICY: dict[str, str] = {
    "synopsis": PREFER_HIGHER_PRIORITY,
    "rating": PREFER_HIGHER_PRIORITY,
    "year": PREFER_HIGHER_PRIORITY,
    "region": PREFER_HIGHER_PRIORITY,
    "remark": PREFER_HIGHER_PRIORITY,
    "genre": PREFER_HIGHER_PRIORITY,
    "director": PREFER_HIGHER_PRIORITY,
    "cover_url": PREFER_HIGHER_PRIORITY,
    "cast": PREFER_NON_EMPTY,
    "title": PREFER_NON_EMPTY,
    "play_index": UNION,
    "sub_genres": UNION,
    "source_names": UNION,
}

OUTCOME_NEW = "new"
OUTCOME_UPDATED = "updated"
OUTCOME_SKIPPED = "skipped"

MatchKey = tuple[str, str, str]
PlayPayload = dict[str, list[dict[str, str]]]


def normalize_title(title: str | None) -> str:
    """NFKC, lower-case, and drop whitespace, punctuation and symbols."""

    if not title:
        return ""
    folded = unicodedata.normalize("NFKC", title).lower()
    return "".join(ch for ch in folded if unicodedata.category(ch)[0] not in {"P", "S", "Z", "C"})


def match_key(record: CanonicalRecord) -> MatchKey:
    return normalize_title(record.raw_title), record.year or "", record.category or ""


def entry_id_for(key: MatchKey) -> str:
    normalized, year, category = key
    return hashlib.sha1(f"{normalized}|{year}|{category}".encode("utf-8")).hexdigest()


@dataclass(slots=True)
class CatalogState:
    """Plain, session-free view of one catalog entry's mergeable fields."""

    id: str
    title: str
    normalized_title: str
    category: str = ""
    year: str = ""
    region: str = ""
    genre: str = ""
    sub_genres: list[str] = field(default_factory=list)
    cast: str = ""
    director: str = ""
    synopsis: str = ""
    cover_url: str = ""
    play_index: PlayPayload = field(default_factory=dict)
    rating: str = ""
    remark: str = ""
    source_priority: int = 0
    source_names: list[str] = field(default_factory=list)
    field_provenance: dict[str, Any] = field(default_factory=dict)


def _is_well_formed_url(url: str | None) -> bool:
    if not url:
        return False
    parsed = urlparse(url)
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def quality_score(state: CatalogState) -> int:
    """Fixed-point completeness score in ``[0, 100]``."""

    score = 0
    if len(state.synopsis or "") >= 20:
        score += 25
    if state.cast:
        score += 15
    if state.rating:
        score += 15
    episodes = [episode for group in state.play_index.values() for episode in group]
    if episodes:
        score += 15
        if _is_well_formed_url(episodes[0].get("url")):
            score += 30
    return score


def _provenance(priority: int, source_name: str) -> dict[str, Any]:
    return {"priority": priority, "source": source_name}


def _ordered_play_index(groups: dict[str, list[dict[str, str]]], provenance: dict[str, Any]) -> PlayPayload:
    def sort_key(label: str) -> tuple[int, str]:
        return -int(provenance.get(label, {}).get("priority", 0)), label

    return {label: groups[label] for label in sorted(groups, key=sort_key)}


def state_from_record(record: CanonicalRecord, priority: int) -> CatalogState:
    """Build the single-source state a record would produce on its own."""

    key = match_key(record)
    genres = list(record.genres)
    state = CatalogState(
        id=entry_id_for(key),
        title=record.raw_title.strip(),
        normalized_title=key[0],
        category=key[2],
        year=key[1],
        region=record.region,
        genre=genres[0] if genres else "",
        sub_genres=sorted(set(genres[1:])),
        cast=record.cast,
        director=record.director,
        synopsis=record.synopsis,
        cover_url=record.cover_url,
        rating=record.rating,
        remark=record.remark,
        source_priority=priority,
        source_names=[record.source_name],
    )

    provenance: dict[str, Any] = {}
    for name, strategy in MERGE_POLICY.items():
        if strategy == UNION:
            continue
        if getattr(state, name):
            provenance[name] = _provenance(priority, record.source_name)
    play_payload = play_index_to_payload(record.play_index)
    provenance["play_index"] = {label: _provenance(priority, record.source_name) for label in play_payload}
    state.play_index = _ordered_play_index(play_payload, provenance["play_index"])
    state.field_provenance = provenance
    return state


def _field_priority(state: CatalogState, name: str) -> tuple[int, str]:
    recorded = state.field_provenance.get(name)
    if isinstance(recorded, dict):
        return int(recorded.get("priority", 0)), str(recorded.get("source", ""))
    return 0, ""


def _pick_higher_priority(name: str, existing: CatalogState, incoming: CatalogState) -> tuple[str, Any]:
    current = getattr(existing, name) or ""
    candidate = getattr(incoming, name) or ""
    if not candidate:
        return current, existing.field_provenance.get(name)
    if not current:
        return candidate, incoming.field_provenance.get(name)
    incoming_priority, incoming_source = _field_priority(incoming, name)
    existing_priority, existing_source = _field_priority(existing, name)
    if (incoming_priority, candidate, incoming_source) > (existing_priority, current, existing_source):
        return candidate, incoming.field_provenance.get(name)
    return current, existing.field_provenance.get(name)


def _pick_non_empty(name: str, existing: CatalogState, incoming: CatalogState) -> tuple[str, Any]:
    current = getattr(existing, name) or ""
    candidate = getattr(incoming, name) or ""
    if not candidate:
        return current, existing.field_provenance.get(name)
    if not current:
        return candidate, incoming.field_provenance.get(name)
    incoming_priority, incoming_source = _field_priority(incoming, name)
    existing_priority, existing_source = _field_priority(existing, name)
    if (len(candidate), incoming_priority, candidate, incoming_source) > (
        len(current),
        existing_priority,
        current,
        existing_source,
    ):
        return candidate, incoming.field_provenance.get(name)
    return current, existing.field_provenance.get(name)


def _group_rank(episodes: list[dict[str, str]], provenance: Any) -> tuple[int, int, str, str]:
    if not isinstance(provenance, dict):
        provenance = {}
    return (
        int(provenance.get("priority", 0)),
        len(episodes),
        json.dumps(episodes, ensure_ascii=False, sort_keys=True),
        str(provenance.get("source", "")),
    )


def _union_play_index(existing: CatalogState, incoming: CatalogState) -> tuple[PlayPayload, dict[str, Any]]:
    existing_prov = existing.field_provenance.get("play_index") or {}
    incoming_prov = incoming.field_provenance.get("play_index") or {}
    groups: dict[str, list[dict[str, str]]] = dict(existing.play_index)
    provenance: dict[str, Any] = {label: existing_prov.get(label) for label in groups}
    for label, episodes in incoming.play_index.items():
        if label not in groups or _group_rank(episodes, incoming_prov.get(label)) > _group_rank(
            groups[label], provenance.get(label)
        ):
            groups[label] = episodes
            provenance[label] = incoming_prov.get(label)
    provenance = {label: value for label, value in provenance.items() if value is not None}
    return _ordered_play_index(groups, provenance), provenance


def merge_state(existing: CatalogState, incoming: CatalogState) -> CatalogState:
    """Merge ``incoming`` into ``existing`` without touching either argument."""

    merged = replace(existing, field_provenance=dict(existing.field_provenance))
    for name, strategy in MERGE_POLICY.items():
        if strategy == PREFER_HIGHER_PRIORITY:
            value, provenance = _pick_higher_priority(name, existing, incoming)
        elif strategy == PREFER_NON_EMPTY:
            value, provenance = _pick_non_empty(name, existing, incoming)
        else:
            continue
        setattr(merged, name, value)
        if provenance is not None:
            merged.field_provenance[name] = provenance
        else:
            merged.field_provenance.pop(name, None)

    merged.play_index, merged.field_provenance["play_index"] = _union_play_index(existing, incoming)
    merged.sub_genres = sorted(set(existing.sub_genres) | set(incoming.sub_genres))
    merged.source_names = sorted(set(existing.source_names) | set(incoming.source_names))
    merged.source_priority = max(existing.source_priority, incoming.source_priority)
    return merged


def state_from_entry(entry: CatalogEntry) -> CatalogState:
    return CatalogState(
        id=entry.id,
        title=entry.title or "",
        normalized_title=entry.normalized_title or "",
        category=entry.category or "",
        year=entry.year or "",
        region=entry.region or "",
        genre=entry.genre or "",
        sub_genres=list(entry.sub_genres or []),
        cast=entry.cast or "",
        director=entry.director or "",
        synopsis=entry.synopsis or "",
        cover_url=entry.cover_url or "",
        play_index=dict(entry.play_index or {}),
        rating=entry.rating or "",
        remark=entry.remark or "",
        source_priority=entry.source_priority or 0,
        source_names=list(entry.source_names or []),
        field_provenance=dict(entry.field_provenance or {}),
    )


def apply_state(entry: CatalogEntry, state: CatalogState) -> None:
    """Copy a state onto a row; JSON columns always receive fresh objects."""

    entry.title = state.title
    entry.normalized_title = state.normalized_title
    entry.category = state.category
    entry.year = state.year
    entry.region = state.region
    entry.genre = state.genre
    entry.sub_genres = list(state.sub_genres)
    entry.cast = state.cast
    entry.director = state.director
    entry.synopsis = state.synopsis
    entry.cover_url = state.cover_url
    entry.play_index = {label: [dict(episode) for episode in episodes] for label, episodes in state.play_index.items()}
    entry.rating = state.rating
    entry.remark = state.remark
    entry.source_priority = state.source_priority
    entry.source_names = list(state.source_names)
    entry.field_provenance = json.loads(json.dumps(state.field_provenance))
    entry.quality_score = quality_score(state)


def search_document(entry: CatalogEntry) -> str:
    parts = [entry.title, entry.cast, entry.director, entry.synopsis]
    return " ".join(part for part in parts if part).lower()


def sync_search_entry(session: Session, entry: CatalogEntry) -> None:
    row = session.get(CatalogSearchEntry, entry.id)
    if row is None:
        row = CatalogSearchEntry(entry_id=entry.id)
        session.add(row)
    row.title = entry.title
    row.cast = entry.cast
    row.director = entry.director
    row.synopsis = entry.synopsis
    row.document = search_document(entry)


@dataclass(slots=True)
class ReconcileOutcome:
    status: str
    entry_id: str | None = None
    title: str = ""
    source_item_id: str = ""


class Reconciler:
    """Folds canonical records into catalog rows inside a caller's transaction."""

    def apply_batch(
        self,
        session: Session,
        records: Sequence[CanonicalRecord],
        source: Source,
    ) -> list[ReconcileOutcome]:
        priority = int(source.weight or 0)
        outcomes: list[ReconcileOutcome] = []
        for record in records:
            outcomes.append(self._apply_one(session, record, priority))
        session.flush()
        return outcomes

    def _apply_one(self, session: Session, record: CanonicalRecord, priority: int) -> ReconcileOutcome:
        if not record.raw_title or not normalize_title(record.raw_title):
            LOGGER.debug("Skipping untitled record %s from %s", record.source_item_id, record.source_name)
            return ReconcileOutcome(status=OUTCOME_SKIPPED, source_item_id=record.source_item_id)

        incoming = state_from_record(record, priority)
        entry = session.get(CatalogEntry, incoming.id)
        now = utcnow()
        if entry is None:
            entry = CatalogEntry(id=incoming.id, is_valid=True, created_at=now, updated_at=now)
            apply_state(entry, incoming)
            session.add(entry)
            sync_search_entry(session, entry)
            # Later records in the same batch must see this row.
            session.flush()
            return ReconcileOutcome(OUTCOME_NEW, entry.id, entry.title, record.source_item_id)

        existing = state_from_entry(entry)
        merged = merge_state(existing, incoming)
        if merged == existing:
            return ReconcileOutcome(OUTCOME_SKIPPED, entry.id, entry.title, record.source_item_id)

        apply_state(entry, merged)
        entry.updated_at = now
        sync_search_entry(session, entry)
        return ReconcileOutcome(OUTCOME_UPDATED, entry.id, entry.title, record.source_item_id)

    def merge_duplicates(self, session: Session) -> dict[str, int]:
        """Collapse rows sharing a match key into one canonical row."""

        groups: dict[MatchKey, list[CatalogEntry]] = defaultdict(list)
        for entry in session.scalars(select(CatalogEntry)):
            key = (normalize_title(entry.title), entry.year or "", entry.category or "")
            groups[key].append(entry)

        merged_groups = 0
        removed = 0
        for key, members in groups.items():
            if len(members) < 2:
                continue
            derived_id = entry_id_for(key)
            canonical = next((member for member in members if member.id == derived_id), None)
            if canonical is None:
                canonical = max(members, key=lambda row: (row.quality_score or 0, row.source_priority or 0, row.id))
            losers = sorted((member for member in members if member is not canonical), key=lambda row: row.id)

            state = state_from_entry(canonical)
            for loser in losers:
                state = merge_state(state, state_from_entry(loser))
            state.normalized_title = key[0]
            apply_state(canonical, state)
            canonical.updated_at = utcnow()

            loser_ids = [loser.id for loser in losers]
            session.execute(
                update(InvalidUrlReport)
                .where(InvalidUrlReport.entry_id.in_(loser_ids), InvalidUrlReport.resolved.is_(False))
                .values(entry_id=canonical.id)
            )
            session.execute(delete(CatalogSearchEntry).where(CatalogSearchEntry.entry_id.in_(loser_ids)))
            for loser in losers:
                session.delete(loser)
            sync_search_entry(session, canonical)

            merged_groups += 1
            removed += len(losers)
            LOGGER.info("Merged %d duplicate(s) into %s (%s)", len(losers), canonical.id, canonical.title)

        session.flush()
        return {"groups": merged_groups, "removed": removed}

