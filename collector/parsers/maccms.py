"""Normalizer for MacCMS-style JSON catalog APIs (``?ac=list|detail``)."""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping

from . import (
    CanonicalRecord,
    CatalogNormalizer,
    ListPage,
    NormalizationError,
    first_value,
    normalize_rating,
    normalize_region,
    normalize_year,
    parse_play_blob,
    split_genres,
    strip_html,
    upgrade_to_https,
)

LOGGER = logging.getLogger(__name__)


def _as_int(value: Any, default: int) -> int:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


class MacCmsJsonNormalizer(CatalogNormalizer):
    """Maps the ``vod_*`` payload family (and its short-name synonyms)."""

    def normalize_page(self, body: str) -> ListPage:
        try:
            payload = json.loads(body)
        except (TypeError, ValueError) as exc:
            raise NormalizationError(f"Invalid JSON payload from {self.source_name}: {exc}") from exc

        if isinstance(payload, list):
            items: Any = payload
            page, page_count = 1, 1
        elif isinstance(payload, Mapping):
            items = payload.get("list") or payload.get("data") or []
            page = _as_int(payload.get("page"), 1)
            page_count = _as_int(payload.get("pagecount", payload.get("page_count")), page)
        else:
            raise NormalizationError(f"Unexpected JSON payload type from {self.source_name}")

        if not isinstance(items, list):
            LOGGER.warning("Unexpected list section from %s: %r", self.source_name, type(items).__name__)
            items = []

        records: list[CanonicalRecord] = []
        for raw in items:
            if not isinstance(raw, Mapping):
                continue
            record = self.normalize_item(raw)
            if record is None:
                LOGGER.debug("Dropped malformed item from %s: %r", self.source_name, raw)
                continue
            records.append(record)
        return ListPage(page=page, page_count=page_count, records=records)

    def normalize_item(self, raw: Mapping[str, Any]) -> CanonicalRecord | None:
        item_id = first_value(raw, "vod_id", "id")
        title = first_value(raw, "vod_name", "name", "title")
        if not item_id or not title:
            return None

        category_name = first_value(raw, "type_name", "type")
        play_index = parse_play_blob(
            first_value(raw, "vod_play_from", "play_from"),
            first_value(raw, "vod_play_url", "play_url"),
            self.source_name,
        )
        return CanonicalRecord(
            source_id=self.source_id,
            source_name=self.source_name,
            source_item_id=item_id,
            raw_title=title,
            year=normalize_year(first_value(raw, "vod_year", "year")),
            region=normalize_region(first_value(raw, "vod_area", "area")),
            category=self.resolve_category(category_name),
            source_category_id=first_value(raw, "type_id", "tid"),
            genres=split_genres(category_name, first_value(raw, "vod_class", "vod_tag", "tag")),
            cast=first_value(raw, "vod_actor", "actor"),
            director=first_value(raw, "vod_director", "director"),
            synopsis=strip_html(first_value(raw, "vod_content", "des", "blurb", "vod_blurb")),
            remark=first_value(raw, "vod_remarks", "note", "remarks"),
            rating=normalize_rating(first_value(raw, "vod_score", "score", "vod_douban_score")),
            cover_url=upgrade_to_https(first_value(raw, "vod_pic", "pic")),
            play_index=play_index,
        )
