"""Per-source paginated catalog client."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Iterator, Sequence

from models import Source

from .http_client import HttpFetchError, HttpFetcher
from .parsers import CanonicalRecord, CatalogNormalizer, NormalizationError

LOGGER = logging.getLogger(__name__)

_DETAIL_FIELDS = (
    "year",
    "region",
    "category",
    "source_category_id",
    "cast",
    "director",
    "synopsis",
    "remark",
    "rating",
    "cover_url",
)


@dataclass(slots=True)
class SpiderPage:
    page: int
    records: list[CanonicalRecord] = field(default_factory=list)
    page_count: int | None = None
    failed: bool = False
    error: str | None = None


def layer_detail(listed: CanonicalRecord, detail: CanonicalRecord) -> CanonicalRecord:
    """Overlay non-empty detail values on a list record."""

    updates: dict[str, object] = {}
    for name in _DETAIL_FIELDS:
        value = getattr(detail, name)
        if value:
            updates[name] = value
    if detail.genres:
        updates["genres"] = list(detail.genres)
    if detail.play_index:
        updates["play_index"] = detail.play_index
    if detail.raw_title:
        updates["raw_title"] = detail.raw_title
    return replace(listed, **updates)


class CatalogSpider:
    """Walks one source's list endpoint and resolves item details."""

    def __init__(
        self,
        source: Source,
        normalizer: CatalogNormalizer,
        fetcher: HttpFetcher,
        *,
        max_consecutive_failures: int = 3,
    ) -> None:
        self._source = source
        self._normalizer = normalizer
        self._fetcher = fetcher
        self._max_consecutive_failures = max(1, max_consecutive_failures)

    @property
    def source(self) -> Source:
        return self._source

    def fetch_page(self, page: int, category_id: str | None = None) -> SpiderPage:
        params = {"ac": "list", "pg": str(page)}
        if category_id:
            params["t"] = str(category_id)
        try:
            body, _ = self._fetcher.get_text(self._source.base_url, params=params)
            listing = self._normalizer.normalize_page(body)
        except (HttpFetchError, NormalizationError) as exc:
            LOGGER.warning(
                "Skipping page %d of %s (category=%s): %s",
                page,
                self._source.name,
                category_id or "all",
                exc,
            )
            return SpiderPage(page=page, failed=True, error=str(exc))
        return SpiderPage(page=page, records=listing.records, page_count=listing.page_count)

    def iter_pages(
        self,
        category_id: str | None = None,
        *,
        start_page: int = 1,
        last_page: int | None = None,
    ) -> Iterator[SpiderPage]:
        """Yield pages in increasing order until an empty page or a ceiling.

        Failed pages are yielded (flagged) and skipped; a run of failures
        ends the walk for this category without raising.
        """

        page = max(1, start_page)
        known_page_count: int | None = None
        consecutive_failures = 0
        while True:
            if last_page is not None and page > last_page:
                break
            if known_page_count is not None and page > known_page_count:
                break

            result = self.fetch_page(page, category_id)
            yield result

            if result.failed:
                consecutive_failures += 1
                if consecutive_failures >= self._max_consecutive_failures:
                    LOGGER.warning(
                        "Giving up on %s category=%s after %d failed pages",
                        self._source.name,
                        category_id or "all",
                        consecutive_failures,
                    )
                    break
            else:
                consecutive_failures = 0
                if not result.records:
                    break
                if result.page_count:
                    known_page_count = result.page_count
            page += 1

    def fetch_details(self, records: Sequence[CanonicalRecord]) -> list[CanonicalRecord]:
        """Resolve details for one batch; failures keep the list data."""

        if not records:
            return []
        ids = [record.source_item_id for record in records]
        params = {"ac": "detail", "ids": ",".join(ids)}
        try:
            body, _ = self._fetcher.get_text(self._source.base_url, params=params)
            listing = self._normalizer.normalize_page(body)
        except (HttpFetchError, NormalizationError) as exc:
            LOGGER.warning("Detail lookup failed for %s ids=%s: %s", self._source.name, ids, exc)
            return list(records)

        details = {detail.source_item_id: detail for detail in listing.records}
        return [
            layer_detail(record, details[record.source_item_id])
            if record.source_item_id in details
            else record
            for record in records
        ]

    def search(self, keyword: str) -> list[CanonicalRecord]:
        """Keyword detail lookup, used to re-fetch a title's play groups."""

        params = {"ac": "detail", "wd": keyword}
        try:
            body, _ = self._fetcher.get_text(self._source.base_url, params=params)
            return self._normalizer.normalize_page(body).records
        except (HttpFetchError, NormalizationError) as exc:
            LOGGER.warning("Keyword lookup %r failed for %s: %s", keyword, self._source.name, exc)
            return []
