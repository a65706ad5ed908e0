"""Normalizer for MacCMS-style XML feeds (``<rss><list><video>``)."""

from __future__ import annotations

import logging
from xml.etree import ElementTree as ET

from . import (
    GROUP_SEPARATOR,
    CanonicalRecord,
    CatalogNormalizer,
    ListPage,
    NormalizationError,
    normalize_rating,
    normalize_region,
    normalize_year,
    parse_play_blob,
    split_genres,
    strip_html,
    upgrade_to_https,
)

LOGGER = logging.getLogger(__name__)


def _text(element: ET.Element, *tags: str) -> str:
    for tag in tags:
        child = element.find(tag)
        if child is not None and child.text and child.text.strip():
            return child.text.strip()
    return ""


def _int_attr(element: ET.Element | None, name: str, default: int) -> int:
    if element is None:
        return default
    try:
        value = int(element.get(name, ""))
    except ValueError:
        return default
    return value if value > 0 else default


class MacCmsXmlNormalizer(CatalogNormalizer):
    """Maps the XML rendition of the MacCMS catalog API."""

    def normalize_page(self, body: str) -> ListPage:
        try:
            root = ET.fromstring(body.strip())
        except ET.ParseError as exc:
            raise NormalizationError(f"Invalid XML payload from {self.source_name}: {exc}") from exc

        list_element = root if root.tag == "list" else root.find("list")
        page = _int_attr(list_element, "page", _int_attr(root, "page", 1))
        page_count = _int_attr(list_element, "pagecount", _int_attr(root, "pagecount", page))

        items = root.iter("video")
        records: list[CanonicalRecord] = []
        for element in items:
            record = self.normalize_item(element)
            if record is None:
                LOGGER.debug("Dropped malformed XML item from %s", self.source_name)
                continue
            records.append(record)
        if not records:
            for element in root.iter("item"):
                record = self.normalize_item(element)
                if record is not None:
                    records.append(record)
        return ListPage(page=page, page_count=page_count, records=records)

    def normalize_item(self, element: ET.Element) -> CanonicalRecord | None:
        item_id = _text(element, "id", "vod_id")
        title = _text(element, "name", "vod_name")
        if not item_id or not title:
            return None

        play_from, play_url = self._play_groups(element)
        category_name = _text(element, "type", "type_name")
        return CanonicalRecord(
            source_id=self.source_id,
            source_name=self.source_name,
            source_item_id=item_id,
            raw_title=title,
            year=normalize_year(_text(element, "year", "vod_year")),
            region=normalize_region(_text(element, "area", "vod_area")),
            category=self.resolve_category(category_name),
            source_category_id=_text(element, "tid", "type_id"),
            genres=split_genres(category_name, _text(element, "tag", "vod_tag")),
            cast=_text(element, "actor", "vod_actor"),
            director=_text(element, "director", "vod_director"),
            synopsis=strip_html(_text(element, "des", "vod_content")),
            remark=_text(element, "note", "vod_remarks"),
            rating=normalize_rating(_text(element, "score", "vod_score")),
            cover_url=upgrade_to_https(_text(element, "pic", "vod_pic")),
            play_index=parse_play_blob(play_from, play_url, self.source_name),
        )

    @staticmethod
    def _play_groups(element: ET.Element) -> tuple[str, str]:
        names: list[str] = []
        blobs: list[str] = []
        dl = element.find("dl")
        if dl is not None:
            for dd in dl.findall("dd"):
                blob = (dd.text or "").strip()
                if not blob:
                    continue
                names.append((dd.get("flag") or "").strip())
                blobs.append(blob)
        if blobs:
            return GROUP_SEPARATOR.join(names), GROUP_SEPARATOR.join(blobs)
        return _text(element, "vod_play_from"), _text(element, "vod_play_url")
