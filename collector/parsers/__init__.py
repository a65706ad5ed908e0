"""Normalizer interfaces and canonical records for catalog ingestion."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping

from bs4 import BeautifulSoup

GROUP_SEPARATOR = "$$$"
EPISODE_SEPARATOR = "#"
NAME_SEPARATOR = "$"

_YEAR_PATTERN = re.compile(r"(19|20)\d{2}")
_WHITESPACE_PATTERN = re.compile(r"\s+")
_EMPTY_RATINGS = {"", "0", "0.0", "0.00", "暂无评分"}
_REGION_SEPARATORS = re.compile(r"[,，/、]")
_REGION_ALIASES = {
    "大陆": "中国大陆",
    "内地": "中国大陆",
    "国产": "中国大陆",
    "中国": "中国大陆",
    "香港": "中国香港",
    "港": "中国香港",
    "台湾": "中国台湾",
    "台": "中国台湾",
    "韩": "韩国",
    "南韩": "韩国",
    "日": "日本",
    "美": "美国",
    "英": "英国",
    "泰": "泰国",
}


@dataclass(slots=True)
class Episode:
    name: str
    url: str

    def to_payload(self) -> dict[str, str]:
        return {"name": self.name, "url": self.url}


# Ordered mapping of play-group label to its episodes.
PlayIndex = dict[str, list[Episode]]


@dataclass(slots=True)
class CanonicalRecord:
    """Source-agnostic representation of one title before merging."""

    source_id: int
    source_name: str
    source_item_id: str
    raw_title: str
    year: str = ""
    region: str = ""
    category: str = ""
    source_category_id: str = ""
    genres: list[str] = field(default_factory=list)
    cast: str = ""
    director: str = ""
    synopsis: str = ""
    remark: str = ""
    rating: str = ""
    cover_url: str = ""
    play_index: PlayIndex = field(default_factory=dict)

    def episode_count(self) -> int:
        return sum(len(episodes) for episodes in self.play_index.values())


@dataclass(slots=True)
class ListPage:
    page: int
    page_count: int
    records: list[CanonicalRecord]


class NormalizationError(RuntimeError):
    """Raised when a payload cannot be interpreted by a normalizer at all."""


CategoryResolver = Callable[[str | None], str]


class CatalogNormalizer:
    """Base interface for per-family payload normalizers."""

    def __init__(
        self,
        source_id: int,
        source_name: str,
        *,
        category_resolver: CategoryResolver | None = None,
    ) -> None:
        self.source_id = source_id
        self.source_name = source_name
        self._category_resolver = category_resolver or (lambda raw: (raw or "").strip().lower())

    def normalize_page(self, body: str) -> ListPage:  # pragma: no cover - interface only
        raise NotImplementedError

    def resolve_category(self, raw_name: str | None) -> str:
        return self._category_resolver(raw_name)


def first_value(raw: Mapping[str, object], *keys: str) -> str:
    """Return the first non-empty value among field-name synonyms, as text."""

    for key in keys:
        value = raw.get(key)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return ""


def normalize_year(value: str) -> str:
    match = _YEAR_PATTERN.search(value or "")
    return match.group(0) if match else ""


def normalize_region(value: str) -> str:
    """Map region aliases to one canonical name; composite regions are split and de-duplicated."""

    regions: list[str] = []
    for part in _REGION_SEPARATORS.split(value or ""):
        cleaned = part.strip()
        if not cleaned:
            continue
        canonical = _REGION_ALIASES.get(cleaned, cleaned)
        if canonical not in regions:
            regions.append(canonical)
    return ",".join(regions)


def normalize_rating(value: str) -> str:
    cleaned = (value or "").strip()
    if cleaned in _EMPTY_RATINGS:
        return ""
    try:
        if float(cleaned) <= 0:
            return ""
    except ValueError:
        return ""
    return cleaned


def split_genres(*values: str) -> list[str]:
    genres: list[str] = []
    for value in values:
        for part in re.split(r"[,，/、\s]+", value or ""):
            cleaned = part.strip()
            if cleaned and cleaned not in genres:
                genres.append(cleaned)
    return genres


def strip_html(value: str | None) -> str:
    """Reduce an HTML fragment to collapsed plain text."""

    if not value:
        return ""
    if "<" not in value and "&" not in value:
        return _WHITESPACE_PATTERN.sub(" ", value).strip()
    text = BeautifulSoup(value, "html.parser").get_text(" ", strip=True)
    return _WHITESPACE_PATTERN.sub(" ", text).strip()


def upgrade_to_https(url: str) -> str:
    if url.startswith("http://"):
        return "https://" + url[len("http://"):]
    return url


def is_playable_url(url: str | None) -> bool:
    if not url:
        return False
    return url.startswith("https://") or url.startswith("http://")


def parse_episodes(raw: str) -> list[Episode]:
    """Parse ``ep1$url1#ep2$url2``; malformed segments are dropped."""

    episodes: list[Episode] = []
    if not raw:
        return episodes
    for position, part in enumerate(raw.split(EPISODE_SEPARATOR), start=1):
        segment = part.strip()
        if not segment:
            continue
        name, sep, url = segment.partition(NAME_SEPARATOR)
        if not sep:
            name, url = "", segment
        name = name.strip() or f"第{position}集"
        url = upgrade_to_https(url.strip())
        if not is_playable_url(url):
            continue
        episodes.append(Episode(name=name, url=url))
    return episodes


def parse_play_blob(play_from: str, play_url: str, source_name: str) -> PlayIndex:
    """Parse the ``$$$``-packed play groups of one source into a play index.

    Labels are ``<source>-<group>`` so groups from different sources never
    collide; a group without a name is labelled with the source name (plus
    its position when there are several).
    """

    index: PlayIndex = {}
    if not play_url:
        return index

    group_names = [name.strip() for name in (play_from or "").split(GROUP_SEPARATOR)]
    groups = play_url.split(GROUP_SEPARATOR)
    for position, group in enumerate(groups):
        episodes = parse_episodes(group)
        if not episodes:
            continue
        group_name = group_names[position] if position < len(group_names) else ""
        if group_name:
            label = f"{source_name}-{group_name}"
        elif len(groups) > 1:
            label = f"{source_name}-{position + 1}"
        else:
            label = source_name
        if label in index:
            index[label].extend(episodes)
        else:
            index[label] = episodes
    return index


def play_index_to_payload(index: Mapping[str, Iterable[Episode]]) -> dict[str, list[dict[str, str]]]:
    return {label: [episode.to_payload() for episode in episodes] for label, episodes in index.items()}


def play_index_from_payload(payload: Mapping[str, object] | None) -> PlayIndex:
    """Rebuild a play index from stored JSON, skipping anything malformed."""

    index: PlayIndex = {}
    if not isinstance(payload, Mapping):
        return index
    for label, items in payload.items():
        if not isinstance(items, list):
            continue
        episodes = [
            Episode(name=str(item.get("name") or ""), url=str(item["url"]))
            for item in items
            if isinstance(item, Mapping) and is_playable_url(item.get("url"))
        ]
        if episodes:
            index[str(label)] = episodes
    return index
