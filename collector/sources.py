"""Source registry and normalizer adapters for multi-source collection."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Sequence

from sqlalchemy import select

from models import Source

from .config import ConfigurationError
from .parsers import CatalogNormalizer, CategoryResolver, ListPage
from .parsers.maccms import MacCmsJsonNormalizer
from .parsers.maccms_xml import MacCmsXmlNormalizer

LOGGER = logging.getLogger(__name__)

RESPONSE_FORMATS = ("json", "xml", "auto")


class AutoDetectNormalizer(CatalogNormalizer):
    """Chooses the XML or JSON normalizer per response body."""

    def __init__(self, source_id: int, source_name: str, *, category_resolver: CategoryResolver | None = None) -> None:
        super().__init__(source_id, source_name, category_resolver=category_resolver)
        self._json = MacCmsJsonNormalizer(source_id, source_name, category_resolver=category_resolver)
        self._xml = MacCmsXmlNormalizer(source_id, source_name, category_resolver=category_resolver)

    def normalize_page(self, body: str) -> ListPage:
        if body.lstrip().startswith("<"):
            return self._xml.normalize_page(body)
        return self._json.normalize_page(body)


NormalizerFactory = Callable[..., CatalogNormalizer]


@dataclass(slots=True)
class AdapterDefinition:
    """A family of catalog APIs sharing one payload shape."""

    slug: str
    normalizer_factories: Dict[str, NormalizerFactory]

    def build_normalizer(
        self,
        source: Source,
        category_resolver: CategoryResolver | None = None,
    ) -> CatalogNormalizer:
        """Instantiate the normalizer for a source's declared response format."""

        response_format = (source.response_format or "auto").lower()
        factory = self.normalizer_factories.get(response_format) or self.normalizer_factories["auto"]
        return factory(source.id, source.name, category_resolver=category_resolver)


_ADAPTER_REGISTRY: Dict[str, AdapterDefinition] = {
    "maccms": AdapterDefinition(
        slug="maccms",
        normalizer_factories={
            "json": MacCmsJsonNormalizer,
            "xml": MacCmsXmlNormalizer,
            "auto": AutoDetectNormalizer,
        },
    ),
}


def get_adapter(slug: str) -> AdapterDefinition:
    """Return the registered adapter for the given slug."""

    try:
        return _ADAPTER_REGISTRY[slug]
    except KeyError as exc:
        raise KeyError(f"Unknown adapter '{slug}'") from exc


def list_adapters() -> list[str]:
    return sorted(_ADAPTER_REGISTRY)


class SourceRegistry:
    """Read access to configured catalog sources."""

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory

    def list_active_sources(self) -> list[Source]:
        with self._session_factory() as session:
            sources = list(
                session.scalars(
                    select(Source)
                    .where(Source.is_active.is_(True))
                    .order_by(Source.weight.desc(), Source.id.asc())
                )
            )
            session.expunge_all()
        if not sources:
            LOGGER.warning("No active catalog sources configured")
        return sources

    def get_sources(self, source_ids: Iterable[int]) -> list[Source]:
        """Active sources among ``source_ids``, in weight order."""

        wanted = [int(source_id) for source_id in source_ids]
        if not wanted:
            return []
        with self._session_factory() as session:
            sources = list(
                session.scalars(
                    select(Source)
                    .where(Source.id.in_(wanted), Source.is_active.is_(True))
                    .order_by(Source.weight.desc(), Source.id.asc())
                )
            )
            session.expunge_all()
        if len(sources) < len(set(wanted)):
            LOGGER.warning(
                "Requested sources %s resolved to %d active source(s)",
                sorted(set(wanted)),
                len(sources),
            )
        return sources

    def register_source(
        self,
        name: str,
        base_url: str,
        *,
        weight: int = 50,
        adapter: str = "maccms",
        response_format: str = "auto",
        category_ids: Sequence[str] = (),
        is_active: bool = True,
    ) -> int:
        """Create or update a source definition; returns its id."""

        if not name or not name.strip():
            raise ConfigurationError("Source name must not be empty")
        if not base_url.startswith(("http://", "https://")):
            raise ConfigurationError(f"Source base URL must be http(s): {base_url!r}")
        if response_format not in RESPONSE_FORMATS:
            raise ConfigurationError(f"Unknown response format {response_format!r}")
        get_adapter(adapter)

        with self._session_factory() as session:
            source = session.scalars(select(Source).where(Source.name == name.strip())).one_or_none()
            if source is None:
                source = Source(name=name.strip())
                session.add(source)
            source.base_url = base_url
            source.weight = int(weight)
            source.adapter = adapter
            source.response_format = response_format
            source.category_ids = [str(category) for category in category_ids]
            source.is_active = is_active
            session.commit()
            return source.id
