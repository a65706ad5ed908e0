"""Multi-source video catalog collection pipeline."""

from .config import CollectorConfig, load_collector_config
from .service import CatalogService, build_session_factory

__all__ = ["CatalogService", "CollectorConfig", "build_session_factory", "load_collector_config"]
