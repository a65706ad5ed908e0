"""Configuration utilities shared by the collection pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 catalog-collector/1.0"
)

# Source category names (as reported by resource sites) mapped onto catalog categories.
DEFAULT_CATEGORY_MAP: Dict[str, str] = {
    "电影": "movie",
    "动作片": "movie",
    "喜剧片": "movie",
    "爱情片": "movie",
    "科幻片": "movie",
    "恐怖片": "movie",
    "剧情片": "movie",
    "战争片": "movie",
    "电视剧": "tv",
    "连续剧": "tv",
    "国产剧": "tv",
    "港台剧": "tv",
    "日韩剧": "tv",
    "欧美剧": "tv",
    "综艺": "variety",
    "动漫": "anime",
    "动画片": "anime",
    "短剧": "shorts",
}

# Substrings used when the exact category name is unknown; checked in order.
CATEGORY_KEYWORDS: tuple[tuple[str, str], ...] = (
    ("短剧", "shorts"),
    ("综艺", "variety"),
    ("动漫", "anime"),
    ("动画", "anime"),
    ("剧", "tv"),
    ("片", "movie"),
    ("电影", "movie"),
)


class ConfigurationError(ValueError):
    """Raised when configuration or operator input is rejected."""


@dataclass(slots=True)
class TimeoutConfig:
    probe_timeout: float = 5.0
    fetch_timeout: float = 10.0
    validate_timeout: float = 5.0


@dataclass(slots=True)
class RetryConfig:
    # One retry, no delay: a cheap page is skipped rather than waited on.
    max_attempts: int = 2
    backoff: float = 0.0


@dataclass(slots=True)
class CollectConfig:
    batch_size: int = 5
    max_workers: int = 3
    incremental_max_pages: int = 3
    incremental_max_videos: int = 100
    full_max_pages: int | None = None
    detail_lookup: bool = True
    log_buffer_size: int = 20


@dataclass(slots=True)
class HealthConfig:
    slow_threshold: float = 3.0
    max_consecutive_failures: int = 3
    success_rate_alpha: float = 0.3
    unhealthy_success_rate: float = 80.0


@dataclass(slots=True)
class ValidatorConfig:
    batch_limit: int = 100
    recheck_after_days: int = 7
    user_report_threshold: int = 3


@dataclass(slots=True)
class RetentionConfig:
    log_days: int = 30
    task_days: int = 30
    invalid_entry_days: int = 30
    execution_days: int = 30


@dataclass(slots=True)
class CollectorConfig:
    db_url: Optional[str] = None
    redis_url: Optional[str] = None
    user_agent: str = DEFAULT_USER_AGENT
    timeout: TimeoutConfig = field(default_factory=TimeoutConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    collect: CollectConfig = field(default_factory=CollectConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    validator: ValidatorConfig = field(default_factory=ValidatorConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    category_map: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_CATEGORY_MAP))

    def canonical_category(self, raw_name: str | None) -> str:
        """Map a source's category label onto a catalog category slug."""

        if not raw_name:
            return ""
        cleaned = raw_name.strip()
        if not cleaned:
            return ""
        mapped = self.category_map.get(cleaned)
        if mapped:
            return mapped
        for keyword, slug in CATEGORY_KEYWORDS:
            if keyword in cleaned:
                return slug
        return cleaned.lower()


def _env_int(env: Mapping[str, str], name: str, default: int, *, minimum: int = 0) -> int:
    value = env.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        parsed = int(value)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from exc
    if parsed < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {parsed}")
    return parsed


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    value = env.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        parsed = float(value)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from exc
    if parsed <= 0:
        raise ConfigurationError(f"{name} must be positive, got {parsed}")
    return parsed


def load_collector_config(env: Mapping[str, str] | None = None) -> CollectorConfig:
    """Build a config from defaults overlaid with ``COLLECTOR_*`` environment variables."""

    env = os.environ if env is None else env
    config = CollectorConfig()
    config.db_url = env.get("COLLECTOR_DATABASE_URL") or None
    config.redis_url = env.get("COLLECTOR_REDIS_URL") or None
    user_agent = env.get("COLLECTOR_USER_AGENT")
    if user_agent and user_agent.strip():
        config.user_agent = user_agent.strip()

    config.collect.max_workers = _env_int(
        env, "COLLECTOR_MAX_WORKERS", config.collect.max_workers, minimum=1
    )
    config.collect.batch_size = _env_int(
        env, "COLLECTOR_BATCH_SIZE", config.collect.batch_size, minimum=1
    )
    config.timeout.fetch_timeout = _env_float(
        env, "COLLECTOR_FETCH_TIMEOUT", config.timeout.fetch_timeout
    )
    config.timeout.probe_timeout = _env_float(
        env, "COLLECTOR_PROBE_TIMEOUT", config.timeout.probe_timeout
    )
    return config
