"""Key-value cache over Redis with JSON values."""

from __future__ import annotations

import json
import logging
from typing import Any

import redis

LOGGER = logging.getLogger(__name__)

LATEST_TTL = 3600
TOP_RATED_TTL = 3600


class KeyValueCache:
    """Best-effort cache: a missing client or a Redis error never fails the caller."""

    def __init__(self, client: redis.Redis | None = None, *, prefix: str = "catalog:") -> None:
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str | None, **kwargs: Any) -> "KeyValueCache":
        if not url:
            LOGGER.debug("Cache disabled: no Redis URL configured")
            return cls(None, **kwargs)
        client = redis.from_url(url, decode_responses=True, socket_timeout=5, socket_connect_timeout=5)
        return cls(client, **kwargs)

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def get(self, key: str) -> Any:
        if self._client is None:
            return None
        try:
            raw = self._client.get(self._key(key))
        except redis.RedisError as exc:
            LOGGER.warning("Cache get failed for %s: %s", key, exc)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            LOGGER.warning("Discarding undecodable cache value for %s", key)
            return None

    def put(self, key: str, value: Any, ttl: int) -> bool:
        if self._client is None:
            return False
        try:
            self._client.setex(self._key(key), int(ttl), json.dumps(value, ensure_ascii=False))
        except redis.RedisError as exc:
            LOGGER.warning("Cache put failed for %s: %s", key, exc)
            return False
        return True

    def delete(self, key: str) -> bool:
        if self._client is None:
            return False
        try:
            self._client.delete(self._key(key))
        except redis.RedisError as exc:
            LOGGER.warning("Cache delete failed for %s: %s", key, exc)
            return False
        return True
