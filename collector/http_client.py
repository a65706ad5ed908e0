"""HTTP utilities for talking to third-party catalog endpoints."""

from __future__ import annotations

import logging
import time
from typing import Mapping

import httpx

from .config import CollectorConfig, RetryConfig

LOGGER = logging.getLogger(__name__)

# Upstream answers that cannot be satisfied by a range request.
_HEAD_UNSUPPORTED = {httpx.codes.METHOD_NOT_ALLOWED, httpx.codes.NOT_IMPLEMENTED}


class HttpFetchError(RuntimeError):
    """Raised when an HTTP request fails after its retry budget."""

    def __init__(self, message: str, *, kind: str = "network", status_code: int | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code


def _classify_status(status_code: int) -> str:
    if 400 <= status_code < 500:
        return "http_4xx"
    return "http_5xx"


class HttpFetcher:
    """Small httpx wrapper: explicit timeout, one zero-delay retry, typed errors."""

    def __init__(
        self,
        config: CollectorConfig,
        *,
        timeout: float | None = None,
        retry: RetryConfig | None = None,
        client: httpx.Client | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._config = config
        self._timeout = timeout if timeout is not None else config.timeout.fetch_timeout
        self._retry = retry or config.retry
        self._transport = transport
        self._client = client or self._build_client()
        self._owns_client = client is None

    def _build_client(self) -> httpx.Client:
        kwargs: dict[str, object] = {
            "timeout": self._timeout,
            "headers": {"User-Agent": self._config.user_agent},
            "follow_redirects": True,
        }
        if self._transport:
            kwargs["transport"] = self._transport
        return httpx.Client(**kwargs)

    def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        attempts = max(1, self._retry.max_attempts)
        attempt = 0
        while True:
            attempt += 1
            try:
                response = self._client.request(method, url, **kwargs)
            except httpx.TimeoutException as exc:
                error = HttpFetchError(f"Timeout requesting {url}: {exc}", kind="timeout")
            except httpx.HTTPError as exc:
                error = HttpFetchError(f"Network error requesting {url}: {exc}", kind="network")
            else:
                if response.is_success:
                    return response
                kind = _classify_status(response.status_code)
                error = HttpFetchError(
                    f"Unexpected status {response.status_code} for {url}",
                    kind=kind,
                    status_code=response.status_code,
                )
                if kind == "http_4xx":
                    raise error

            if attempt >= attempts:
                raise error
            LOGGER.debug("Retrying %s %s after: %s", method, url, error)
            if self._retry.backoff > 0:
                time.sleep(self._retry.backoff)

    def get_text(self, url: str, params: Mapping[str, str] | None = None) -> tuple[str, httpx.Response]:
        response = self._request("GET", url, params=params)
        return response.text, response

    def probe(self, url: str) -> httpx.Response:
        """Lightweight existence check: HEAD, falling back to a one-byte GET."""

        try:
            return self._request("HEAD", url)
        except HttpFetchError as exc:
            if exc.status_code not in _HEAD_UNSUPPORTED:
                raise
        return self._request("GET", url, headers={"Range": "bytes=0-0"})

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "HttpFetcher":  # pragma: no cover - convenience wrapper
        return self

    def __exit__(self, *_exc_info) -> None:  # pragma: no cover - convenience wrapper
        self.close()
