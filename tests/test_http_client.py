import unittest
from collections import deque

import httpx

from collector.config import CollectorConfig, RetryConfig
from collector.http_client import HttpFetchError, HttpFetcher


class HttpFetcherTestCase(unittest.TestCase):
    def test_server_error_is_retried_once(self) -> None:
        calls = deque()

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(str(request.url))
            if len(calls) == 1:
                return httpx.Response(502)
            return httpx.Response(200, text='{"list": []}')

        fetcher = HttpFetcher(CollectorConfig(), transport=httpx.MockTransport(handler))
        try:
            text, response = fetcher.get_text("https://api.example.com/vod", params={"ac": "list", "pg": "1"})
        finally:
            fetcher.close()

        self.assertEqual(response.status_code, 200)
        self.assertEqual(text, '{"list": []}')
        self.assertEqual(len(calls), 2)
        self.assertIn("ac=list", calls[0])

    def test_gives_up_after_retry_budget(self) -> None:
        calls = deque()

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.ConnectTimeout("timed out", request=request)

        fetcher = HttpFetcher(CollectorConfig(), transport=httpx.MockTransport(handler))
        try:
            with self.assertRaises(HttpFetchError) as ctx:
                fetcher.get_text("https://api.example.com/vod")
        finally:
            fetcher.close()

        self.assertEqual(ctx.exception.kind, "timeout")
        self.assertEqual(len(calls), 2)

    def test_zero_attempt_budget_still_reports_the_last_failure(self) -> None:
        calls = deque()
        responses = deque([httpx.Response(502)])

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return responses.popleft()

        fetcher = HttpFetcher(
            CollectorConfig(),
            retry=RetryConfig(max_attempts=0),
            transport=httpx.MockTransport(handler),
        )
        try:
            with self.assertRaises(HttpFetchError) as ctx:
                fetcher.get_text("https://api.example.com/vod")
        finally:
            fetcher.close()

        self.assertEqual(ctx.exception.kind, "http_5xx")
        self.assertEqual(ctx.exception.status_code, 502)
        self.assertEqual(len(calls), 1)

    def test_client_error_is_not_retried(self) -> None:
        calls = deque()

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(404)

        fetcher = HttpFetcher(CollectorConfig(), transport=httpx.MockTransport(handler))
        try:
            with self.assertRaises(HttpFetchError) as ctx:
                fetcher.get_text("https://api.example.com/missing")
        finally:
            fetcher.close()

        self.assertEqual(ctx.exception.kind, "http_4xx")
        self.assertEqual(ctx.exception.status_code, 404)
        self.assertEqual(len(calls), 1)

    def test_probe_falls_back_to_ranged_get(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.method, request.headers.get("Range")))
            if request.method == "HEAD":
                return httpx.Response(405)
            return httpx.Response(206, content=b"x")

        fetcher = HttpFetcher(
            CollectorConfig(),
            retry=RetryConfig(max_attempts=1),
            transport=httpx.MockTransport(handler),
        )
        try:
            response = fetcher.probe("https://cdn.example.com/video.m3u8")
        finally:
            fetcher.close()

        self.assertEqual(response.status_code, 206)
        self.assertEqual(seen, [("HEAD", None), ("GET", "bytes=0-0")])

    def test_probe_propagates_not_found(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404)

        fetcher = HttpFetcher(CollectorConfig(), transport=httpx.MockTransport(handler))
        try:
            with self.assertRaises(HttpFetchError):
                fetcher.probe("https://cdn.example.com/gone.m3u8")
        finally:
            fetcher.close()


if __name__ == "__main__":
    unittest.main()
