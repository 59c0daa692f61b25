"""Rate-limited, cached HTTP access shared by every REST feed adapter.

One ``RateLimitedFetcher`` is shared across instruments so upstream APIs see
a single well-behaved client:

- a minimum interval between requests, enforced under an ``asyncio.Lock``
- a short TTL response cache keyed by URL and query parameters
- exponential backoff with jitter on 429 (honouring ``Retry-After``)
- retry on transient 5xx and transport errors
"""

import asyncio
import logging
import random
import time
from typing import Any, Optional

import httpx

from trendpilot.errors import FeedUnavailable, RateLimited

logger = logging.getLogger("trendpilot.feeds")

# Retry settings
_MAX_RETRIES = 3
_RETRYABLE_STATUS_CODES = {502, 503, 504}
_RATE_LIMIT_STATUS = 429


class RateLimitedFetcher:
    """Async JSON fetcher with request spacing, caching, and backoff.

    Args:
        min_interval: Minimum seconds between two outgoing requests.
        backoff_base: First backoff delay in seconds; doubles per attempt.
        backoff_cap: Upper bound on a single backoff delay.
        cache_ttl: Seconds a response stays fresh (0 disables caching).
        max_retries: Attempts per request before giving up.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        min_interval: float = 1.0,
        backoff_base: float = 1.0,
        backoff_cap: float = 10.0,
        cache_ttl: float = 5.0,
        max_retries: int = _MAX_RETRIES,
        timeout: float = 15.0,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        self._min_interval = min_interval
        self._backoff_base = backoff_base
        self._backoff_cap = backoff_cap
        self._cache_ttl = cache_ttl
        self._max_retries = max_retries
        self._timeout = timeout
        self._headers = {"Accept": "application/json", **(headers or {})}
        self._gate = asyncio.Lock()
        self._last_request_at: float = 0.0
        self._cache: dict[tuple, tuple[float, Any]] = {}
        self.request_count: int = 0

    # ── Public API ───────────────────────────────────────────────────────

    async def get_json(
        self,
        url: str,
        params: Optional[dict[str, Any]] = None,
        cache_ttl: Optional[float] = None,
    ) -> Any:
        """GET *url* and return the decoded JSON body.

        Served from cache when a fresh entry exists.

        Raises:
            RateLimited: Upstream still answered 429 after all retries.
            FeedUnavailable: Any other failure after all retries.
        """
        ttl = self._cache_ttl if cache_ttl is None else cache_ttl
        key = (url, tuple(sorted((params or {}).items())))
        cached = self._cache.get(key)
        if cached is not None and ttl > 0 and time.monotonic() - cached[0] < ttl:
            return cached[1]

        resp = await self._request_with_retry(url, params)
        try:
            data = resp.json()
        except ValueError as exc:
            raise FeedUnavailable(f"Invalid JSON from {url}: {exc}") from exc

        if ttl > 0:
            self._cache[key] = (time.monotonic(), data)
        return data

    def clear_cache(self) -> None:
        self._cache.clear()

    def backoff_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay before retry number *attempt* (0-based), jittered and capped."""
        delay = self._backoff_base * (2 ** attempt)
        delay += random.uniform(0, self._backoff_base)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return min(delay, self._backoff_cap)

    # ── Internals ────────────────────────────────────────────────────────

    async def _wait_for_slot(self) -> None:
        async with self._gate:
            elapsed = time.monotonic() - self._last_request_at
            if elapsed < self._min_interval:
                await asyncio.sleep(self._min_interval - elapsed)
            self._last_request_at = time.monotonic()

    async def _request_with_retry(
        self,
        url: str,
        params: Optional[dict[str, Any]],
    ) -> httpx.Response:
        """Execute a GET with exponential-backoff retry.

        Retries on rate limits (429), transient server errors (502, 503,
        504) and transport errors.  Other HTTP errors fail immediately.
        """
        last_exc: Optional[Exception] = None

        for attempt in range(self._max_retries):
            await self._wait_for_slot()
            self.request_count += 1
            try:
                async with httpx.AsyncClient() as client:
                    resp = await client.get(
                        url,
                        headers=self._headers,
                        params=params,
                        timeout=self._timeout,
                    )
            except httpx.TransportError as exc:
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "GET %s transport error (%s) — retry %d/%d in %.1fs",
                    url, exc, attempt + 1, self._max_retries, delay,
                )
                last_exc = FeedUnavailable(f"Transport error for {url}: {exc}")
                await asyncio.sleep(delay)
                continue

            if resp.status_code == _RATE_LIMIT_STATUS:
                retry_after = _parse_retry_after(resp.headers.get("retry-after"))
                delay = self.backoff_delay(attempt, retry_after)
                logger.warning(
                    "GET %s rate limited — retry %d/%d in %.1fs",
                    url, attempt + 1, self._max_retries, delay,
                )
                last_exc = RateLimited(
                    f"Rate limited by {url}", retry_after=retry_after,
                )
                await asyncio.sleep(delay)
                continue

            if resp.status_code in _RETRYABLE_STATUS_CODES:
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "GET %s returned %d — retry %d/%d in %.1fs",
                    url, resp.status_code, attempt + 1, self._max_retries, delay,
                )
                last_exc = FeedUnavailable(
                    f"Server error '{resp.status_code}' from {url}"
                )
                await asyncio.sleep(delay)
                continue

            if resp.status_code >= 400:
                raise FeedUnavailable(f"HTTP {resp.status_code} from {url}")
            return resp

        # All retries exhausted, raise the last error
        raise last_exc  # type: ignore[misc]


def _parse_retry_after(raw: Optional[str]) -> Optional[float]:
    if raw is None:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return None
