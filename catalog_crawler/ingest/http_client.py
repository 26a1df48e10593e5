"""HTTP fetch client with retry, rate limiting and challenge-page detection."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional
from urllib.parse import urljoin

import httpx

from catalog_crawler import metrics
from catalog_crawler.config import Settings
from catalog_crawler.ingest.challenge import is_challenge_page
from catalog_crawler.ingest.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

# Retryable exceptions (every transport-level failure: timeouts, connect,
# read/write, protocol and proxy errors)
RETRYABLE_EXC = (httpx.TransportError,)

# Statuses worth another attempt
RETRYABLE_STATUS = frozenset({408, 425, 429, 500, 502, 503, 504})


class FetchError(RuntimeError):
    """Base class for fetch failures."""

    def __init__(self, message: str, url: str):
        super().__init__(message)
        self.url = url


class NetworkError(FetchError):
    """Raised when a fetch fails after all retries (transport errors, 5xx, 429)."""


class PermanentURLError(FetchError):
    """Raised when a URL answers with a non-retryable client error (404 and friends)."""

    def __init__(self, message: str, url: str, status_code: int):
        super().__init__(message, url)
        self.status_code = status_code


class ChallengeDetected(FetchError):
    """Raised when the response is an anti-bot interstitial instead of content."""

    def __init__(self, url: str):
        super().__init__(f"Browser check detected at {url}", url)


@dataclass(frozen=True)
class FetchPolicy:
    """Request policy: retry ceiling, backoff, timeouts and challenge markers."""

    max_attempts: int = 3
    backoff_base: float = 1.0
    timeout: httpx.Timeout = field(
        default_factory=lambda: httpx.Timeout(connect=10.0, read=30.0, write=10.0, pool=10.0)
    )
    challenge_markers: tuple[str, ...] = ()

    @classmethod
    def from_settings(cls, settings: Settings) -> "FetchPolicy":
        return cls(
            max_attempts=max(settings.fetch_max_attempts, 1),
            backoff_base=settings.fetch_backoff_base,
            timeout=httpx.Timeout(
                connect=settings.connection_timeout,
                read=settings.read_timeout,
                write=settings.connection_timeout,
                pool=settings.connection_timeout,
            ),
            challenge_markers=tuple(settings.challenge_markers),
        )

    def backoff(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Seconds to wait before the next attempt (exponential with jitter)."""
        if retry_after is not None:
            return retry_after
        return self.backoff_base * (2 ** (attempt - 1)) + random.uniform(0, self.backoff_base)


def default_headers(user_agent: str) -> dict[str, str]:
    """Browser-like request headers."""
    return {
        "User-Agent": user_agent,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "ru-RU,ru;q=0.9,en-US;q=0.8,en;q=0.7",
        "Accept-Encoding": "gzip, deflate",
        "Connection": "keep-alive",
        "Upgrade-Insecure-Requests": "1",
    }


def _retry_after_seconds(resp: httpx.Response) -> Optional[float]:
    retry_after = resp.headers.get("Retry-After")
    if not retry_after:
        return None
    try:
        return float(retry_after)
    except (ValueError, TypeError):
        return None


class FetchClient:
    """Fetches page bodies for the crawl stages.

    Transient failures are retried with exponential backoff up to the policy's
    attempt ceiling. A body carrying a challenge marker raises
    ``ChallengeDetected`` immediately and is never retried here; callers decide
    whether to drop the item or retry the whole stage.
    """

    def __init__(
        self,
        base_url: str,
        policy: Optional[FetchPolicy] = None,
        client: Optional[httpx.AsyncClient] = None,
        rate_limiter: Optional[RateLimiter] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/") + "/"
        self.policy = policy or FetchPolicy()
        self.rate_limiter = rate_limiter
        self._client = client or httpx.AsyncClient(follow_redirects=True)
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "FetchClient":
        """Build a client with pooled connections sized from settings."""
        client = httpx.AsyncClient(
            headers=default_headers(settings.user_agent),
            follow_redirects=True,
            limits=httpx.Limits(
                max_connections=settings.http_max_connections,
                max_keepalive_connections=settings.http_keepalive_connections,
            ),
            transport=transport,
        )
        return cls(
            base_url=settings.base_url,
            policy=FetchPolicy.from_settings(settings),
            client=client,
            rate_limiter=RateLimiter(settings.requests_per_second),
        )

    def resolve(self, link: str) -> str:
        """Turn a site-relative link into an absolute URL."""
        return urljoin(self.base_url, link.strip())

    async def close(self):
        await self._client.aclose()

    async def __aenter__(self) -> "FetchClient":
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    async def fetch(self, link: str) -> str:
        """
        Fetch a page body.

        Args:
            link: Absolute URL or link relative to the site root

        Returns:
            Response body text

        Raises:
            ChallengeDetected: If the body is an anti-bot interstitial
            PermanentURLError: If the URL answers 404/410 or another client error
            NetworkError: If the fetch fails after all retries
        """
        url = self.resolve(link)
        policy = self.policy
        last_exc: Exception | None = None

        for attempt in range(1, policy.max_attempts + 1):
            retry_after: Optional[float] = None
            try:
                if self.rate_limiter is not None:
                    await self.rate_limiter.acquire()
                resp = await self._client.get(url, timeout=policy.timeout)
                body = resp.text
                sc = resp.status_code

                if is_challenge_page(body, policy.challenge_markers):
                    metrics.challenges_detected_total.inc()
                    metrics.record_fetch(False)
                    logger.warning(f"Challenge page received from {url} (status {sc})")
                    raise ChallengeDetected(url)

                if 200 <= sc < 300:
                    metrics.record_fetch(True)
                    return body

                if sc not in RETRYABLE_STATUS:
                    metrics.record_fetch(False)
                    raise PermanentURLError(f"HTTP {sc} for {url}", url, sc)

                last_exc = NetworkError(f"HTTP {sc} for {url}", url)
                retry_after = _retry_after_seconds(resp) if sc == 429 else None

            except RETRYABLE_EXC as e:
                last_exc = e

            metrics.record_fetch(False)
            if attempt >= policy.max_attempts:
                break

            sleep_s = policy.backoff(attempt, retry_after)
            metrics.fetch_retries_total.inc()
            logger.warning(
                f"Fetch of {url} failed ({last_exc}), retrying in {sleep_s:.1f}s "
                f"(attempt {attempt}/{policy.max_attempts})"
            )
            await self._sleep(sleep_s)

        raise NetworkError(
            f"Failed to fetch {url} after {policy.max_attempts} attempts: {last_exc}", url
        ) from last_exc
