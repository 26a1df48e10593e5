"""Tests for the fetch client: retries, permanent errors and challenge detection."""

import httpx
import pytest

from catalog_crawler.ingest.challenge import detect_challenge, is_challenge_page
from catalog_crawler.ingest.http_client import (
    ChallengeDetected,
    FetchClient,
    FetchPolicy,
    NetworkError,
    PermanentURLError,
)
from catalog_crawler.ingest.rate_limiter import RateLimiter

from tests.conftest import BASE_URL, CHALLENGE_PAGE, FakeSite, make_settings


def _client(tmp_path, site: FakeSite, **overrides) -> FetchClient:
    return FetchClient.from_settings(make_settings(tmp_path, **overrides), transport=site.transport())


@pytest.mark.asyncio
async def test_fetch_returns_body(tmp_path):
    site = FakeSite()
    site.add("/page", "<html>ok</html>")

    async with _client(tmp_path, site) as client:
        assert await client.fetch("/page") == "<html>ok</html>"
        assert await client.fetch(f"{BASE_URL}/page") == "<html>ok</html>"

    assert site.count("/page") == 2


@pytest.mark.asyncio
async def test_transient_status_is_retried(tmp_path):
    """A 503 followed by a 200 succeeds on the second attempt."""
    site = FakeSite()
    site.add_sequence("/flaky", [(503, "busy"), (200, "fine")])

    async with _client(tmp_path, site) as client:
        assert await client.fetch("/flaky") == "fine"

    assert site.count("/flaky") == 2


@pytest.mark.asyncio
async def test_retries_exhausted_raises_network_error(tmp_path):
    site = FakeSite()
    site.add("/down", "oops", status=500)

    async with _client(tmp_path, site, fetch_max_attempts=3) as client:
        with pytest.raises(NetworkError) as exc_info:
            await client.fetch("/down")

    assert site.count("/down") == 3
    assert exc_info.value.url == f"{BASE_URL}/down"


@pytest.mark.asyncio
async def test_transport_errors_are_retried(tmp_path):
    attempts = []

    def handler(request):
        attempts.append(request.url.path)
        raise httpx.ConnectError("connection refused", request=request)

    site = FakeSite()
    site.add_handler("/unreachable", handler)

    async with _client(tmp_path, site, fetch_max_attempts=2) as client:
        with pytest.raises(NetworkError):
            await client.fetch("/unreachable")

    assert len(attempts) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [httpx.WriteError, httpx.LocalProtocolError, httpx.ProxyError],
)
async def test_any_transport_error_ends_as_network_error(tmp_path, error):
    attempts = []

    def handler(request):
        attempts.append(request.url.path)
        raise error("transport failed", request=request)

    site = FakeSite()
    site.add_handler("/broken", handler)

    async with _client(tmp_path, site, fetch_max_attempts=3) as client:
        with pytest.raises(NetworkError) as exc_info:
            await client.fetch("/broken")

    assert isinstance(exc_info.value.__cause__, error)
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_not_found_is_permanent(tmp_path):
    """404 is not retried."""
    site = FakeSite()

    async with _client(tmp_path, site) as client:
        with pytest.raises(PermanentURLError) as exc_info:
            await client.fetch("/missing")

    assert exc_info.value.status_code == 404
    assert site.count("/missing") == 1


@pytest.mark.asyncio
async def test_challenge_page_is_not_retried(tmp_path):
    site = FakeSite()
    site.add("/guarded", CHALLENGE_PAGE)

    async with _client(tmp_path, site) as client:
        with pytest.raises(ChallengeDetected) as exc_info:
            await client.fetch("/guarded")

    assert exc_info.value.url == f"{BASE_URL}/guarded"
    assert site.count("/guarded") == 1


@pytest.mark.asyncio
async def test_challenge_page_with_error_status(tmp_path):
    """The interstitial is recognized even when served with a 503."""
    site = FakeSite()
    site.add("/guarded", CHALLENGE_PAGE, status=503)

    async with _client(tmp_path, site) as client:
        with pytest.raises(ChallengeDetected):
            await client.fetch("/guarded")

    assert site.count("/guarded") == 1


def test_resolve_relative_links():
    client = FetchClient("http://shop.test", client=httpx.AsyncClient())
    assert client.resolve("/brand/audi") == "http://shop.test/brand/audi"
    assert client.resolve("brand/audi") == "http://shop.test/brand/audi"
    assert client.resolve("https://cdn.test/x.jpg") == "https://cdn.test/x.jpg"


def test_backoff_grows_exponentially():
    policy = FetchPolicy(backoff_base=1.0)
    assert 1.0 <= policy.backoff(1) <= 2.0
    assert 2.0 <= policy.backoff(2) <= 3.0
    assert 4.0 <= policy.backoff(3) <= 5.0
    assert policy.backoff(1, retry_after=7.0) == 7.0


def test_detect_challenge():
    markers = ["<title>Browser check, please wait ...</title>"]
    assert detect_challenge(CHALLENGE_PAGE, markers) == markers[0]
    assert not is_challenge_page("<html><title>Shop</title></html>", markers)
    assert not is_challenge_page("", markers)


def test_rate_limiter_disabled_at_zero():
    assert RateLimiter(0).enabled is False
    assert RateLimiter(30).enabled is True
    assert RateLimiter(30).burst_size == 30


@pytest.mark.asyncio
async def test_rate_limiter_spends_tokens():
    limiter = RateLimiter(1000, burst_size=2)
    await limiter.acquire()
    await limiter.acquire()
    assert limiter.tokens < 1.0
