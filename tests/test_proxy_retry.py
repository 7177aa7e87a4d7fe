import pytest
from aiohttp import ClientConnectionError

from config import config
from errors import FetchTimeoutError, NotXmlError, OriginPermanentFailure, OriginTransientFailure, RateLimitExceeded
from models import FetchAttempt, NormalizedFeedText
from proxy import AttemptDecision, AttemptOutcome, classify_outcome, fetch_feed
from fakes import RSS_BODY, FakeResponse, FakeSession


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr(config, "RETRY_DELAY_BASE", 0.0)


@pytest.mark.asyncio
async def test_404_is_not_retried():
    session = FakeSession(FakeResponse(404))

    with pytest.raises(OriginPermanentFailure) as excinfo:
        await fetch_feed("https://example.com/feed", retries=2, session=session, development=False)

    assert len(session.calls) == 1
    assert excinfo.value.status == 404
    assert excinfo.value.message == "HTTP 404"


@pytest.mark.asyncio
async def test_403_is_passed_through():
    session = FakeSession(FakeResponse(403))

    with pytest.raises(OriginPermanentFailure) as excinfo:
        await fetch_feed("https://example.com/feed", session=session, development=False)

    assert excinfo.value.status == 403
    assert len(session.calls) == 1


@pytest.mark.asyncio
async def test_network_errors_use_every_attempt():
    session = FakeSession(ClientConnectionError("connection reset"))

    with pytest.raises(OriginTransientFailure):
        await fetch_feed("https://example.com/feed", retries=2, session=session, development=False)

    assert len(session.calls) == 3


@pytest.mark.asyncio
async def test_timeouts_surface_as_timeout_after_retries():
    session = FakeSession(TimeoutError())

    with pytest.raises(FetchTimeoutError) as excinfo:
        await fetch_feed("https://example.com/feed", retries=1, session=session, development=False)

    assert len(session.calls) == 2
    assert excinfo.value.status == 504


@pytest.mark.asyncio
async def test_server_error_then_success():
    session = FakeSession(
        FakeResponse(503),
        FakeResponse(200, RSS_BODY, {"Content-Type": "application/rss+xml"}),
    )

    feed = await fetch_feed("https://example.com/feed", session=session, development=False)

    assert len(session.calls) == 2
    assert "<title>Hello</title>" in feed.text
    assert feed.content_type == "application/rss+xml; charset=utf-8"


@pytest.mark.asyncio
async def test_html_body_is_retried_then_reported():
    session = FakeSession(FakeResponse(200, b"<!DOCTYPE html><html></html>", {"Content-Type": "text/html"}))

    with pytest.raises(NotXmlError):
        await fetch_feed("https://example.com/feed", retries=1, session=session, development=False)

    assert len(session.calls) == 2


@pytest.mark.asyncio
async def test_origin_rate_limit_keeps_retry_after():
    session = FakeSession(FakeResponse(429, headers={"Retry-After": "30"}))

    with pytest.raises(RateLimitExceeded) as excinfo:
        await fetch_feed("https://example.com/feed", retries=0, session=session, development=False)

    assert excinfo.value.retry_after == 30.0
    assert excinfo.value.status == 429


@pytest.mark.asyncio
async def test_request_uses_timeout_and_redirects():
    session = FakeSession(FakeResponse(200, RSS_BODY))

    await fetch_feed("https://example.com/feed", session=session, development=False, timeout=3)

    _, kwargs = session.calls[0]
    assert kwargs["allow_redirects"] is True
    assert kwargs["timeout"].total == 3


def test_classify_outcome():
    first = FetchAttempt("https://example.com/feed", 1, 3)
    last = FetchAttempt("https://example.com/feed", 3, 3)
    feed = NormalizedFeedText("<rss/>", "utf-8")

    assert classify_outcome(AttemptOutcome(status=200, feed=feed), first) is AttemptDecision.SUCCEED
    assert classify_outcome(AttemptOutcome(status=404), first) is AttemptDecision.FAIL
    assert classify_outcome(AttemptOutcome(status=503, error=OriginTransientFailure("HTTP 503")), first) is AttemptDecision.RETRY
    assert classify_outcome(AttemptOutcome(status=503, error=OriginTransientFailure("HTTP 503")), last) is AttemptDecision.FAIL
    assert classify_outcome(AttemptOutcome(error=TimeoutError()), first) is AttemptDecision.RETRY
