#!/usr/bin/env python3
"""
Origin feed fetching for the RSS proxy.

This module validates requested feed URLs (scheme, length, private network
guard), fetches them with browser-like headers, classifies every attempt into
succeed/retry/fail, and hands successful bodies to the charset normalizer.
The HTTP boundary lives in ``server.py``; the per-source client can also call
``fetch_feed`` in-process.
"""

import ipaddress
import random
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional
from urllib.parse import urlparse

from aiohttp import ClientError, ClientSession, ClientTimeout

from charset import normalize_response
from config import config, get_logger
from errors import (
    FeedPipelineError,
    FetchTimeoutError,
    OriginPermanentFailure,
    OriginTransientFailure,
    RateLimitExceeded,
    ValidationError,
)
from models import FetchAttempt, NormalizedFeedText, RawFeedResponse
from telemetry import trace_span
from utils import RetryHelper, truncate_string

# Module-specific logger
logger = get_logger("proxy")

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
]
FEED_ACCEPT = "application/rss+xml, application/xml, text/xml, application/atom+xml, */*"
ACCEPT_LANGUAGE = "en-US,en;q=0.9,fr;q=0.8,fr-CA;q=0.7"

PERMANENT_STATUSES = (403, 404)
HTTP_TOO_MANY_REQUESTS = 429

# Static pattern set; hostnames are never resolved here
PRIVATE_NETWORKS = [
    ipaddress.ip_network(net)
    for net in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "::/128",
        "::1/128",
        "fc00::/7",
        "fe80::/10",
    )
]
BLOCKED_HOSTNAMES = {"localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback"}


def is_private_host(hostname: str) -> bool:
    """True when ``hostname`` is a loopback, private or link-local literal (or localhost)."""
    host = hostname.strip("[]").rstrip(".").lower()
    if host in BLOCKED_HOSTNAMES or host.endswith(".localhost"):
        return True
    try:
        ip = ipaddress.ip_address(int(host)) if host.isdigit() else ipaddress.ip_address(host)
    except ValueError:
        return False
    if ip.version == 6 and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return any(ip.version == net.version and ip in net for net in PRIVATE_NETWORKS)


def validate_feed_url(url: Optional[str], development: Optional[bool] = None) -> str:
    """Validate a requested feed URL without touching the network.

    Returns the stripped URL; raises ValidationError with the reason otherwise.
    """
    if development is None:
        development = config.DEVELOPMENT
    if not url or not url.strip():
        raise ValidationError("Missing url parameter")
    url = url.strip()
    if len(url) > config.MAX_URL_LENGTH:
        raise ValidationError("URL too long")
    try:
        parsed = urlparse(url)
        hostname = parsed.hostname
        parsed.port  # raises ValueError on a malformed port
    except ValueError:
        raise ValidationError("Invalid URL format")
    if parsed.scheme not in ("http", "https"):
        raise ValidationError("Only HTTP and HTTPS protocols are allowed")
    if not hostname:
        raise ValidationError("Invalid URL format")
    if not development and is_private_host(hostname):
        logger.warning(f"Blocked request to private network address: {hostname}")
        raise ValidationError("Access to private networks is not allowed")
    return url


def build_request_headers(url: str) -> dict:
    """Browser-like headers with a random user agent and the target origin as referer."""
    parsed = urlparse(url)
    return {
        "User-Agent": random.choice(USER_AGENTS),
        "Accept": FEED_ACCEPT,
        "Accept-Language": ACCEPT_LANGUAGE,
        "Referer": f"{parsed.scheme}://{parsed.netloc}/",
        "Cache-Control": "no-cache",
    }


class AttemptDecision(str, Enum):
    SUCCEED = "succeed"
    RETRY = "retry"
    FAIL = "fail"


@dataclass(frozen=True)
class AttemptOutcome:
    """What a single origin request produced."""

    status: Optional[int] = None
    feed: Optional[NormalizedFeedText] = None
    error: Optional[BaseException] = None
    retry_after: Optional[str] = None

    @property
    def timed_out(self) -> bool:
        return isinstance(self.error, TimeoutError)


def classify_outcome(outcome: AttemptOutcome, attempt: FetchAttempt) -> AttemptDecision:
    """Map an attempt outcome to succeed, retry or fail."""
    if outcome.feed is not None:
        return AttemptDecision.SUCCEED
    if outcome.status in PERMANENT_STATUSES:
        return AttemptDecision.FAIL
    error = outcome.error
    if isinstance(error, FeedPipelineError) and not error.retryable and outcome.status != HTTP_TOO_MANY_REQUESTS:
        return AttemptDecision.FAIL
    if attempt.is_last:
        return AttemptDecision.FAIL
    return AttemptDecision.RETRY


def _format_client_error(error: ClientError) -> str:
    """Describe aiohttp client errors with any available status/errno."""
    parts: List[str] = [error.__class__.__name__]
    status = getattr(error, "status", None)
    if status is not None:
        parts.append(f"status={status}")
    os_error = getattr(error, "os_error", None)
    if os_error is not None:
        errno = getattr(os_error, "errno", None)
        if errno is not None:
            parts.append(f"errno={errno}")
    message = str(error)
    if message:
        parts.append(message)
    return " ".join(parts)


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def final_error(outcome: AttemptOutcome) -> FeedPipelineError:
    """The error surfaced once no further attempt will be made."""
    if outcome.status in PERMANENT_STATUSES:
        return OriginPermanentFailure(f"HTTP {outcome.status}", outcome.status)
    if outcome.timed_out:
        return FetchTimeoutError("Request timeout after all retries")
    if outcome.status == HTTP_TOO_MANY_REQUESTS:
        return RateLimitExceeded("Origin rate limited the request (HTTP 429)",
                                 retry_after=_parse_retry_after(outcome.retry_after))
    error = outcome.error
    if isinstance(error, FeedPipelineError):
        return error
    if isinstance(error, ClientError):
        return OriginTransientFailure(_format_client_error(error))
    if error is not None:
        return OriginTransientFailure(str(error) or error.__class__.__name__)
    return OriginTransientFailure(f"HTTP {outcome.status}")


async def _attempt_fetch(session: ClientSession, attempt: FetchAttempt, timeout: float) -> AttemptOutcome:
    status = None
    try:
        async with session.get(
            attempt.url,
            headers=build_request_headers(attempt.url),
            timeout=ClientTimeout(total=timeout),
            allow_redirects=True,
        ) as response:
            status = response.status
            if not 200 <= status < 300:
                return AttemptOutcome(
                    status=status,
                    error=OriginTransientFailure(f"HTTP {status}"),
                    retry_after=response.headers.get("Retry-After"),
                )
            raw = RawFeedResponse(
                body=await response.read(),
                content_type=response.headers.get("Content-Type") or "",
                status=status,
            )
            feed = normalize_response(raw, require_feed=True)
            return AttemptOutcome(status=status, feed=feed)
    except TimeoutError as e:
        return AttemptOutcome(status=status, error=e)
    except ClientError as e:
        return AttemptOutcome(status=status, error=e)
    except FeedPipelineError as e:
        return AttemptOutcome(status=status, error=e)


@trace_span(
    "proxy.fetch_feed",
    tracer_name="proxy",
    attr_from_args=lambda url, retries=None, **kwargs: {"feed.url": url or "", "fetch.retries": retries if retries is not None else -1},
)
async def fetch_feed(
    url: str,
    retries: Optional[int] = None,
    *,
    session: ClientSession,
    development: Optional[bool] = None,
    timeout: Optional[float] = None,
) -> NormalizedFeedText:
    """Fetch one feed from its origin and return normalized UTF-8 text.

    Args:
        url: Feed URL as requested by the client.
        retries: Retries after the first attempt (defaults to PROXY_MAX_RETRIES).
        session: Shared aiohttp session.
        development: Overrides the configured development flag (disables the private network guard).
        timeout: Per-attempt timeout in seconds (defaults to PROXY_FETCH_TIMEOUT).

    Raises:
        ValidationError before any request; the FeedPipelineError from ``final_error`` after the last attempt.
    """
    target = validate_feed_url(url, development)
    retries = config.PROXY_MAX_RETRIES if retries is None else max(retries, 0)
    timeout = timeout or config.PROXY_FETCH_TIMEOUT
    retry_helper = RetryHelper(max_retries=retries, base_delay=config.RETRY_DELAY_BASE, backoff="linear")
    attempt = FetchAttempt(target, 1, retry_helper.max_attempts)

    while True:
        logger.info(f"Fetching {target} (attempt {attempt.attempt_number}/{attempt.max_attempts})")
        outcome = await _attempt_fetch(session, attempt, timeout)
        decision = classify_outcome(outcome, attempt)

        if decision is AttemptDecision.SUCCEED:
            logger.info(f"Fetched {target} ({outcome.feed.encoding}, {len(outcome.feed.text)} chars)")
            return outcome.feed

        detail = final_error(outcome).message
        if decision is AttemptDecision.FAIL:
            if outcome.status in PERMANENT_STATUSES:
                logger.warning(f"Permanent failure for {target}: {detail}")
            else:
                logger.error(f"Giving up on {target} after {attempt.attempt_number} attempt(s): {truncate_string(detail, 200)}")
            raise final_error(outcome)

        delay = retry_helper.calculate_delay(attempt.attempt_number)
        logger.warning(
            "Attempt %d/%d for %s failed (%s), retrying in %.1fs",
            attempt.attempt_number,
            attempt.max_attempts,
            target,
            truncate_string(detail, 200),
            delay,
        )
        await retry_helper.sleep_for_attempt(attempt.attempt_number)
        attempt = attempt.next()
