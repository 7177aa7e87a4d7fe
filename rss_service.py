#!/usr/bin/env python3
"""
Per-source feed client.

``RSSService.fetch_source`` turns one configured Source into a SourceResult:
the feed is fetched either through a running proxy (``PROXY_BASE_URL``) or
in-process through ``proxy.fetch_feed``, parsed off the event loop, and every
source-level failure is folded into a FailureInfo instead of being raised.
"""

from asyncio import TimeoutError, get_event_loop, sleep, wait_for
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Any, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout, ContentTypeError

from charset import looks_like_feed
from config import config, get_logger
from errors import (
    FeedPipelineError,
    FetchTimeoutError,
    OriginPermanentFailure,
    OriginTransientFailure,
    RateLimitExceeded,
    ValidationError,
)
from feed_parser import parse_feed
from models import FailureInfo, Source, SourceResult
from proxy import PERMANENT_STATUSES, fetch_feed
from telemetry import trace_span

logger = get_logger("rss_service")

PROXY_RSS_PATH = "/api/proxy/rss"


def _retry_after_seconds(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def error_from_proxy_response(status: int, message: str, retry_after: Optional[str] = None) -> FeedPipelineError:
    """Rebuild the pipeline error the proxy answered with."""
    if status == 400:
        return ValidationError(message)
    if status in PERMANENT_STATUSES:
        return OriginPermanentFailure(message, status)
    if status == 429:
        return RateLimitExceeded(message, retry_after=_retry_after_seconds(retry_after))
    if status == 504:
        return FetchTimeoutError(message)
    return FeedPipelineError(message, status if status >= 400 else 500)


class RSSService:
    def __init__(
        self,
        session: Optional[ClientSession] = None,
        proxy_base_url: Optional[str] = None,
        development: Optional[bool] = None,
    ) -> None:
        self.session = session
        self._owns_session = session is None
        base = config.PROXY_BASE_URL if proxy_base_url is None else proxy_base_url
        self.proxy_base_url = (base or "").rstrip("/")
        self.development = development
        self.executor = ThreadPoolExecutor()

    async def _get_session(self) -> ClientSession:
        if self.session is None or self.session.closed:
            self.session = ClientSession()
            self._owns_session = True
        return self.session

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function in a thread pool executor."""
        loop = get_event_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    async def _fetch_via_proxy(self, url: str) -> str:
        session = await self._get_session()
        endpoint = f"{self.proxy_base_url}{PROXY_RSS_PATH}"
        try:
            async with session.get(
                endpoint,
                params={"url": url},
                timeout=ClientTimeout(total=config.CLIENT_TIMEOUT),
            ) as response:
                if response.status != 200:
                    try:
                        payload = await response.json()
                        message = payload.get("error") if isinstance(payload, dict) else None
                    except (ContentTypeError, ValueError):
                        message = None
                    raise error_from_proxy_response(
                        response.status,
                        message or f"HTTP {response.status}",
                        response.headers.get("Retry-After"),
                    )
                text = await response.text(encoding="utf-8")
        except TimeoutError:
            raise FetchTimeoutError("Request timeout")
        except ClientError as e:
            raise OriginTransientFailure(f"Proxy request failed: {e}")

        if not looks_like_feed(text):
            raise FeedPipelineError("Invalid RSS feed format", 500)
        return text

    async def fetch_text(self, source: Source) -> str:
        """Fetch the normalized feed text for ``source``; raises FeedPipelineError."""
        if self.proxy_base_url:
            return await self._fetch_via_proxy(source.url)
        session = await self._get_session()
        feed = await fetch_feed(source.url, session=session, development=self.development)
        return feed.text

    def _failure(self, source: Source, status: int, message: str) -> SourceResult:
        logger.warning(f"[{source.name}] Fetch failed ({status}): {message}")
        return SourceResult(source=source, error=FailureInfo(source.name, status, message))

    @trace_span(
        "rss.fetch_source",
        tracer_name="rss",
        attr_from_args=lambda self, source: {"feed.source": source.name, "feed.url": source.url},
    )
    async def fetch_source(self, source: Source) -> SourceResult:
        """Fetch and parse one source.

        Failures scoped to this source (validation, origin errors, timeouts,
        rate limiting, unparseable documents) come back as ``SourceResult.error``.
        A 429 is retried after Retry-After (or RATE_LIMIT_BACKOFF_SECONDS) up to
        RATE_LIMIT_RETRIES times.
        """
        rate_limit_retries = 0
        while True:
            try:
                text = await self.fetch_text(source)
                articles = await self.run_in_executor(parse_feed, text, source)
                logger.info(f"[{source.name}] {len(articles)} articles in window")
                return SourceResult(source=source, articles=tuple(articles))
            except RateLimitExceeded as e:
                if rate_limit_retries >= config.RATE_LIMIT_RETRIES:
                    return self._failure(source, e.status, e.message)
                rate_limit_retries += 1
                delay = e.retry_after if e.retry_after is not None else config.RATE_LIMIT_BACKOFF_SECONDS
                logger.warning(
                    f"[{source.name}] Rate limited, retry {rate_limit_retries}/{config.RATE_LIMIT_RETRIES} in {delay:.0f}s"
                )
                await sleep(delay)
            except FeedPipelineError as e:
                return self._failure(source, e.status, e.message)

    async def close(self) -> None:
        """Close the owned session and shut down the parse executor."""
        if self._owns_session and self.session is not None and not self.session.closed:
            await self.session.close()
        if self.executor:
            logger.debug("Shutting down parser thread pool...")
            try:
                await wait_for(
                    get_event_loop().run_in_executor(None, lambda: self.executor.shutdown(wait=True)),
                    timeout=30.0,
                )
            except TimeoutError:
                logger.warning("Parser thread pool shutdown timed out after 30 seconds")
                self.executor.shutdown(wait=False)
