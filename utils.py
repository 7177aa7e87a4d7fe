#!/usr/bin/env python3
"""
Utility classes and functions for the feed pipeline.

This module contains shared utilities used by the proxy, the per-source client
and the orchestrator: rate limiting, retry backoff and small text helpers.
"""

from asyncio import sleep
from collections import deque
from time import monotonic
from typing import Callable, Deque, Dict, Tuple
import re

# Import config to use unified logging
from config import get_logger

# Module-specific logger
logger = get_logger("utils")


class SlidingWindowRateLimiter:
    """Per-key sliding window request limiter.

    Each key (a client IP at the proxy boundary) may issue at most
    ``max_requests`` within any ``window_seconds`` span. ``hit`` never awaits,
    so the check-and-record step is atomic on the event loop.
    """

    def __init__(self, max_requests: int, window_seconds: float, clock: Callable[[], float] = monotonic):
        """Initialize the rate limiter.

        Args:
            max_requests: Maximum number of requests allowed per window.
            window_seconds: Length of the sliding window in seconds.
            clock: Monotonic time source, replaceable in tests.
        """
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._last_sweep = clock()

    def _evict(self, hits: Deque[float], now: float) -> None:
        cutoff = now - self.window_seconds
        while hits and hits[0] <= cutoff:
            hits.popleft()

    def _sweep(self, now: float) -> None:
        """Drop keys whose whole history fell out of the window."""
        if now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        for key in [k for k, hits in self._hits.items() if not hits or hits[-1] <= now - self.window_seconds]:
            del self._hits[key]

    def hit(self, key: str) -> Tuple[bool, int, float]:
        """Record a request for ``key``.

        Returns:
            (allowed, remaining, reset_after_seconds). A rejected request is not recorded.
        """
        now = self._clock()
        self._sweep(now)
        hits = self._hits.setdefault(key, deque())
        self._evict(hits, now)
        reset_after = (hits[0] + self.window_seconds - now) if hits else self.window_seconds
        if len(hits) >= self.max_requests:
            logger.debug(f"Rate limit reached for {key}: {len(hits)}/{self.max_requests}")
            return False, 0, max(reset_after, 0.0)
        hits.append(now)
        return True, self.max_requests - len(hits), max(reset_after, 0.0)

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self._hits.clear()
        else:
            self._hits.pop(key, None)


class RetryHelper:
    """Helper class for implementing retry backoff.

    ``linear`` waits ``base_delay * n`` before retry ``n``; ``exponential``
    doubles the wait each time. Both are capped at ``max_delay``.
    """

    def __init__(self, max_retries: int = 2, base_delay: float = 1.0, max_delay: float = 60.0,
                 backoff: str = "linear"):
        if backoff not in ("linear", "exponential"):
            raise ValueError(f"Unknown backoff policy: {backoff}")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.backoff = backoff

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def calculate_delay(self, retry_number: int) -> float:
        """Delay in seconds before retry ``retry_number`` (1-based)."""
        if retry_number <= 0:
            return 0.0
        if self.backoff == "linear":
            delay = self.base_delay * retry_number
        else:
            delay = self.base_delay * (2 ** (retry_number - 1))
        return min(delay, self.max_delay)

    async def sleep_for_attempt(self, retry_number: int) -> float:
        """Sleep before retry ``retry_number`` and return the delay used."""
        delay = self.calculate_delay(retry_number)
        if delay > 0:
            logger.debug(f"Retry delay: sleeping for {delay:.2f} seconds")
            await sleep(delay)
        return delay


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string (e.g. "1h 23m 45s")."""
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")

    return " ".join(parts)


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Truncate a string to a maximum length, adding a suffix if truncated.

    Args:
        text: The text to potentially truncate
        max_length: Maximum allowed length (including suffix)
        suffix: Suffix to add when truncating
    """
    if not text or len(text) <= max_length:
        return text

    if len(suffix) >= max_length:
        return text[:max_length]

    return text[:max_length - len(suffix)] + suffix


_WHITESPACE_RE = re.compile(r"\s+")


def collapse_whitespace(text: str) -> str:
    """Collapse runs of whitespace (including non-breaking spaces) into single spaces."""
    if not text:
        return ""
    return _WHITESPACE_RE.sub(" ", text.replace("\xa0", " ")).strip()
