#!/usr/bin/env python3
"""Common error types shared across modules.

Every pipeline error carries the HTTP-ish ``status`` the proxy boundary
answers with, so per-source failures can be reported without re-classifying.
"""

from typing import Optional


class FeedPipelineError(Exception):
    """Base class for feed fetch/parse failures."""

    status = 500
    retryable = False

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status


class ValidationError(FeedPipelineError):
    """Bad, oversized or disallowed feed URL. Raised before any network call."""

    status = 400


class OriginPermanentFailure(FeedPipelineError):
    """The origin answered 403/404; retrying will not help."""

    def __init__(self, message: str, status: int = 404):
        super().__init__(message, status)


class OriginTransientFailure(FeedPipelineError):
    """5xx, network error or otherwise unusable response from the origin."""

    retryable = True


class NotXmlError(OriginTransientFailure):
    """The body is an HTML page rather than a feed."""


class NotAFeedError(OriginTransientFailure):
    """The body carries none of the RSS/Atom/RDF markers."""


class FetchTimeoutError(OriginTransientFailure):
    """Every attempt timed out."""

    status = 504


class RateLimitExceeded(FeedPipelineError):
    """Either the origin or the proxy itself answered 429."""

    status = 429

    def __init__(self, message: str = "Too many requests", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class FeedParseError(FeedPipelineError):
    """The document is not well-formed and no entries could be recovered."""


def status_for_error(error: BaseException) -> int:
    """Map any exception to the status reported at the proxy boundary."""
    if isinstance(error, FeedPipelineError):
        return error.status
    if isinstance(error, TimeoutError):
        return 504
    return 500


__all__ = [
    "FeedPipelineError",
    "ValidationError",
    "OriginPermanentFailure",
    "OriginTransientFailure",
    "NotXmlError",
    "NotAFeedError",
    "FetchTimeoutError",
    "RateLimitExceeded",
    "FeedParseError",
    "status_for_error",
]
