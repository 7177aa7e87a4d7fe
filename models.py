#!/usr/bin/env python3
"""
Data model for the feed ingestion pipeline.

Everything here is an immutable value: the orchestrator replaces whole values
instead of mutating fields so concurrent readers never see a torn state.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from time import time
from typing import Any, Dict, FrozenSet, Optional, Tuple


@dataclass(frozen=True)
class Source:
    """A configured feed endpoint. Identity is the URL."""

    name: str = field(compare=False)
    url: str
    language: str = field(default="en", compare=False)
    region: str = field(default="", compare=False)
    country: str = field(default="", compare=False)
    province: str = field(default="", compare=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Source":
        return cls(
            name=str(data.get("name") or "").strip(),
            url=str(data.get("url") or "").strip(),
            language=str(data.get("language") or "en"),
            region=str(data.get("region") or ""),
            country=str(data.get("country") or ""),
            province=str(data.get("province") or ""),
        )


@dataclass(frozen=True)
class FetchAttempt:
    """State of one proxy fetch call; never persisted."""

    url: str
    attempt_number: int
    max_attempts: int
    started_at: float = field(default_factory=time)

    @property
    def is_last(self) -> bool:
        return self.attempt_number >= self.max_attempts

    def next(self) -> "FetchAttempt":
        return FetchAttempt(self.url, self.attempt_number + 1, self.max_attempts)


@dataclass(frozen=True)
class RawFeedResponse:
    body: bytes
    content_type: str
    status: int


@dataclass(frozen=True)
class NormalizedFeedText:
    """UTF-8 feed text with a corrected XML declaration."""

    text: str
    encoding: str
    content_type: str = "application/xml; charset=utf-8"


@dataclass(frozen=True)
class Article:
    """One canonical news item. Only ``popularity_score`` changes after parsing, via ``with_score``."""

    id: str
    title: str
    link: str
    description: str
    source: str
    published_at: Optional[datetime]
    content: str = ""
    categories: Tuple[str, ...] = ()
    thumbnail: str = ""
    author: str = ""
    language: str = "en"
    region: str = ""
    popularity_score: int = 0
    share_count: int = 0

    def with_score(self, score: int) -> "Article":
        return replace(self, popularity_score=score)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "link": self.link,
            "description": self.description,
            "content": self.content,
            "categories": list(self.categories),
            "thumbnail": self.thumbnail,
            "author": self.author,
            "source": self.source,
            "language": self.language,
            "region": self.region,
            "published_at": self.published_at.isoformat() if self.published_at else None,
            "popularity_score": self.popularity_score,
            "share_count": self.share_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Article":
        published = data.get("published_at")
        published_at = None
        if published:
            try:
                published_at = datetime.fromisoformat(published)
            except (TypeError, ValueError):
                published_at = None
            if published_at is not None and published_at.tzinfo is None:
                published_at = published_at.replace(tzinfo=timezone.utc)
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            link=data.get("link", ""),
            description=data.get("description", ""),
            source=data.get("source", ""),
            published_at=published_at,
            content=data.get("content", ""),
            categories=tuple(data.get("categories") or ()),
            thumbnail=data.get("thumbnail", ""),
            author=data.get("author", ""),
            language=data.get("language", "en"),
            region=data.get("region", ""),
            popularity_score=int(data.get("popularity_score") or 0),
            share_count=int(data.get("share_count") or 0),
        )


@dataclass(frozen=True)
class FailureInfo:
    """A per-source failure, ready for user-facing reporting."""

    name: str
    status: int
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "status": self.status, "message": self.message}


@dataclass(frozen=True)
class SourceResult:
    source: Source
    articles: Tuple[Article, ...] = ()
    error: Optional[FailureInfo] = None


@dataclass(frozen=True)
class AggregationResult:
    """Single value handed to the presentation layer after an aggregation."""

    articles: Tuple[Article, ...]
    new_ids: FrozenSet[str]
    failures: Tuple[FailureInfo, ...]
    empty_sources: Tuple[str, ...] = ()

    @property
    def article_ids(self) -> FrozenSet[str]:
        return frozenset(article.id for article in self.articles)


@dataclass(frozen=True)
class CachedSnapshot:
    """Last known-good aggregation for a tab. Always written as a whole."""

    tab_id: str
    articles: Tuple[Article, ...]
    article_ids: FrozenSet[str]
    timestamp: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tab_id": self.tab_id,
            "articles": [article.to_dict() for article in self.articles],
            "article_ids": sorted(self.article_ids),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CachedSnapshot":
        articles = tuple(Article.from_dict(item) for item in data.get("articles") or [])
        return cls(
            tab_id=data["tab_id"],
            articles=articles,
            article_ids=frozenset(data.get("article_ids") or (a.id for a in articles)),
            timestamp=float(data.get("timestamp") or 0.0),
        )


class TabStatus(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class TabFetchState:
    """Per-tab runtime state owned by the orchestrator.

    ``in_flight`` mirrors the orchestrator's task table for callers inspecting
    state; the task table itself enforces one fetch per tab.
    """

    tab_id: str
    sources: Tuple[Source, ...]
    previous_ids: FrozenSet[str] = frozenset()
    last_fetch_timestamp: float = 0.0
    in_flight: bool = False
    status: TabStatus = TabStatus.IDLE

    @property
    def source_key(self) -> FrozenSet[str]:
        return frozenset(source.url for source in self.sources)


@dataclass(frozen=True)
class TabView:
    """What the presentation layer reads for the active tab."""

    tab_id: str
    status: TabStatus
    articles: Tuple[Article, ...] = ()
    failures: Tuple[FailureInfo, ...] = ()
    empty_sources: Tuple[str, ...] = ()
    new_ids: FrozenSet[str] = frozenset()
    from_cache: bool = False
    timestamp: float = 0.0
