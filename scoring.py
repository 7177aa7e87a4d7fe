#!/usr/bin/env python3
"""
Aggregation and popularity scoring.

``aggregate`` merges the per-source results of one tab fetch into a single
AggregationResult: every article scored, duplicates dropped (first arrival
wins), newest first, and the ids not seen in the previous snapshot flagged
as new. The result always replaces the previous snapshot wholesale.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Collection, Dict, Iterable, List, Optional, Sequence

from categories import canonical_category
from config import config, get_logger
from models import AggregationResult, Article, FailureInfo, SourceResult

logger = get_logger("scoring")

IMPORTANT_CATEGORY_BONUS = 8
IMPORTANT_KEYWORD_BONUS = 5
HIGHLY_RATED_THRESHOLD = 15


@dataclass(frozen=True)
class ScoringTables:
    source_weights: Dict[str, int] = field(default_factory=dict)
    default_source_weight: int = 5
    important_categories: Sequence[str] = ()
    important_keywords: Sequence[str] = ()

    @classmethod
    def from_config(cls) -> "ScoringTables":
        return cls(
            source_weights=dict(config.SOURCE_WEIGHTS),
            default_source_weight=config.DEFAULT_SOURCE_WEIGHT,
            important_categories=tuple(c.lower() for c in config.IMPORTANT_CATEGORIES),
            important_keywords=tuple(k.lower() for k in config.IMPORTANT_KEYWORDS),
        )


def recency_bonus(hours_since_publish: float) -> int:
    if hours_since_publish < 1:
        return 5
    if hours_since_publish < 3:
        return 3
    if hours_since_publish < 6:
        return 1
    return 0


def score_article(article: Article, now: Optional[datetime] = None, tables: Optional[ScoringTables] = None) -> int:
    """Seed popularity plus source weight, recency and importance boosts, rounded."""
    tables = tables or ScoringTables.from_config()
    now = now or datetime.now(timezone.utc)

    score = float(article.popularity_score or 0)
    score += tables.source_weights.get(article.source, tables.default_source_weight)
    if article.published_at is not None:
        score += recency_bonus((now - article.published_at).total_seconds() / 3600)
    if any(imp in category.lower() for category in article.categories for imp in tables.important_categories):
        score += IMPORTANT_CATEGORY_BONUS
    title = (article.title or "").lower()
    if any(keyword in title for keyword in tables.important_keywords):
        score += IMPORTANT_KEYWORD_BONUS
    return max(int(round(score)), 0)


def _date_key(article: Article):
    if article.published_at is None:
        return (1, 0.0)
    return (0, -article.published_at.timestamp())


def sort_by_date(articles: Iterable[Article]) -> List[Article]:
    """Newest first; undated last; ties keep arrival order."""
    return sorted(articles, key=_date_key)


def sort_news(articles: Iterable[Article], sort_by: str = "date") -> List[Article]:
    """Presentation sort: "popularity" orders by score first, date as the tiebreak."""
    by_date = sort_by_date(list(articles))
    if sort_by == "popularity":
        return sorted(by_date, key=lambda a: a.popularity_score or 0, reverse=True)
    return by_date


def filter_news(
    articles: Iterable[Article],
    language: str = "all",
    highly_rated: bool = False,
    search: str = "",
    categories: Collection[str] = (),
) -> List[Article]:
    """Presentation filters: language, score above 15, free-text search, category multi-select."""
    query = (search or "").strip().lower()
    wanted = {canonical_category(c) for c in categories}
    result = []
    for article in articles:
        if language != "all" and article.language != language:
            continue
        if highly_rated and (article.popularity_score or 0) <= HIGHLY_RATED_THRESHOLD:
            continue
        if query:
            haystack = " ".join([
                article.title, article.description, article.source, article.region, *article.categories,
            ]).lower()
            if query not in haystack:
                continue
        if wanted and not any(canonical_category(c) in wanted for c in article.categories):
            continue
        result.append(article)
    return result


def aggregate(
    per_source_results: Iterable[SourceResult],
    previous_ids: Collection[str],
    now: Optional[datetime] = None,
    tables: Optional[ScoringTables] = None,
) -> AggregationResult:
    """Merge one tab's per-source results into a scored, deduplicated, sorted snapshot.

    Sources that failed contribute a FailureInfo; sources that fetched fine
    but admitted nothing are listed in ``empty_sources``.
    """
    tables = tables or ScoringTables.from_config()
    now = now or datetime.now(timezone.utc)

    merged: List[Article] = []
    seen = set()
    failures: List[FailureInfo] = []
    empty_sources: List[str] = []
    duplicates = 0

    for result in per_source_results:
        if result.error is not None:
            failures.append(result.error)
            continue
        if not result.articles:
            empty_sources.append(result.source.name)
            continue
        for article in result.articles:
            if article.id in seen:
                duplicates += 1
                continue
            seen.add(article.id)
            merged.append(article.with_score(score_article(article, now, tables)))

    articles = tuple(sort_by_date(merged))
    previous = frozenset(previous_ids or ())
    new_ids = frozenset(a.id for a in articles if a.id not in previous)

    logger.info(
        "Aggregated %d articles (%d new, %d duplicates dropped, %d failures, %d empty sources)",
        len(articles),
        len(new_ids),
        duplicates,
        len(failures),
        len(empty_sources),
    )
    return AggregationResult(
        articles=articles,
        new_ids=new_ids,
        failures=tuple(failures),
        empty_sources=tuple(empty_sources),
    )
