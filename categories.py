#!/usr/bin/env python3
"""
Category normalization and noise filtering.

Feeds stuff all sorts of metadata into ``<category>``-like elements: UUIDs,
CMS taxonomy paths, ``key|value`` pairs, person slugs. The helpers here keep
only strings a reader would recognise as a topic.
"""

import html
import re
from typing import Dict, Iterable, List, Optional

from config import config

# Two-letter values that are meaningful topics (countries/languages)
SHORT_CATEGORY_ALLOWLIST = {"us", "uk", "ca", "fr", "en", "de", "it", "es", "pt", "ru", "cn", "jp"}

GENERIC_WORDS = {
    "article", "fnc", "rss", "xml", "feed", "item", "post", "entry", "page", "url",
    "link", "id", "guid", "pubdate", "date", "media", "headline", "headlines",
    "uncategorized", "non classé", "news item", "default", "none", "null", "undefined",
}

# Multi-word kebab-case slugs that are topics, not people
COMPOUND_TOPICS = {
    "climate-change", "real-estate", "human-rights", "public-health", "mental-health",
    "artificial-intelligence", "breaking-news", "health-care", "world-news", "local-news",
    "social-media", "small-business", "higher-education", "north-america", "south-america",
    "middle-east", "united-states", "united-kingdom", "new-york", "supreme-court",
    "white-house", "wall-street", "stock-market", "interest-rates", "climate-crisis",
    "climate-action", "video-games", "personal-finance", "foreign-policy", "us-politics",
    "fact-check", "first-nations", "quebec-politics", "santé-publique", "grand-montréal",
}

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
_HEXISH_RE = re.compile(r"^[0-9a-f-]+$", re.IGNORECASE)
_METADATA_PATTERNS = [
    re.compile(r"metadata", re.IGNORECASE),
    re.compile(r"taxonomy", re.IGNORECASE),
    re.compile(r"section-path", re.IGNORECASE),
    re.compile(r"content-type", re.IGNORECASE),
    re.compile(r"dc\.(identifier|source|subject)", re.IGNORECASE),
    re.compile(r"prism\.", re.IGNORECASE),
    re.compile(r"^[a-z0-9-]+\.(com|org|net|edu|gov|io|co|ca|fr|uk)\/", re.IGNORECASE),
]
_FIELD_NAME_RE = re.compile(r"^[a-z0-9]+(_[a-z0-9]+)*_(name|id|type|key|path|slug)$", re.IGNORECASE)
_DOMAIN_RE = re.compile(r"^(https?://)?([a-z0-9-]+\.)+(com|org|net|edu|gov|io|co|ca|fr|uk|info|news)/?$", re.IGNORECASE)
_PERSON_SLUG_RE = re.compile(r"^[a-zà-ÿ]+(-[a-zà-ÿ]+){1,2}$")
_LETTER_RE = re.compile(r"[^\W\d_]")


def normalize_category_candidate(text: Optional[str]) -> str:
    """Unescape, trim and reduce hierarchical ``a/b/c`` paths to their last segment."""
    if not text:
        return ""
    value = html.unescape(text).strip()
    if "/" in value and not value.lower().startswith(("http://", "https://")):
        segments = [s.strip() for s in value.split("/") if s.strip()]
        value = segments[-1] if segments else ""
    return value


def _is_metadata(value: str) -> bool:
    return any(pattern.search(value) for pattern in _METADATA_PATTERNS) or bool(_DOMAIN_RE.match(value))


def is_valid_category(text: Optional[str]) -> bool:
    """True when an already-normalized candidate looks like a real topic."""
    value = (text or "").strip()
    if not value:
        return False
    lowered = value.lower()
    if _UUID_RE.match(value):
        return False
    if _HEXISH_RE.match(value) and len(value) > 10:
        return False
    if "|" in value or "://" in value:
        return False
    if _FIELD_NAME_RE.match(value):
        return False
    if _is_metadata(value):
        return False
    if len(value) < 3 and lowered not in SHORT_CATEGORY_ALLOWLIST:
        return False
    if lowered in GENERIC_WORDS:
        return False
    if not _LETTER_RE.search(value):
        return False
    # Lowercase kebab slugs such as "john-smith" are author/person tags
    if _PERSON_SLUG_RE.match(value) and lowered not in COMPOUND_TOPICS:
        return False
    return True


def clean_category(raw: Optional[str]) -> Optional[str]:
    """Normalize one raw candidate; None when it does not survive the noise filter.

    Whole-string metadata (``foxnews.com/metadata/...``, ``dc.subject``) is
    rejected before hierarchical paths are reduced to their last segment.
    """
    if not raw:
        return None
    stripped = html.unescape(raw).strip()
    if not stripped or _is_metadata(stripped) or "|" in stripped:
        return None
    value = normalize_category_candidate(stripped)
    return value if is_valid_category(value) else None


def dedupe_categories(candidates: Iterable[Optional[str]]) -> List[str]:
    """Clean candidates and keep the first spelling of each case-insensitive duplicate."""
    seen = set()
    result = []
    for raw in candidates:
        value = clean_category(raw)
        if not value:
            continue
        key = value.casefold()
        if key in seen:
            continue
        seen.add(key)
        result.append(value)
    return result


def canonical_category(category: str, equivalents: Optional[Dict[str, List[str]]] = None) -> str:
    """Fold bilingual spellings onto one key (``santé`` -> ``health``)."""
    equivalents = config.CATEGORY_EQUIVALENTS if equivalents is None else equivalents
    key = (category or "").strip().lower()
    for canonical, variants in equivalents.items():
        if key == canonical or key in variants:
            return canonical
    return key
