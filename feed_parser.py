#!/usr/bin/env python3
"""
Feed document parser.

Turns one normalized RSS 2.0, RDF or Atom document into canonical Article
records. Every field has a fallback chain because real-world feeds omit,
misplace or HTML-encode almost everything. Items outside the admission window
(older than TIME_WINDOW_HOURS, dated in the future, or undated) are dropped
here rather than stored.

This is a pure function of (text, source, now); the per-source client runs it
in a thread pool.
"""

import calendar
import html
import re
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Iterable, Iterator, List, Optional, Tuple
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup, Tag
from feedparser.datetimes import _parse_date as feedparser_parse_date
from lxml import etree

from categories import dedupe_categories
from config import config, get_logger
from errors import FeedParseError
from models import Article, Source
from telemetry import trace_span
from utils import collapse_whitespace

logger = get_logger("parser")

MAX_CONTENT_SIZE = 50 * 1024
SENTENCE_WINDOW = 0.4

# Embedded media and widgets never belong in a text summary
STRIPPED_ELEMENTS = ["iframe", "embed", "object", "video", "audio", "script", "style", "noscript", "svg", "form"]

_ANY = "*"
_IMAGE_PREFIX = "image"
_SENTENCE_END_RE = re.compile(r"[.!?…][\"'”»)]?(?=\s|$)")
_HTTP_RE = re.compile(r"^https?://", re.IGNORECASE)
_ISO_DATE_RE = re.compile(r"(\d{4})-(\d{2})-(\d{2})")
_SLASH_FORMATS = (
    "%Y/%m/%d %H:%M:%S %z",
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%dT%H:%M:%S%z",
    "%Y/%m/%dT%H:%M:%S",
    "%Y/%m/%d %H:%M",
    "%Y/%m/%d",
)


# ---------------------------------------------------------------------------
# Tree helpers (namespace-prefixed names, declared or not)
# ---------------------------------------------------------------------------

def qualified_name(tag: Tag) -> Tuple[str, str]:
    """(prefix, local name) for a tag, lowercased.

    lxml keeps undeclared prefixes as part of the name (``media:thumbnail``)
    while declared ones land in ``tag.prefix``.
    """
    name = tag.name or ""
    prefix = tag.prefix or ""
    if not prefix and ":" in name:
        prefix, name = name.split(":", 1)
    return prefix.lower(), name.lower()


def _matches(tag: Tag, wanted: str) -> bool:
    """``title`` matches unprefixed tags only, ``dc:date`` that prefix, ``*:category`` any prefix."""
    prefix, local = qualified_name(tag)
    if ":" in wanted:
        want_prefix, want_local = wanted.lower().split(":", 1)
    else:
        want_prefix, want_local = "", wanted.lower()
    if local != want_local:
        return False
    return want_prefix == _ANY or prefix == want_prefix


def children_named(item: Tag, *names: str) -> Iterator[Tag]:
    for child in item.find_all(True, recursive=False):
        if any(_matches(child, name) for name in names):
            yield child


def descendants_named(item: Tag, *names: str) -> Iterator[Tag]:
    for node in item.find_all(True):
        if any(_matches(node, name) for name in names):
            yield node


def _first(tags: Iterable[Tag]) -> Optional[Tag]:
    return next(iter(tags), None)


def _raw_text(tag: Optional[Tag]) -> str:
    """Element payload as a string: text and CDATA, or the serialized markup of inline XHTML."""
    if tag is None:
        return ""
    if tag.find(True) is not None:
        return tag.decode_contents()
    return tag.get_text()


def child_text(item: Tag, *names: str) -> str:
    for name in names:
        tag = _first(children_named(item, name))
        if tag is not None:
            text = _raw_text(tag).strip()
            if text:
                return text
    return ""


# ---------------------------------------------------------------------------
# Text extraction
# ---------------------------------------------------------------------------

def contains_html(raw: str) -> bool:
    """True when extracting text changes the payload, i.e. it carries markup."""
    if "<" not in raw:
        return False
    return BeautifulSoup(raw, "html.parser").get_text() != raw


def html_to_text(raw: str) -> str:
    """Strip tags and embedded media, decode entities, collapse whitespace."""
    soup = BeautifulSoup(raw, "html.parser")
    for element in soup.find_all(STRIPPED_ELEMENTS):
        if not element.decomposed:
            element.decompose()
    # Custom/feed-specific elements (<gcse-widget>, <fb:post>) carry no readable text
    for element in soup.find_all(lambda t: "-" in (t.name or "") or ":" in (t.name or "")):
        if not element.decomposed:
            element.decompose()
    return collapse_whitespace(html.unescape(soup.get_text(" ")))


def extract_text(raw: str) -> str:
    if not raw:
        return ""
    if contains_html(raw):
        return html_to_text(raw)
    return collapse_whitespace(html.unescape(raw))


def truncate_description(text: str, max_length: Optional[int] = None) -> str:
    """Cap ``text`` at ``max_length`` characters.

    Cuts at the last sentence end inside the final 40% of the cap when there is
    one; otherwise at the last word boundary with an ellipsis appended.
    """
    max_length = max_length or config.DESCRIPTION_MAX_LENGTH
    if len(text) <= max_length:
        return text
    window = text[:max_length]
    floor = int(max_length * (1 - SENTENCE_WINDOW))
    boundary = -1
    for match in _SENTENCE_END_RE.finditer(window):
        if match.end() >= floor:
            boundary = match.end()
    if boundary > 0:
        return window[:boundary].rstrip()
    window = text[:max_length - 3]
    space = window.rfind(" ")
    if space > 0:
        window = window[:space]
    return window.rstrip(" ,;:-") + "..."


def _cap_size(text: str, source: Source, label: str) -> str:
    if len(text) > MAX_CONTENT_SIZE:
        logger.warning(f"[{source.name}] {label} too long ({len(text)} chars), truncating to {MAX_CONTENT_SIZE}")
        return text[:MAX_CONTENT_SIZE] + "..."
    return text


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------

def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _parse_with_email_utils(value: str) -> Optional[datetime]:
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError, OverflowError):
        return None


def _parse_with_isoformat(value: str) -> Optional[datetime]:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _parse_with_feedparser(value: str) -> Optional[datetime]:
    try:
        parsed = feedparser_parse_date(value)
    except (ValueError, TypeError, OverflowError):
        return None
    if not parsed:
        return None
    return datetime.fromtimestamp(calendar.timegm(parsed), tz=timezone.utc)


def _parse_slash_variant(value: str) -> Optional[datetime]:
    slashed = _ISO_DATE_RE.sub(r"\1/\2/\3", value)
    for fmt in _SLASH_FORMATS:
        try:
            return datetime.strptime(slashed, fmt)
        except ValueError:
            continue
    return None


def parse_date(value: Optional[str]) -> Optional[datetime]:
    """Parse RFC 822, ISO 8601 and the usual feed variants into an aware UTC datetime."""
    if not value or not value.strip():
        return None
    value = value.strip()
    for parser in (_parse_with_email_utils, _parse_with_isoformat, _parse_with_feedparser, _parse_slash_variant):
        dt = parser(value)
        if dt is not None:
            return _as_utc(dt)
    return None


def within_window(published_at: Optional[datetime], now: datetime, window_hours: float) -> bool:
    """Admission rule: dated, not in the future, and at most ``window_hours`` old."""
    if published_at is None:
        return False
    age = now - published_at
    return timedelta(0) <= age <= timedelta(hours=window_hours)


# ---------------------------------------------------------------------------
# Per-field extraction
# ---------------------------------------------------------------------------

def normalize_language(tag: Optional[str]) -> str:
    primary = re.split(r"[-_]", (tag or "").strip().lower(), maxsplit=1)[0]
    return primary if re.fullmatch(r"[a-z]{2}", primary) else "en"


def _extract_link(item: Tag) -> str:
    for link in children_named(item, "link"):
        href = link.get("href")
        if href:
            if link.get("rel", "alternate") == "alternate":
                return href.strip()
            continue
        text = link.get_text().strip()
        if text:
            return text
    # Atom entries with only rel="related"/"via" links
    link = _first(tag for tag in children_named(item, "link") if tag.get("href"))
    return link["href"].strip() if link is not None else ""


def _extract_author(item: Tag) -> str:
    author = _first(children_named(item, "author"))
    if author is not None:
        name = _first(children_named(author, "name"))
        text = (name.get_text() if name is not None else author.get_text()).strip()
        if text:
            return html.unescape(collapse_whitespace(text))
    return html.unescape(child_text(item, "dc:creator", "*:creator"))


def extract_categories(item: Tag) -> List[str]:
    """Collect category candidates in document order and run them through the noise filter."""
    candidates: List[Optional[str]] = []
    for tag in descendants_named(item, "*:category"):
        candidates.append(tag.get_text())
        candidates.append(tag.get("domain"))
        candidates.append(tag.get("term"))
        candidates.append(tag.get("label"))
    for tag in descendants_named(item, "dc:subject"):
        candidates.append(tag.get_text())
    tags = child_text(item, "tags", "keywords", "media:keywords")
    if tags:
        candidates.extend(tags.split(","))
    return dedupe_categories(candidates)


def clean_thumbnail(url: Optional[str], base_link: str = "") -> str:
    """Validate a thumbnail candidate; returns '' when it is not a usable absolute http(s) URL."""
    if not url:
        return ""
    url = html.unescape(url.strip())
    if url.startswith("//"):
        url = "https:" + url
    elif base_link and not _HTTP_RE.match(url) and not url.startswith("data:"):
        parsed = urlparse(base_link)
        if parsed.scheme in ("http", "https") and parsed.netloc:
            url = urljoin(f"{parsed.scheme}://{parsed.netloc}/", url) if url.startswith("/") else urljoin(base_link, url)
    if url.startswith("data:") or len(url) < 10 or not _HTTP_RE.match(url):
        return ""
    return url


def _thumbnail_candidates(item: Tag, description_html: str, link: str) -> Iterator[str]:
    for tag in descendants_named(item, "media:thumbnail"):
        yield tag.get("url")
    for tag in descendants_named(item, "*:thumbnail"):
        yield tag.get("url")
    for tag in descendants_named(item, "enclosure"):
        if (tag.get("type") or "").lower().startswith(_IMAGE_PREFIX):
            yield tag.get("url")
    for tag in descendants_named(item, "media:content"):
        if (tag.get("type") or "").lower().startswith(_IMAGE_PREFIX) or tag.get("medium") == "image":
            yield tag.get("url")
    if description_html and "<" in description_html:
        soup = BeautifulSoup(description_html, "html.parser")
        img = soup.find("img")
        if img is not None:
            yield clean_thumbnail(img.get("src") or img.get("data-src"), link)
        og = soup.find("meta", attrs={"property": "og:image"})
        if og is not None:
            yield og.get("content")
    for tag in item.find_all(True):
        if _IMAGE_PREFIX in (tag.get("type") or "").lower():
            yield tag.get("url") or tag.get("href") or tag.get("src") or tag.get("content") or tag.get_text().strip()


def extract_thumbnail(item: Tag, description_html: str, link: str) -> str:
    for candidate in _thumbnail_candidates(item, description_html, link):
        thumbnail = clean_thumbnail(candidate)
        if thumbnail:
            return thumbnail
    return ""


def _int_field(item: Tag, *names: str) -> Optional[int]:
    wanted = {name.lower() for name in names}
    for child in item.find_all(True, recursive=False):
        if qualified_name(child)[1] in wanted:
            text = child.get_text().strip().replace(",", "")
            match = re.match(r"-?\d+", text)
            if match:
                return int(match.group(0))
    return None


def extract_popularity(item: Tag) -> Tuple[int, int]:
    """(seed score, share count) from vendor share/engagement counters."""
    shares = _int_field(item, "shareCount", "socialCount", "engagement") or 0
    facebook = _int_field(item, "facebookShares", "fbShares") or 0
    twitter = _int_field(item, "twitterShares", "tweetCount") or 0
    return max(shares + facebook * 2 + twitter, 0), max(shares, 0)


# ---------------------------------------------------------------------------
# Item and document parsing
# ---------------------------------------------------------------------------

def _published_at(item: Tag) -> Tuple[str, Optional[datetime]]:
    raw = ""
    for name in ("pubDate", "dc:date", "published", "updated", "issued", "modified"):
        raw = child_text(item, name)
        if raw:
            return raw, parse_date(raw)
    return raw, None


def parse_item(item: Tag, source: Source, now: datetime, window_hours: float) -> Optional[Article]:
    """Build one Article, or None when the item falls outside the admission window."""
    raw_date, published_at = _published_at(item)
    if not within_window(published_at, now, window_hours):
        logger.debug(f"[{source.name}] Dropping item dated '{raw_date or 'n/a'}'")
        return None

    link = _extract_link(item)
    raw_description = child_text(item, "description", "summary")
    raw_content = child_text(item, "content:encoded", "*:encoded", "content")
    if not raw_description and raw_content:
        raw_description = raw_content

    description = _cap_size(extract_text(raw_description), source, "Description")
    content = _cap_size(extract_text(raw_content), source, "Content")

    title = extract_text(child_text(item, "title"))
    if not title:
        title = description

    guid = child_text(item, "guid", "id").strip()
    seed, share_count = extract_popularity(item)

    return Article(
        id=guid or f"{link}-{title}",
        title=title,
        link=link,
        description=truncate_description(description),
        content=content,
        categories=tuple(extract_categories(item)),
        thumbnail=extract_thumbnail(item, raw_description, link),
        author=_extract_author(item),
        source=source.name,
        language=normalize_language(source.language),
        region=source.region or "",
        published_at=published_at,
        popularity_score=seed,
        share_count=share_count,
    )


def _is_well_formed(data: bytes) -> bool:
    parser = etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=False)
    try:
        etree.fromstring(data, parser=parser)
    except etree.XMLSyntaxError:
        return False
    return True


def find_entries(soup: BeautifulSoup) -> List[Tag]:
    return [tag for tag in soup.find_all(True) if qualified_name(tag)[1] in ("item", "entry")]


@trace_span(
    "parser.parse_feed",
    tracer_name="parser",
    attr_from_args=lambda feed_text, source, *args, **kwargs: {"feed.source": source.name, "feed.length": len(feed_text or "")},
)
def parse_feed(
    feed_text: str,
    source: Source,
    now: Optional[datetime] = None,
    window_hours: Optional[float] = None,
) -> List[Article]:
    """Parse a normalized feed document into admitted Articles.

    Minor well-formedness problems are tolerated as long as entries can still
    be recovered; FeedParseError is raised only when the document is broken
    and yields no entries at all.
    """
    now = _as_utc(now) if now else datetime.now(timezone.utc)
    window_hours = window_hours or config.TIME_WINDOW_HOURS
    data = (feed_text or "").encode("utf-8")

    soup = BeautifulSoup(data, "xml")
    entries = find_entries(soup)
    if not _is_well_formed(data):
        if not entries:
            raise FeedParseError(f"Unparseable feed from {source.name}")
        logger.info(f"[{source.name}] Feed has XML errors, recovered {len(entries)} entries")

    if not entries:
        logger.warning(f"[{source.name}] Feed contains no items")
        return []

    articles = []
    for entry in entries:
        article = parse_item(entry, source, now, window_hours)
        if article is not None:
            articles.append(article)

    if not articles:
        samples = [_published_at(entry)[0] or "No date found" for entry in entries[:3]]
        logger.warning(
            f"[{source.name}] Parsed {len(entries)} items but none fell in the last {window_hours}h; sample dates: {samples}"
        )
    else:
        logger.debug(f"[{source.name}] Admitted {len(articles)}/{len(entries)} items")
    return articles
