#!/usr/bin/env python3
"""
Feed validation and discovery.

Both go through the same origin fetch as the proxy (URL guard, browser-like
headers, charset normalization) but with the short ancillary timeout and no
retries, since they answer interactive "is this a feed?" questions.
"""

from asyncio import TimeoutError
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin, urlparse

from aiohttp import ClientError, ClientSession, ClientTimeout
from bs4 import BeautifulSoup
from lxml import etree

from config import config, get_logger
from errors import FeedPipelineError, FetchTimeoutError, NotAFeedError, NotXmlError, ValidationError
from feed_parser import child_text, children_named, descendants_named, qualified_name
from proxy import build_request_headers, fetch_feed, validate_feed_url

logger = get_logger("validator")

FEED_LINK_TYPES = ("application/rss+xml", "application/atom+xml", "application/rdf+xml")
COMMON_FEED_PATHS = [
    "/feed",
    "/rss",
    "/rss.xml",
    "/feed.xml",
    "/atom.xml",
    "/index.xml",
    "/news/feed",
    "/news/rss",
]
SAMPLE_ITEMS = 5


@dataclass
class FeedValidation:
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    channel: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {"valid": self.valid, "errors": self.errors, "warnings": self.warnings}
        if self.channel is not None:
            result["channel"] = self.channel
        return result


def _fetch_error_message(url: str, error: FeedPipelineError) -> str:
    if isinstance(error, ValidationError):
        return error.message
    if error.status == 404:
        return f"Feed not found (404). Please check the URL: {url}"
    if isinstance(error, FetchTimeoutError):
        return "Request timed out. Please check the URL and try again."
    if isinstance(error, NotXmlError):
        return "Feed returned HTML instead of RSS/XML. Please check the URL."
    if isinstance(error, NotAFeedError):
        return "Not a valid RSS, Atom, or RDF feed"
    return f"Failed to fetch feed ({error.status}): {error.message}"


def inspect_feed_document(text: str, url: str) -> FeedValidation:
    """Check structure and item fields of an already normalized feed document."""
    data = text.encode("utf-8")
    try:
        etree.fromstring(data, parser=etree.XMLParser(resolve_entities=False, no_network=True))
    except etree.XMLSyntaxError as e:
        return FeedValidation(False, [f"XML parsing error: {str(e)[:100]}"])

    soup = BeautifulSoup(data, "xml")
    root = soup.find(True)
    kind = qualified_name(root)[1] if root is not None else ""
    if kind == "rss":
        channel = next(children_named(root, "channel"), None)
        items = list(children_named(channel, "item")) if channel is not None else []
    elif kind == "feed":
        channel = root
        items = list(children_named(root, "entry"))
    elif kind == "rdf":
        channel = next(children_named(root, "*:channel"), None)
        items = list(descendants_named(root, "*:item"))
    else:
        return FeedValidation(False, ["Not a valid RSS, Atom, or RDF feed"])

    if channel is None:
        return FeedValidation(False, ["Feed does not contain a channel element"])

    warnings = []
    if not items:
        warnings.append("Feed contains no items/articles")
        warnings.append("Feed structure is valid but contains no items to validate")

    found = {"title": False, "description": False, "pubDate": False, "category": False}
    for item in items[:SAMPLE_ITEMS]:
        found["title"] |= bool(child_text(item, "title"))
        found["description"] |= bool(child_text(item, "description", "summary", "content", "*:encoded"))
        found["pubDate"] |= bool(child_text(item, "pubDate", "published", "updated", "dc:date"))
        found["category"] |= next(children_named(item, "*:category", "dc:subject"), None) is not None

    link_tag = next(children_named(channel, "link"), None)
    link = ""
    if link_tag is not None:
        link = link_tag.get_text().strip() or (link_tag.get("href") or "").strip()
    channel_data = {
        "title": child_text(channel, "title") or "Untitled Feed",
        "description": child_text(channel, "description", "subtitle"),
        "link": link or url,
        "language": child_text(channel, "language", "dc:language") or channel.get("xml:lang") or "en",
        "itemCount": len(items),
        "lastBuildDate": child_text(channel, "lastBuildDate", "updated") or None,
    }

    missing = [name for name, present in found.items() if not present]
    if items and missing:
        return FeedValidation(
            False,
            [f"Feed items are missing required fields: {', '.join(missing)}"],
            warnings,
            channel_data,
        )
    return FeedValidation(True, [], warnings, channel_data)


async def validate_feed(url: str, session: ClientSession, development: Optional[bool] = None) -> FeedValidation:
    """Fetch ``url`` once and report whether it is a usable feed."""
    try:
        feed = await fetch_feed(url, 0, session=session, development=development, timeout=config.DISCOVERY_TIMEOUT)
    except FeedPipelineError as e:
        logger.info(f"Validation failed for {url}: {e.message}")
        return FeedValidation(False, [_fetch_error_message(url, e)])

    if not feed.text.strip():
        return FeedValidation(False, ["Feed returned empty content"])
    result = inspect_feed_document(feed.text, url)
    logger.info(f"Validated {url}: valid={result.valid} errors={len(result.errors)} warnings={len(result.warnings)}")
    return result


def find_feed_links(page_html: str, site_url: str) -> List[Dict[str, str]]:
    """``<link rel="alternate">`` feed links of an HTML page, as absolute URLs."""
    soup = BeautifulSoup(page_html, "html.parser")
    links = []
    for link in soup.find_all("link", rel="alternate"):
        type_attr = (link.get("type") or "").lower()
        href = (link.get("href") or "").strip()
        if type_attr in FEED_LINK_TYPES and href:
            links.append({
                "url": urljoin(site_url, href),
                "title": link.get("title", "Unknown feed"),
                "type": type_attr,
            })
    return links


async def discover_feed_url(site_url: str, session: ClientSession, development: Optional[bool] = None) -> Optional[str]:
    """Find a feed for a website.

    Advertised ``<link rel="alternate">`` feeds win (Atom preferred); otherwise
    the common feed paths are probed in order until one returns a feed.
    """
    target = validate_feed_url(site_url, development)
    logger.info(f"Attempting to discover feed URL from: {target}")

    try:
        async with session.get(
            target,
            headers=build_request_headers(target),
            timeout=ClientTimeout(total=config.DISCOVERY_TIMEOUT),
        ) as response:
            if response.status == 200:
                feed_links = find_feed_links(await response.text(errors="replace"), str(response.url))
                if feed_links:
                    atom_feeds = [f for f in feed_links if "atom" in f["type"]]
                    chosen = (atom_feeds or feed_links)[0]["url"]
                    logger.info(f"Discovered feed: {chosen}")
                    return chosen
                logger.info(f"No feed links advertised by {target}")
            else:
                logger.warning(f"Error accessing {target}: HTTP {response.status}")
    except (ClientError, TimeoutError) as e:
        logger.warning(f"Error discovering feed from {target}: {e}")

    parsed = urlparse(target)
    base = f"{parsed.scheme}://{parsed.netloc}"
    for feed_path in COMMON_FEED_PATHS:
        candidate = f"{base}{feed_path}"
        try:
            await fetch_feed(candidate, 0, session=session, development=development, timeout=config.DISCOVERY_TIMEOUT)
        except FeedPipelineError as e:
            logger.debug(f"No feed at {candidate}: {e.message}")
            continue
        logger.info(f"Discovered feed at common path: {candidate}")
        return candidate

    logger.warning(f"No feed found for {target}")
    return None
