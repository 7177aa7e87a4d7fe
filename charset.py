#!/usr/bin/env python3
"""
Charset detection and UTF-8 normalization for fetched feed bodies.

Encoding precedence, highest wins:
1. the UTF-8 heuristic (a Latin label on bytes that are really UTF-8),
2. the document's own ``<?xml ... encoding=...?>`` declaration,
3. the ``charset=`` parameter of the Content-Type header,
4. UTF-8.

Downstream consumers assume UTF-8, so the returned text always carries an
``encoding="UTF-8"`` declaration.
"""

import codecs
import re
from typing import Optional, Tuple

from config import config, get_logger
from errors import NotAFeedError, NotXmlError
from models import NormalizedFeedText, RawFeedResponse

logger = get_logger("charset")

LATIN1 = "iso-8859-1"
WINDOWS_1252 = "windows-1252"
UTF8 = "utf-8"

_ALIASES = {
    "iso-8859-1": LATIN1,
    "iso8859-1": LATIN1,
    "iso_8859-1": LATIN1,
    "latin1": LATIN1,
    "latin-1": LATIN1,
    "l1": LATIN1,
    "windows-1252": WINDOWS_1252,
    "cp1252": WINDOWS_1252,
    "x-cp1252": WINDOWS_1252,
}
_LATIN_FAMILY = (LATIN1, WINDOWS_1252)
_PYTHON_CODECS = {LATIN1: "latin-1", WINDOWS_1252: "cp1252", UTF8: "utf-8"}

_CHARSET_PARAM_RE = re.compile(r"charset\s*=\s*[\"']?([^\s;\"']+)", re.IGNORECASE)
_XML_DECL_RE = re.compile(r"^\s*<\?xml\b[^>]*?\?>", re.IGNORECASE)
_XML_DECL_ENCODING_RE = re.compile(r"<\?xml\b[^>]*?\bencoding\s*=\s*[\"']([^\"']+)[\"']", re.IGNORECASE)
_ENCODING_ATTR_RE = re.compile(r"(\bencoding\s*=\s*)([\"'])[^\"']*\2", re.IGNORECASE)
_LATIN_EXTENDED_RE = re.compile("[\u00C0-\u024F]")
_FEED_MARKER_RE = re.compile(r"<rss\b|<feed\b|<\?xml\b|<rdf:rdf\b|<rdf\b", re.IGNORECASE)


def canonical_encoding(label: Optional[str]) -> Optional[str]:
    """Map a charset label to one of our canonical names, or None when unknown."""
    if not label:
        return None
    name = label.strip().strip("\"'").lower()
    if not name:
        return None
    if name in _ALIASES:
        return _ALIASES[name]
    if name.replace("_", "-") in ("utf-8", "utf8") or name.startswith("utf-8"):
        return UTF8
    try:
        return codecs.lookup(name).name
    except LookupError:
        logger.debug(f"Unknown charset label '{label}', ignoring")
        return None


def charset_from_content_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    match = _CHARSET_PARAM_RE.search(content_type)
    return canonical_encoding(match.group(1)) if match else None


def declared_xml_encoding(raw: bytes) -> Optional[str]:
    """Encoding named by the in-document XML declaration, read from the first bytes."""
    head = raw[:1024].decode("latin-1")
    match = _XML_DECL_ENCODING_RE.search(head)
    return canonical_encoding(match.group(1)) if match else None


def looks_like_utf8_feed(raw: bytes) -> Optional[str]:
    """Return the UTF-8 text if ``raw`` decodes strictly and looks like a mis-labelled feed."""
    try:
        text = raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        return None
    if "<?xml" in text and _LATIN_EXTENDED_RE.search(text):
        return text
    return None


def resolve_encoding(raw: bytes, content_type: Optional[str]) -> str:
    """Pick the encoding from the header and the in-document declaration (declaration wins)."""
    encoding = charset_from_content_type(content_type) or UTF8
    declared = declared_xml_encoding(raw)
    if declared:
        encoding = declared
    return encoding


def check_not_html(text: str) -> None:
    """Raise NotXmlError when the text is an HTML page rather than a feed."""
    head = text.lstrip("\ufeff \t\r\n")[:64].lower()
    if head.startswith("<html"):
        raise NotXmlError("Received HTML instead of XML")
    if head.startswith("<!doctype") and not head.startswith("<!doctype rss"):
        raise NotXmlError("Received HTML instead of XML")


def looks_like_feed(text: str) -> bool:
    return bool(_FEED_MARKER_RE.search(text))


def decode_feed_bytes(raw: bytes, content_type: Optional[str] = None) -> Tuple[str, str]:
    """Decode ``raw`` to text. Returns (text, effective_encoding); raises NotXmlError for HTML."""
    encoding = resolve_encoding(raw, content_type)
    text = None
    if encoding in _LATIN_FAMILY and config.CHARSET_UTF8_OVERRIDE:
        text = looks_like_utf8_feed(raw)
        if text is not None:
            logger.info(f"Feed declared {encoding} but contains UTF-8 content, decoding as UTF-8")
            encoding = UTF8
    if text is None:
        codec = _PYTHON_CODECS.get(encoding, encoding)
        try:
            text = raw.decode(codec, errors="replace")
        except LookupError:
            encoding = UTF8
            text = raw.decode("utf-8", errors="replace")
    if text.startswith("\ufeff"):
        text = text[1:]
    check_not_html(text)
    return text, encoding


def ensure_utf8_declaration(text: str) -> str:
    """Rewrite (or inject) the XML declaration so it asserts UTF-8."""
    text = text.lstrip("\ufeff")
    match = _XML_DECL_RE.match(text)
    if not match:
        return '<?xml version="1.0" encoding="UTF-8"?>\n' + text.lstrip()
    declaration = match.group(0)
    if _ENCODING_ATTR_RE.search(declaration):
        fixed = _ENCODING_ATTR_RE.sub(lambda m: f"{m.group(1)}{m.group(2)}UTF-8{m.group(2)}", declaration, count=1)
    else:
        fixed = re.sub(r"\s*\?>$", ' encoding="UTF-8"?>', declaration)
    return fixed.lstrip() + text[match.end():]


def ensure_utf8_content_type(content_type: Optional[str]) -> str:
    """Return the content type with its charset parameter forced to utf-8."""
    if not content_type or not content_type.strip():
        return "application/xml; charset=utf-8"
    params = [p.strip() for p in content_type.split(";")]
    kept = [p for p in params[1:] if p and not p.lower().startswith("charset")]
    return "; ".join([params[0] or "application/xml", *kept, "charset=utf-8"])


def normalize(raw: bytes, content_type: Optional[str] = None, require_feed: bool = False) -> NormalizedFeedText:
    """Decode a fetched body into UTF-8 feed text.

    Args:
        raw: Response body bytes.
        content_type: Content-Type header as received (may be None).
        require_feed: Also raise NotAFeedError when no RSS/Atom/RDF marker is present.
            The marker check runs before the declaration is injected.
    """
    text, encoding = decode_feed_bytes(raw, content_type)
    if require_feed and not looks_like_feed(text):
        raise NotAFeedError("Response is not a valid RSS/XML feed")
    return NormalizedFeedText(
        text=ensure_utf8_declaration(text),
        encoding=encoding,
        content_type=ensure_utf8_content_type(content_type),
    )


def normalize_response(response: RawFeedResponse, require_feed: bool = False) -> NormalizedFeedText:
    """Normalize a 2xx origin response captured by the proxy."""
    return normalize(response.body, response.content_type, require_feed=require_feed)
