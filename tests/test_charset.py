import pytest

from charset import (
    charset_from_content_type,
    declared_xml_encoding,
    ensure_utf8_content_type,
    ensure_utf8_declaration,
    normalize,
    normalize_response,
)
from config import config
from errors import NotAFeedError, NotXmlError
from models import RawFeedResponse


FRENCH_FEED = '<?xml version="1.0" encoding="ISO-8859-1"?><rss><channel><title>Santé publique à Montréal</title></channel></rss>'


def test_utf8_bytes_labelled_latin1_are_decoded_as_utf8():
    raw = FRENCH_FEED.encode("utf-8")

    result = normalize(raw, "application/rss+xml; charset=iso-8859-1")

    assert "Santé publique à Montréal" in result.text
    assert result.encoding == "utf-8"
    assert 'encoding="UTF-8"' in result.text
    assert "ISO-8859-1" not in result.text


def test_heuristic_can_be_disabled(monkeypatch):
    monkeypatch.setattr(config, "CHARSET_UTF8_OVERRIDE", False)
    raw = FRENCH_FEED.encode("utf-8")

    result = normalize(raw, "text/xml; charset=iso-8859-1")

    assert result.encoding == "iso-8859-1"
    assert "Santé" not in result.text


def test_real_latin1_bytes_are_decoded_as_latin1():
    raw = FRENCH_FEED.encode("latin-1")

    result = normalize(raw, "text/xml")

    assert "Santé publique à Montréal" in result.text
    assert result.encoding == "iso-8859-1"


def test_declaration_overrides_header():
    raw = '<?xml version="1.0" encoding="windows-1252"?><rss><channel><title>Caf\xe9</title></channel></rss>'.encode("cp1252")

    result = normalize(raw, "text/xml; charset=utf-8")

    assert "Café" in result.text
    assert result.encoding == "windows-1252"


def test_missing_declaration_is_injected():
    result = normalize(b"<rss><channel></channel></rss>", None)

    assert result.text.startswith('<?xml version="1.0" encoding="UTF-8"?>')
    assert result.content_type == "application/xml; charset=utf-8"


def test_bom_is_stripped():
    raw = "\ufeff<?xml version=\"1.0\"?><rss/>".encode("utf-8")

    result = normalize(raw, "application/xml")

    assert result.text.startswith('<?xml version="1.0" encoding="UTF-8"?>')


@pytest.mark.parametrize("body", [
    b"<!DOCTYPE html><html><body>Not found</body></html>",
    b"  <html><head></head></html>",
])
def test_html_bodies_are_rejected(body):
    with pytest.raises(NotXmlError):
        normalize(body, "text/html")


def test_rss_doctype_is_not_html():
    result = normalize(b'<!DOCTYPE rss PUBLIC "-//Netscape Communications//DTD RSS 0.91//EN"><rss version="0.91"></rss>')

    assert "<rss" in result.text


def test_require_feed_rejects_non_feed_text():
    with pytest.raises(NotAFeedError):
        normalize(b"just some text", "text/plain", require_feed=True)


def test_charset_helpers():
    assert charset_from_content_type("text/xml; charset=\"ISO-8859-1\"") == "iso-8859-1"
    assert charset_from_content_type("text/xml") is None
    assert declared_xml_encoding(b"<?xml version='1.0' encoding='utf-8'?><rss/>") == "utf-8"
    assert ensure_utf8_content_type("application/rss+xml; charset=ISO-8859-1") == "application/rss+xml; charset=utf-8"
    assert ensure_utf8_declaration("<?xml version='1.0' encoding='latin1'?><rss/>") == "<?xml version='1.0' encoding='UTF-8'?><rss/>"
    assert ensure_utf8_declaration('<?xml version="1.0"?><rss/>') == '<?xml version="1.0" encoding="UTF-8"?><rss/>'


def test_normalize_response_uses_captured_content_type():
    response = RawFeedResponse(
        body=FRENCH_FEED.encode("iso-8859-1"),
        content_type="application/rss+xml; charset=ISO-8859-1",
        status=200,
    )

    feed = normalize_response(response, require_feed=True)

    assert "Santé publique à Montréal" in feed.text
    assert feed.encoding == "iso-8859-1"
    assert feed.content_type == "application/rss+xml; charset=utf-8"


def test_normalize_response_without_content_type():
    response = RawFeedResponse(body=b"<rss><channel></channel></rss>", content_type="", status=200)

    feed = normalize_response(response)

    assert feed.content_type == "application/xml; charset=utf-8"
    assert feed.text.startswith('<?xml version="1.0" encoding="UTF-8"?>')
