import pytest

from config import config
from validator import discover_feed_url, find_feed_links, inspect_feed_document, validate_feed
from fakes import ExplodingSession, FakeResponse, FakeSession, RSS_BODY

FEED_URL = "https://news.example.com/rss"

FULL_ITEM = (
    "<item><title>Headline</title><description>Text</description>"
    "<pubDate>Mon, 17 Nov 2025 10:00:00 GMT</pubDate><category>Politics</category></item>"
)


def rss_document(*items, channel_extra=""):
    return (
        '<?xml version="1.0" encoding="UTF-8"?><rss version="2.0"><channel>'
        f"<title>Example News</title><link>https://news.example.com/</link>"
        f"<description>All the news</description>{channel_extra}" + "".join(items) + "</channel></rss>"
    )


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr(config, "RETRY_DELAY_BASE", 0.0)


def test_complete_feed_is_valid():
    result = inspect_feed_document(rss_document(FULL_ITEM, channel_extra="<language>fr-CA</language>"), FEED_URL)

    assert result.valid
    assert result.errors == []
    assert result.channel == {
        "title": "Example News",
        "description": "All the news",
        "link": "https://news.example.com/",
        "language": "fr-CA",
        "itemCount": 1,
        "lastBuildDate": None,
    }


def test_missing_item_fields_are_reported():
    item = "<item><title>Headline</title><description>Text</description></item>"

    result = inspect_feed_document(rss_document(item), FEED_URL)

    assert not result.valid
    assert result.errors == ["Feed items are missing required fields: pubDate, category"]
    assert result.channel["itemCount"] == 1


def test_feed_without_items_is_valid_with_warnings():
    result = inspect_feed_document(rss_document(), FEED_URL)

    assert result.valid
    assert "Feed contains no items/articles" in result.warnings


def test_malformed_document():
    result = inspect_feed_document("<rss><channel><title>oops</channel>", FEED_URL)

    assert not result.valid
    assert result.errors[0].startswith("XML parsing error:")


def test_rss_without_channel():
    result = inspect_feed_document('<?xml version="1.0"?><rss version="2.0"></rss>', FEED_URL)

    assert result.errors == ["Feed does not contain a channel element"]


def test_unknown_root_is_not_a_feed():
    result = inspect_feed_document('<?xml version="1.0"?><catalog><book/></catalog>', FEED_URL)

    assert result.errors == ["Not a valid RSS, Atom, or RDF feed"]


def test_atom_feed_is_inspected():
    document = (
        '<?xml version="1.0" encoding="utf-8"?><feed xmlns="http://www.w3.org/2005/Atom">'
        "<title>Atom News</title><updated>2025-11-17T10:00:00Z</updated>"
        "<entry><title>One</title><summary>Sum</summary><updated>2025-11-17T10:00:00Z</updated>"
        '<category term="Tech"/></entry></feed>'
    )

    result = inspect_feed_document(document, FEED_URL)

    assert result.valid
    assert result.channel["title"] == "Atom News"
    assert result.channel["link"] == FEED_URL
    assert result.channel["lastBuildDate"] == "2025-11-17T10:00:00Z"


@pytest.mark.asyncio
async def test_validate_feed_reports_404():
    result = await validate_feed(FEED_URL, FakeSession(FakeResponse(404)), development=False)

    assert not result.valid
    assert result.errors == [f"Feed not found (404). Please check the URL: {FEED_URL}"]


@pytest.mark.asyncio
async def test_validate_feed_does_not_retry():
    session = FakeSession(FakeResponse(503))

    result = await validate_feed(FEED_URL, session, development=False)

    assert not result.valid
    assert len(session.calls) == 1


@pytest.mark.asyncio
async def test_validate_feed_rejects_private_urls_without_network():
    result = await validate_feed("http://127.0.0.1/rss", ExplodingSession(), development=False)

    assert result.errors == ["Access to private networks is not allowed"]


@pytest.mark.asyncio
async def test_validate_feed_success():
    body = rss_document(FULL_ITEM).encode("utf-8")

    result = await validate_feed(FEED_URL, FakeSession(FakeResponse(200, body)), development=False)

    assert result.valid
    assert result.to_dict()["channel"]["title"] == "Example News"


def test_find_feed_links_resolves_relative_urls():
    page = """<html><head>
    <link rel="alternate" type="application/rss+xml" title="RSS" href="/rss.xml">
    <link rel="alternate" type="text/html" href="/fr/">
    <link rel="stylesheet" href="/style.css">
    </head></html>"""

    links = find_feed_links(page, "https://site.example.com/blog/")

    assert links == [{"url": "https://site.example.com/rss.xml", "title": "RSS", "type": "application/rss+xml"}]


@pytest.mark.asyncio
async def test_discover_prefers_advertised_atom_feed():
    page = FakeResponse(200, b"""<html><head>
    <link rel="alternate" type="application/rss+xml" href="/rss.xml">
    <link rel="alternate" type="application/atom+xml" href="https://site.example.com/atom.xml">
    </head></html>""")
    page.url = "https://site.example.com/"
    session = FakeSession(page)

    assert await discover_feed_url("https://site.example.com/", session, development=False) == "https://site.example.com/atom.xml"
    assert len(session.calls) == 1


@pytest.mark.asyncio
async def test_discover_probes_common_paths():
    page = FakeResponse(200, b"<html><head><title>No feeds here</title></head></html>")
    page.url = "https://site.example.com/news/"
    session = FakeSession(page, FakeResponse(404), FakeResponse(200, RSS_BODY))

    found = await discover_feed_url("https://site.example.com/news/", session, development=False)

    assert found == "https://site.example.com/rss"
    assert [call[0] for call in session.calls] == [
        "https://site.example.com/news/",
        "https://site.example.com/feed",
        "https://site.example.com/rss",
    ]


@pytest.mark.asyncio
async def test_discover_gives_up_when_nothing_is_found():
    page = FakeResponse(404)
    session = FakeSession(page)

    assert await discover_feed_url("https://site.example.com/", session, development=False) is None
