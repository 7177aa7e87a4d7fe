from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import pytest

from errors import FeedParseError
from feed_parser import clean_thumbnail, parse_feed, truncate_description
from models import Source

NOW = datetime(2025, 11, 17, 12, 0, tzinfo=timezone.utc)
SOURCE = Source(name="CBC Montreal", url="https://www.cbc.ca/rss", language="en-CA", region="Montreal")


def rfc822(dt):
    return format_datetime(dt)


def rss(*items):
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<rss version="2.0" xmlns:media="http://search.yahoo.com/mrss/" '
        'xmlns:dc="http://purl.org/dc/elements/1.1/" '
        'xmlns:content="http://purl.org/rss/1.0/modules/content/">'
        "<channel><title>Test</title>" + "".join(items) + "</channel></rss>"
    )


def item(title="Headline", minutes_ago=10, extra="", description="Some description", guid=None):
    guid_xml = f"<guid>{guid}</guid>" if guid else ""
    return (
        f"<item><title>{title}</title><link>https://example.com/news/{minutes_ago}</link>"
        f"<description>{description}</description>{guid_xml}"
        f"<pubDate>{rfc822(NOW - timedelta(minutes=minutes_ago))}</pubDate>{extra}</item>"
    )


def test_basic_rss_item():
    articles = parse_feed(rss(item(guid="abc-1", extra="<dc:creator>Jane Roe</dc:creator>")), SOURCE, now=NOW)

    assert len(articles) == 1
    article = articles[0]
    assert article.id == "abc-1"
    assert article.title == "Headline"
    assert article.link == "https://example.com/news/10"
    assert article.description == "Some description"
    assert article.author == "Jane Roe"
    assert article.source == "CBC Montreal"
    assert article.language == "en"
    assert article.region == "Montreal"
    assert article.published_at == NOW - timedelta(minutes=10)


def test_id_falls_back_to_link_and_title():
    articles = parse_feed(rss(item(title="No guid")), SOURCE, now=NOW)

    assert articles[0].id == "https://example.com/news/10-No guid"


def test_empty_title_falls_back_to_description():
    articles = parse_feed(rss(item(title="", description="Le métro est fermé ce matin")), SOURCE, now=NOW)

    assert len(articles) == 1
    assert articles[0].title == "Le métro est fermé ce matin"
    assert articles[0].title == articles[0].description


def test_title_fallback_uses_full_description():
    long_text = "word " * 200
    articles = parse_feed(rss(item(title="", description=long_text)), SOURCE, now=NOW)

    assert articles[0].title == long_text.strip()
    assert len(articles[0].description) <= 500


def test_admission_window_boundaries():
    feed = rss(
        item(title="just inside", minutes_ago=24 * 60 - 1),
        item(title="too old", minutes_ago=24 * 60 + 1),
        item(title="from the future", minutes_ago=-5),
        "<item><title>undated</title><link>https://example.com/u</link></item>",
    )

    titles = [a.title for a in parse_feed(feed, SOURCE, now=NOW)]

    assert titles == ["just inside"]


def test_window_is_configurable():
    feed = rss(item(title="two hours", minutes_ago=120))

    assert parse_feed(feed, SOURCE, now=NOW, window_hours=1) == []
    assert len(parse_feed(feed, SOURCE, now=NOW, window_hours=3)) == 1


def test_html_description_is_flattened():
    description = "&lt;p&gt;Hello &lt;b&gt;world&lt;/b&gt;&lt;/p&gt;&lt;script&gt;alert(1)&lt;/script&gt;"
    articles = parse_feed(rss(item(description=description)), SOURCE, now=NOW)

    assert articles[0].description == "Hello world"


def test_cdata_description_and_content_encoded():
    extra = "<content:encoded><![CDATA[<p>Full <em>story</em> text</p>]]></content:encoded>"
    description = "<![CDATA[<p>Short summary</p>]]>"
    articles = parse_feed(rss(item(description=description, extra=extra)), SOURCE, now=NOW)

    assert articles[0].description == "Short summary"
    assert articles[0].content == "Full story text"


def test_thumbnail_from_media_thumbnail():
    extra = '<media:thumbnail url="https://cdn.example.com/thumb.jpg" width="120"/>'
    articles = parse_feed(rss(item(extra=extra)), SOURCE, now=NOW)

    assert articles[0].thumbnail == "https://cdn.example.com/thumb.jpg"


def test_invalid_thumbnail_falls_through_to_enclosure():
    extra = (
        '<media:thumbnail url="data:image/gif;base64,R0lGOD"/>'
        '<enclosure url="https://cdn.example.com/photo.jpg" type="image/jpeg" length="100"/>'
    )
    articles = parse_feed(rss(item(extra=extra)), SOURCE, now=NOW)

    assert articles[0].thumbnail == "https://cdn.example.com/photo.jpg"


def test_thumbnail_from_description_image_is_made_absolute():
    description = '&lt;p&gt;&lt;img src="/images/photo.jpg"/&gt;Story&lt;/p&gt;'
    articles = parse_feed(rss(item(description=description)), SOURCE, now=NOW)

    assert articles[0].thumbnail == "https://example.com/images/photo.jpg"
    assert articles[0].description == "Story"


def test_categories_are_cleaned_and_deduplicated():
    extra = (
        "<category>fox-news/us/congress</category>"
        "<category>550e8400-e29b-41d4-a716-446655440000</category>"
        "<category>Politics</category>"
        "<category>politics</category>"
        "<dc:subject>site|engadget</dc:subject>"
    )
    articles = parse_feed(rss(item(extra=extra)), SOURCE, now=NOW)

    assert articles[0].categories == ("congress", "Politics")


def test_share_counts_seed_popularity():
    extra = "<shareCount>12</shareCount><facebookShares>3</facebookShares>"
    articles = parse_feed(rss(item(extra=extra)), SOURCE, now=NOW)

    assert articles[0].popularity_score == 18
    assert articles[0].share_count == 12


def test_atom_entries():
    updated = (NOW - timedelta(minutes=30)).strftime("%Y-%m-%dT%H:%M:%SZ")
    feed = (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<feed xmlns="http://www.w3.org/2005/Atom"><title>Atom</title>'
        "<entry><title>Atom headline</title>"
        '<link rel="alternate" href="https://example.com/atom/1"/>'
        "<id>urn:uuid:1</id>"
        f"<updated>{updated}</updated>"
        "<summary>Atom summary</summary>"
        '<category term="Technology"/>'
        "<author><name>Jane Doe</name></author>"
        "</entry></feed>"
    )

    articles = parse_feed(feed, SOURCE, now=NOW)

    assert len(articles) == 1
    article = articles[0]
    assert article.id == "urn:uuid:1"
    assert article.link == "https://example.com/atom/1"
    assert article.description == "Atom summary"
    assert article.categories == ("Technology",)
    assert article.author == "Jane Doe"
    assert article.published_at == NOW - timedelta(minutes=30)


def test_recoverable_feed_still_yields_items():
    feed = rss(item(title="Recovered")).replace("</channel></rss>", "")

    articles = parse_feed(feed, SOURCE, now=NOW)

    assert [a.title for a in articles] == ["Recovered"]


def test_unparseable_feed_raises():
    with pytest.raises(FeedParseError):
        parse_feed("<rss><channel><title>broken", SOURCE, now=NOW)


def test_feed_without_items_is_empty():
    assert parse_feed(rss(), SOURCE, now=NOW) == []


def test_truncate_prefers_sentence_end():
    text = "A" * 35 + ". " + "b" * 30

    assert truncate_description(text, 50) == "A" * 35 + "."


def test_truncate_at_word_boundary_with_ellipsis():
    text = "alpha beta gamma delta epsilon zeta eta theta iota kappa lambda"

    result = truncate_description(text, 30)

    assert result.endswith("...")
    assert len(result) <= 30
    assert text.startswith(result[:-3])
    assert text[len(result) - 3] == " "


def test_short_text_is_untouched():
    assert truncate_description("Short.", 50) == "Short."


def test_clean_thumbnail():
    assert clean_thumbnail("//cdn.example.com/a.jpg") == "https://cdn.example.com/a.jpg"
    assert clean_thumbnail("data:image/png;base64,xxx") == ""
    assert clean_thumbnail("img/a.jpg", "https://example.com/news/story") == "https://example.com/news/img/a.jpg"
    assert clean_thumbnail("") == ""
