import json
from datetime import datetime, timezone

import pytest

from domain import entry_identity
from errors import ParseError
from normalizer import FeedNormalizer

FEED_URL = "https://example.com/feed"

RSS = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Example Blog</title>
    <description>Posts about examples</description>
    <link>https://example.com/</link>
    <item>
      <title>First post</title>
      <link>https://example.com/first</link>
      <guid>urn:example:1</guid>
      <description>Short teaser</description>
      <author>alice@example.com (Alice)</author>
      <pubDate>Wed, 01 May 2024 12:00:00 GMT</pubDate>
    </item>
    <item>
      <title>No guid</title>
      <link>https://example.com/second</link>
    </item>
    <item>
      <title>Nothing to identify me</title>
    </item>
  </channel>
</rss>
"""

ATOM = b"""<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Atom Example</title>
  <subtitle>An Atom feed</subtitle>
  <id>urn:example:feed</id>
  <updated>2024-05-02T08:30:00Z</updated>
  <entry>
    <title>Atom entry</title>
    <id>urn:example:atom:1</id>
    <link href="https://example.com/atom/1"/>
    <updated>2024-05-02T08:30:00Z</updated>
    <content type="html">&lt;p&gt;Full body&lt;/p&gt;</content>
    <author><name>Bob</name></author>
  </entry>
</feed>
"""


def test_rss_metadata_and_entries():
    meta, entries = FeedNormalizer().normalize(3, FEED_URL, RSS)

    assert meta.title == "Example Blog"
    assert meta.description == "Posts about examples"
    assert len(entries) == 3
    first = entries[0]
    assert first.source_id == 3
    assert first.id == entry_identity(FEED_URL, "urn:example:1")
    assert first.title == "First post"
    assert first.link == "https://example.com/first"
    assert first.summary == "Short teaser"
    assert first.published_at == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_identity_falls_back_to_link_then_empty():
    _, entries = FeedNormalizer().normalize(1, FEED_URL, RSS)

    assert entries[1].id == entry_identity(FEED_URL, "https://example.com/second")
    assert entries[2].id == entry_identity(FEED_URL, "")
    assert entries[2].published_at is None


def test_atom_content_and_author():
    meta, entries = FeedNormalizer().normalize(1, FEED_URL, ATOM)

    assert meta.title == "Atom Example"
    assert meta.description == "An Atom feed"
    entry = entries[0]
    assert entry.id == entry_identity(FEED_URL, "urn:example:atom:1")
    assert entry.content == "<p>Full body</p>"
    assert entry.author == "Bob"
    assert entry.published_at == datetime(2024, 5, 2, 8, 30, tzinfo=timezone.utc)


def test_json_feed():
    body = json.dumps({
        "version": "https://jsonfeed.org/version/1.1",
        "title": "JSON Example",
        "items": [
            {
                "id": "json-1",
                "url": "https://example.com/json/1",
                "title": "JSON entry",
                "content_html": "<p>Hello</p>",
            }
        ],
    }).encode("utf-8")

    meta, entries = FeedNormalizer().normalize(1, FEED_URL, body)

    assert meta.title == "JSON Example"
    assert len(entries) == 1
    assert entries[0].id == entry_identity(FEED_URL, "json-1")
    assert entries[0].link == "https://example.com/json/1"


def test_same_body_yields_same_ids():
    _, first = FeedNormalizer().normalize(1, FEED_URL, RSS)
    _, second = FeedNormalizer().normalize(1, FEED_URL, RSS)
    assert [e.id for e in first] == [e.id for e in second]


@pytest.mark.parametrize("body", [
    b"",
    b"this is not a feed",
    b"<html><body><p>Hello</p></body></html>",
    b'{"version": "https://jsonfeed.org/version/1", "items": 5}',
    b'{"version": "https://jsonfeed.org/version/1", "items": {"id": "1"}}',
    b'{"title": "no version", "items": []}',
    b'{"version": "https://jsonfeed.org/version/1", "items": [',
    b"\xff\xfe{",
])
def test_unparseable_body_raises_parse_error(body):
    with pytest.raises(ParseError):
        FeedNormalizer().normalize(1, FEED_URL, body)


def test_json_feed_author_shapes_are_tolerated():
    body = json.dumps({
        "version": "https://jsonfeed.org/version/1.1",
        "items": [
            {"id": "1", "url": "https://example.com/1", "authors": {"name": "Not a list"}},
            {"id": "2", "url": "https://example.com/2", "author": {"name": "Ada"}},
            {"id": "3", "url": "https://example.com/3", "authors": ["plain string", {"name": "Grace"}]},
            "not an object",
        ],
    }).encode()

    _, entries = FeedNormalizer().normalize(1, FEED_URL, body)

    assert [e.author for e in entries] == [None, "Ada", "Grace"]


def test_unexpected_parser_failure_becomes_parse_error(monkeypatch):
    def explode(_):
        raise RuntimeError("parser bug")

    monkeypatch.setattr("normalizer.feedparser.parse", explode)
    with pytest.raises(ParseError) as excinfo:
        FeedNormalizer().normalize(1, FEED_URL, b"<rss/>")
    assert isinstance(excinfo.value.__cause__, RuntimeError)
