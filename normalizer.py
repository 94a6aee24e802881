#!/usr/bin/env python3
"""
Feed normalizer: turns a raw RSS, Atom or JSON Feed body into feed metadata
and a list of Entry objects ready for insert-if-absent.

RSS and Atom parsing is delegated to feedparser; JSON Feed documents are mapped
onto the same result shape. This is CPU-bound and is run in a thread pool by
the orchestrator.
"""

import json
from calendar import timegm
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from io import BytesIO
from typing import Any, List, Optional, Tuple

import feedparser

from config import get_logger
from domain import Entry, FeedMeta, utcnow
from errors import ParseError

logger = get_logger("normalizer")

DATE_FIELDS = ('published', 'updated', 'created')


def _get_entry_value(entry, field: str) -> Any:
    """Fetch feedparser entry fields with attribute or dict access."""
    if not field or entry is None:
        return None
    value = getattr(entry, field, None)
    if value is not None:
        return value
    getter = getattr(entry, 'get', None)
    if callable(getter):
        return getter(field)
    return None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _struct_to_datetime(value: Any) -> Optional[datetime]:
    # feedparser normalizes *_parsed fields to UTC struct_time
    try:
        return datetime.fromtimestamp(timegm(tuple(value)[:9]), tz=timezone.utc)
    except (OverflowError, ValueError, OSError, TypeError):
        return None


def _string_to_datetime(value: str) -> Optional[datetime]:
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        dt = None
    if dt is None:
        try:
            dt = datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_entry_date(entry) -> Optional[datetime]:
    """Best-effort publication date of an entry, or None when it has none."""
    for field in DATE_FIELDS:
        parsed = _get_entry_value(entry, f"{field}_parsed")
        if parsed:
            dt = _struct_to_datetime(parsed)
            if dt:
                return dt
        raw = _get_entry_value(entry, field)
        if isinstance(raw, str) and raw.strip():
            dt = _string_to_datetime(raw.strip())
            if dt:
                return dt
    return None


def native_id(entry) -> str:
    """The entry's identifier: its own id, else its link, else empty."""
    for field in ('id', 'link'):
        value = _text(_get_entry_value(entry, field))
        if value:
            return value
    return ""


def extract_content(entry) -> Optional[str]:
    content = _get_entry_value(entry, 'content')
    if content:
        for item in content:
            value = _text(item.get('value')) if hasattr(item, 'get') else None
            if value:
                return value
    return None


def extract_summary(entry) -> Optional[str]:
    return _text(_get_entry_value(entry, 'summary')) or _text(_get_entry_value(entry, 'description'))


def extract_author(entry) -> Optional[str]:
    author = _text(_get_entry_value(entry, 'author'))
    if author:
        return author
    detail = _get_entry_value(entry, 'author_detail')
    if detail and hasattr(detail, 'get'):
        return _text(detail.get('name')) or _text(detail.get('email'))
    return None


def _looks_like_json(body: bytes) -> bool:
    return body.lstrip()[:1] == b'{'


def _json_feed_author(item: dict) -> Optional[str]:
    # Version 1.1 uses an "authors" list, version 1 a single "author" object
    authors = item.get('authors')
    if not isinstance(authors, list):
        authors = [item.get('author')]
    for author in authors:
        if isinstance(author, dict) and author.get('name'):
            return str(author['name'])
    return None


def parse_json_feed(body: bytes) -> feedparser.FeedParserDict:
    """Map a JSON Feed (https://jsonfeed.org) document onto feedparser's result shape.

    feedparser itself only handles the XML formats.
    """
    try:
        document = json.loads(body)
    except (ValueError, UnicodeDecodeError) as e:
        raise ParseError(f"Invalid JSON Feed: {e}") from e
    if not isinstance(document, dict) or 'jsonfeed.org' not in str(document.get('version', '')):
        raise ParseError("JSON document is not a JSON Feed")

    items = document.get('items') or []
    if not isinstance(items, list):
        raise ParseError("JSON Feed items must be a list")

    entries = []
    for item in items:
        if not isinstance(item, dict):
            continue
        entry = feedparser.FeedParserDict()
        for source_key, target_key in (('id', 'id'), ('title', 'title'), ('summary', 'summary'),
                                       ('date_published', 'published'), ('date_modified', 'updated')):
            if item.get(source_key) is not None:
                entry[target_key] = str(item[source_key])
        link = item.get('url') or item.get('external_url')
        if link:
            entry['link'] = str(link)
        body_value = item.get('content_html') or item.get('content_text')
        if body_value:
            entry['content'] = [feedparser.FeedParserDict(value=str(body_value))]
        name = _json_feed_author(item)
        if name:
            entry['author'] = name
        entries.append(entry)

    feed = feedparser.FeedParserDict()
    if document.get('title'):
        feed['title'] = document['title']
    if document.get('description'):
        feed['subtitle'] = document['description']
    return feedparser.FeedParserDict(version='json1', feed=feed, entries=entries, bozo=False)


class FeedNormalizer:
    """Normalizer collaborator used by the parallel fetcher."""

    def normalize(self, source_id: int, source_url: str, body: bytes) -> Tuple[FeedMeta, List[Entry]]:
        """Parse a feed body.

        Raises:
            ParseError: when the body is not a recognisable feed.
        """
        try:
            return self._normalize(source_id, source_url, body)
        except ParseError:
            raise
        except Exception as e:
            raise ParseError(f"Could not parse feed {source_url}: {e}") from e

    def _normalize(self, source_id: int, source_url: str, body: bytes) -> Tuple[FeedMeta, List[Entry]]:
        parsed = parse_json_feed(body) if _looks_like_json(body) else feedparser.parse(BytesIO(body))

        if not parsed.get('version') and not parsed.entries:
            reason = parsed.get('bozo_exception') or "unrecognised feed format"
            raise ParseError(f"Could not parse feed {source_url}: {reason}")
        if parsed.get('bozo'):
            # Ill-formed but usable (undeclared entities, wrong encoding, ...)
            logger.debug(f"Feed {source_url} parsed with warnings: {parsed.get('bozo_exception')}")

        feed = parsed.feed
        meta = FeedMeta(
            title=_text(feed.get('title')),
            description=_text(feed.get('subtitle')) or _text(feed.get('description')),
        )

        fetched_at = utcnow()
        entries = []
        for item in parsed.entries:
            entry_id = native_id(item)
            if not entry_id:
                logger.debug(f"Entry without id or link in {source_url}; using empty identifier")
            entries.append(Entry.create(
                source_id,
                source_url,
                entry_id,
                title=_text(_get_entry_value(item, 'title')),
                link=_text(_get_entry_value(item, 'link')),
                content=extract_content(item),
                summary=extract_summary(item),
                author=extract_author(item),
                published_at=parse_entry_date(item),
                fetched_at=fetched_at,
            ))

        logger.debug(f"Normalized {len(entries)} entries from {source_url} ({parsed.get('version') or 'unknown'})")
        return meta, entries
