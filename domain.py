#!/usr/bin/env python3
"""
Data model shared by the fetcher, store, scraper and daemon.

Sources and entries are plain dataclasses; the store builds them from rows and
the normalizer builds entries from parsed feeds. Entry identity is a content
address derived from the source URL and the entry's native identifier, so the
same entry fetched twice always maps to the same row.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from hashlib import sha256
from typing import Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def entry_identity(source_url: str, native_id: str) -> str:
    """Return the content address of an entry.

    SHA-256 over the UTF-8 bytes of source_url followed by native_id, as 64
    lowercase hex characters. Callers pass the feed's own id, else the entry
    link, else the empty string.
    """
    digest = sha256()
    digest.update(source_url.encode("utf-8"))
    digest.update(native_id.encode("utf-8"))
    return digest.hexdigest()


@dataclass
class Source:
    """A subscribed feed."""

    id: int
    url: str
    title: Optional[str] = None
    description: Optional[str] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    last_fetched_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def display_title(self) -> str:
        return self.title or self.url


@dataclass
class SourceUpdate:
    """Partial update of a source; None leaves a field unchanged."""

    title: Optional[str] = None
    description: Optional[str] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    last_fetched_at: Optional[datetime] = None

    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (self.title, self.description, self.etag, self.last_modified, self.last_fetched_at)
        )


@dataclass
class Entry:
    """A single feed entry. Only ``content`` changes after creation."""

    id: str
    source_id: int
    title: Optional[str] = None
    link: Optional[str] = None
    content: Optional[str] = None
    summary: Optional[str] = None
    author: Optional[str] = None
    published_at: Optional[datetime] = None
    fetched_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(cls, source_id: int, source_url: str, native_id: str, **fields) -> "Entry":
        return cls(id=entry_identity(source_url, native_id), source_id=source_id, **fields)

    def display_title(self) -> str:
        return self.title or "(untitled)"

    def display_content(self) -> str:
        return self.content or self.summary or ""


@dataclass
class EntryState:
    entry_id: str
    is_read: bool = False
    is_starred: bool = False
    read_at: Optional[datetime] = None
    starred_at: Optional[datetime] = None


@dataclass
class FeedMeta:
    """Feed-level metadata extracted by the normalizer."""

    title: Optional[str] = None
    description: Optional[str] = None


@dataclass
class FetchedContent:
    body: bytes
    etag: Optional[str] = None
    last_modified: Optional[str] = None


@dataclass(frozen=True)
class NotModified:
    """The server answered 304; stored validators are still current."""


FetchOutcome = Union[FetchedContent, NotModified]


@dataclass
class ScrapeResult:
    content: str
    is_html: bool
