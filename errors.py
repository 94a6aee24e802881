#!/usr/bin/env python3
"""Common error types shared across modules.

Kept in a leaf module so the fetcher, store, scraper and scheduler can all
raise and catch them without importing each other.
"""

from typing import Optional


class RivuletError(Exception):
    """Base class for every error the pipeline reports per source or per entry."""


class TransportError(RivuletError):
    """Network or HTTP failure while fetching a single source.

    Attributes:
        url: The URL that was being fetched.
        status: HTTP status code when the server answered, otherwise None.
    """

    def __init__(self, url: str, message: str, status: Optional[int] = None):
        super().__init__(f"{message} ({url})")
        self.url = url
        self.status = status


class ParseError(RivuletError):
    """Feed body could not be understood as RSS, Atom or JSON Feed."""


class PersistenceError(RivuletError):
    """A store operation failed; carries the operation name for diagnostics."""

    def __init__(self, operation: str, message: str):
        super().__init__(f"{operation}: {message}")
        self.operation = operation


class ScrapeError(RivuletError):
    """Per-entry content scraping failure. Always logged, never surfaced."""


class SourceNotFoundError(RivuletError):
    """Raised by the command layer when a source URL is not subscribed."""


class ConfigError(RivuletError):
    """Invalid configuration; fatal at startup."""


class DaemonError(RivuletError):
    """Daemon lifecycle failure (second instance, unwritable PID file, ...)."""


__all__ = [
    "RivuletError",
    "TransportError",
    "ParseError",
    "PersistenceError",
    "ScrapeError",
    "SourceNotFoundError",
    "ConfigError",
    "DaemonError",
]
