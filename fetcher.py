#!/usr/bin/env python3
"""
Feed fetching.

HttpFetcher performs a single conditional GET per call and reports whether the
feed changed. ParallelFetcher fans a set of sources out over a bounded number
of concurrent fetches, normalizes and persists each changed feed, and reports
one outcome per source. A failing source never affects the others.
"""

from asyncio import Semaphore, TimeoutError, as_completed, create_task, get_running_loop
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Any, List, Optional, Protocol, Sequence

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from domain import Entry, FetchedContent, FetchOutcome, NotModified, Source, SourceUpdate, utcnow
from errors import RivuletError, TransportError
from telemetry import trace_span

logger = get_logger("fetcher")

HTTP_NOT_MODIFIED = 304


class Fetcher(Protocol):
    async def fetch(self, url: str, etag: Optional[str] = None, last_modified: Optional[str] = None) -> FetchOutcome:
        ...

    async def close(self) -> None:
        ...


class HttpFetcher:
    """Conditional HTTP GET over one shared aiohttp session."""

    def __init__(self, timeout: Optional[int] = None, user_agent: Optional[str] = None,
                 max_redirects: Optional[int] = None) -> None:
        self.timeout = timeout or config.HTTP_TIMEOUT
        self.user_agent = user_agent or config.USER_AGENT
        self.max_redirects = config.MAX_REDIRECTS if max_redirects is None else max_redirects
        self._session: Optional[ClientSession] = None

    def _get_session(self) -> ClientSession:
        # Created on first use so it binds to the running loop
        if self._session is None or self._session.closed:
            self._session = ClientSession(
                timeout=ClientTimeout(total=self.timeout),
                headers={'User-Agent': self.user_agent},
            )
        return self._session

    def _prepare_request_headers(self, etag: Optional[str], last_modified: Optional[str]) -> dict:
        """Conditional request headers. Validators are opaque and sent verbatim."""
        headers = {}
        if etag:
            headers['If-None-Match'] = etag
        if last_modified:
            headers['If-Modified-Since'] = last_modified
        return headers

    @trace_span(
        "fetch_http_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, etag=None, last_modified=None: {
            "http.url": url,
            "http.conditional": bool(etag or last_modified),
        },
    )
    async def fetch(self, url: str, etag: Optional[str] = None, last_modified: Optional[str] = None) -> FetchOutcome:
        """Fetch a feed body.

        Returns:
            NotModified on 304, otherwise FetchedContent with the body and the
            response validators.

        Raises:
            TransportError: on network failure, timeout or a non-2xx status.
        """
        headers = self._prepare_request_headers(etag, last_modified)
        session = self._get_session()
        try:
            async with session.get(url, headers=headers, max_redirects=self.max_redirects) as response:
                if response.status == HTTP_NOT_MODIFIED:
                    logger.debug(f"{url} not modified since last fetch")
                    return NotModified()
                if not 200 <= response.status < 300:
                    raise TransportError(url, f"HTTP {response.status}", status=response.status)
                body = await response.read()
                return FetchedContent(
                    body=body,
                    etag=response.headers.get('ETag'),
                    last_modified=response.headers.get('Last-Modified'),
                )
        except TimeoutError as e:
            raise TransportError(url, f"Timed out after {self.timeout}s") from e
        except ClientError as e:
            raise TransportError(url, self._format_client_error(e), status=getattr(e, 'status', None)) from e

    def _format_client_error(self, error: ClientError) -> str:
        """Describe aiohttp client errors with any available status/errno."""
        parts: List[str] = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status is not None:
            parts.append(f"status={status}")
        os_error = getattr(error, 'os_error', None)
        if os_error is not None:
            errno = getattr(os_error, 'errno', None)
            strerror = getattr(os_error, 'strerror', None)
            if errno is not None:
                parts.append(f"errno={errno}")
            if strerror:
                parts.append(str(strerror))
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


class FetchReport:
    """Outcome of fetching one source. ``error`` is None on success.

    ``entries`` holds the entries this fetch inserted, when known.
    """

    __slots__ = ('source_id', 'new_entries', 'error', 'entries')

    def __init__(self, source_id: int, new_entries: int = 0, error: Optional[RivuletError] = None,
                 entries: Optional[List[Entry]] = None):
        self.source_id = source_id
        self.new_entries = new_entries
        self.error = error
        self.entries = entries or []

    @property
    def ok(self) -> bool:
        return self.error is None

    def __repr__(self) -> str:
        if self.ok:
            return f"FetchReport(source_id={self.source_id}, new_entries={self.new_entries})"
        return f"FetchReport(source_id={self.source_id}, error={self.error!r})"


class ParallelFetcher:
    """Fetch many sources with at most ``max_concurrency`` in flight."""

    def __init__(self, fetcher: Fetcher, max_concurrency: Optional[int] = None) -> None:
        self.fetcher = fetcher
        self.max_concurrency = max_concurrency or config.FETCH_WORKERS
        self.executor = ThreadPoolExecutor(thread_name_prefix="normalize")

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function in the thread pool."""
        loop = get_running_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    @trace_span(
        "fetch_source",
        tracer_name="fetcher",
        attr_from_args=lambda self, source, store, normalizer: {
            "feed.id": source.id,
            "http.url": source.url,
        },
    )
    async def fetch_source(self, source: Source, store, normalizer) -> List[Entry]:
        """Fetch, normalize and persist one source; return the newly inserted entries.

        Raises:
            RivuletError: TransportError, ParseError or PersistenceError.
        """
        outcome = await self.fetcher.fetch(source.url, source.etag, source.last_modified)
        if isinstance(outcome, NotModified):
            return []

        meta, entries = await self.run_in_executor(normalizer.normalize, source.id, source.url, outcome.body)
        update = SourceUpdate(
            title=meta.title or None,
            description=meta.description or None,
            etag=outcome.etag,
            last_modified=outcome.last_modified,
            last_fetched_at=utcnow(),
        )
        return await store.execute('record_fetch', source_id=source.id, update=update, entries=entries)

    async def _fetch_with_permit(self, semaphore: Semaphore, source: Source, store, normalizer) -> FetchReport:
        async with semaphore:
            try:
                inserted = await self.fetch_source(source, store, normalizer)
            except RivuletError as e:
                logger.warning(f"Error fetching {source.display_title()}: {e}")
                return FetchReport(source.id, error=e)
        if inserted:
            logger.info(f"{len(inserted)} new entries from {source.display_title()}")
        return FetchReport(source.id, new_entries=len(inserted), entries=inserted)

    async def fetch_all(self, sources: Sequence[Source], store, normalizer,
                        max_concurrency: Optional[int] = None) -> List[FetchReport]:
        """Fetch every source concurrently.

        Reports come back in completion order, one per source, except for
        sources whose task died of an unexpected exception; those are logged
        and left out.
        """
        if not sources:
            return []

        limit = max_concurrency or self.max_concurrency
        semaphore = Semaphore(limit)
        logger.info(f"Fetching {len(sources)} feeds (max {limit} concurrent)")

        tasks = [create_task(self._fetch_with_permit(semaphore, source, store, normalizer)) for source in sources]
        reports: List[FetchReport] = []
        for next_done in as_completed(tasks):
            try:
                reports.append(await next_done)
            except Exception as e:
                logger.error(f"Fatal error in fetch task: {e}", exc_info=True)
        return reports

    async def close(self) -> None:
        """Close the underlying fetcher and the normalizer thread pool."""
        await self.fetcher.close()
        self.executor.shutdown(wait=False, cancel_futures=True)
