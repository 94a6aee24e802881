#!/usr/bin/env python3
"""
Full-text enrichment for entries whose feed only carries a teaser.

A BackgroundScraper owns a bounded queue of entry batches. Producers (the
refresh path) suspend when the queue is full instead of dropping work. The
consumer keeps only entries that need enrichment, starts a headless browser
the first time there is something to scrape, scrapes each page in its own
browser context and writes the extracted article back to the store when it
is longer than what the feed provided.
"""

from asyncio import FIRST_COMPLETED, CancelledError, Queue, Semaphore, Task, create_task, gather, wait
from dataclasses import dataclass, field, fields, replace
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

from playwright.async_api import Error as PlaywrightError, async_playwright

from config import config as app_config, get_logger
from domain import Entry, ScrapeResult
from errors import ConfigError, RivuletError, ScrapeError
from telemetry import trace_span
from utils import clean_html

logger = get_logger("scraper")

SCRAPE_QUEUE_CAPACITY = 100

# Minimum visible text for a content selector match to be accepted
MIN_SELECTOR_TEXT = 100

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

DEFAULT_CONTENT_SELECTORS = [
    'article', '[role="main"]', 'main', '.post-content', '.article-content',
    '.entry-content', '.content', '#content', '.post', '.article', '.blog-post',
]

DEFAULT_REMOVE_SELECTORS = [
    'nav', 'header', 'footer', 'aside', '.sidebar', '.advertisement', '.ad',
    '.ads', '.social-share', '.comments', '.related-posts', 'script', 'style',
    'noscript',
]

# Runs in the page. Strips noise, then returns the first content container
# with enough text, falling back to the whole body.
EXTRACTION_SCRIPT = """
({contentSelectors, removeSelectors, minText}) => {
    for (const selector of removeSelectors) {
        try {
            document.querySelectorAll(selector).forEach((el) => el.remove());
        } catch (e) {}
    }
    for (const selector of contentSelectors) {
        let el = null;
        try {
            el = document.querySelector(selector);
        } catch (e) {
            continue;
        }
        if (el && el.innerText && el.innerText.trim().length > minText) {
            return {html: el.innerHTML, text: el.innerText, selector: selector};
        }
    }
    if (document.body) {
        return {html: document.body.innerHTML, text: document.body.innerText, selector: 'body'};
    }
    return {html: '', text: '', selector: null};
}
"""


@dataclass
class ScraperConfig:
    enabled: bool = True
    headless: bool = True
    min_content_length: int = 200
    timeout_secs: int = 30
    wait_after_load_ms: int = 1000
    content_selectors: List[str] = field(default_factory=lambda: list(DEFAULT_CONTENT_SELECTORS))
    remove_selectors: List[str] = field(default_factory=lambda: list(DEFAULT_REMOVE_SELECTORS))
    max_concurrency: int = 5
    block_images: bool = True
    block_stylesheets: bool = True
    user_agent: str = DEFAULT_USER_AGENT

    @classmethod
    def fast(cls) -> "ScraperConfig":
        """Short timeouts and more parallel pages."""
        return cls(timeout_secs=15, wait_after_load_ms=500, max_concurrency=10)

    @classmethod
    def thorough(cls) -> "ScraperConfig":
        """Long timeouts, few pages at a time, nothing blocked."""
        return cls(timeout_secs=60, wait_after_load_ms=2000, max_concurrency=3,
                   block_images=False, block_stylesheets=False)

    @classmethod
    def from_settings(cls, settings: Optional[Dict[str, Any]]) -> "ScraperConfig":
        """Build from the ``scraper:`` section of the config file.

        An optional ``preset`` key ("fast" or "thorough") selects the base values.
        """
        settings = dict(settings or {})
        preset = settings.pop('preset', None)
        if preset is None:
            base = cls()
        elif preset in ('fast', 'thorough'):
            base = getattr(cls, preset)()
        else:
            raise ConfigError(f"Unknown scraper preset: {preset!r}")

        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(settings) - set(known))
        if unknown:
            raise ConfigError(f"Unknown scraper settings: {', '.join(unknown)}")

        values = {}
        for name, value in settings.items():
            default = getattr(base, name)
            if isinstance(default, bool):
                if not isinstance(value, bool):
                    raise ConfigError(f"scraper.{name} must be true or false")
            elif isinstance(default, int):
                if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                    raise ConfigError(f"scraper.{name} must be a non-negative integer")
            elif isinstance(default, list):
                if not isinstance(value, list) or not all(isinstance(s, str) for s in value):
                    raise ConfigError(f"scraper.{name} must be a list of selectors")
            elif not isinstance(value, str):
                raise ConfigError(f"scraper.{name} must be a string")
            values[name] = value

        result = replace(base, **values)
        if result.max_concurrency < 1:
            raise ConfigError("scraper.max_concurrency must be at least 1")
        return result


def needs_enrichment(entry: Entry, min_content_length: int) -> bool:
    """True when the entry has a link and neither content nor summary is long enough."""
    if not entry.link:
        return False
    content_short = not entry.content or len(entry.content) < min_content_length
    summary_short = not entry.summary or len(entry.summary) < min_content_length
    return content_short and summary_short


class Scraper:
    """Base class for page scrapers. Subclasses implement ``scrape``."""

    async def scrape(self, url: str) -> ScrapeResult:
        raise NotImplementedError

    async def scrape_entries(self, entries: Sequence[Entry],
                             concurrency: int) -> List[Tuple[Entry, Union[ScrapeResult, ScrapeError]]]:
        """Scrape every entry's link, at most ``concurrency`` at a time.

        Never raises; each entry is paired with its result or its error.
        """
        semaphore = Semaphore(max(1, concurrency))

        async def _scrape_one(entry: Entry):
            async with semaphore:
                try:
                    return entry, await self.scrape(entry.link)
                except ScrapeError as e:
                    return entry, e
                except Exception as e:
                    return entry, ScrapeError(f"Unexpected error scraping {entry.link}: {e}")

        return list(await gather(*(_scrape_one(entry) for entry in entries)))

    async def close(self) -> None:
        pass


class BrowserScraper(Scraper):
    """Headless Chromium shared by all scrapes; one isolated context per page."""

    def __init__(self, playwright, browser, config: ScraperConfig):
        self._playwright = playwright
        self.browser = browser
        self.config = config
        self._pages = Semaphore(max(1, config.max_concurrency))
        self._blocked = set()
        if config.block_images:
            self._blocked.update(('image', 'media'))
        if config.block_stylesheets:
            self._blocked.update(('stylesheet', 'font'))

    @classmethod
    async def launch(cls, config: ScraperConfig) -> "BrowserScraper":
        playwright = await async_playwright().start()
        try:
            browser = await playwright.chromium.launch(headless=config.headless)
        except Exception:
            await playwright.stop()
            raise
        logger.info("Headless browser started")
        return cls(playwright, browser, config)

    async def _route(self, route) -> None:
        if route.request.resource_type in self._blocked:
            await route.abort()
        else:
            await route.continue_()

    @trace_span("scrape_page", tracer_name="scraper", attr_from_args=lambda self, url: {"http.url": url})
    async def scrape(self, url: str) -> ScrapeResult:
        async with self._pages:
            context = await self.browser.new_context(user_agent=self.config.user_agent)
            try:
                if self._blocked:
                    await context.route("**/*", self._route)
                page = await context.new_page()
                await page.goto(url, timeout=self.config.timeout_secs * 1000, wait_until="domcontentloaded")
                if self.config.wait_after_load_ms:
                    await page.wait_for_timeout(self.config.wait_after_load_ms)
                extracted = await page.evaluate(EXTRACTION_SCRIPT, {
                    "contentSelectors": self.config.content_selectors,
                    "removeSelectors": self.config.remove_selectors,
                    "minText": MIN_SELECTOR_TEXT,
                })
            except PlaywrightError as e:
                raise ScrapeError(f"Failed to load {url}: {e.message}") from e
            finally:
                await context.close()

        extracted = extracted or {}
        html = (extracted.get('html') or '').strip()
        if html:
            logger.debug(f"Extracted {len(html)} chars from {url} via {extracted.get('selector')}")
            return ScrapeResult(content=html, is_html=True)
        text = (extracted.get('text') or '').strip()
        if text:
            return ScrapeResult(content=text, is_html=False)
        raise ScrapeError(f"No content extracted from {url}")

    async def close(self) -> None:
        try:
            await self.browser.close()
        finally:
            await self._playwright.stop()
        logger.info("Headless browser stopped")


@dataclass
class ScrapeBatch:
    entries: List[Entry]


@dataclass(frozen=True)
class Shutdown:
    pass


ScrapeMessage = Union[ScrapeBatch, Shutdown]
ScraperFactory = Callable[[], Awaitable[Scraper]]


class BackgroundScraper:
    """Consumer side of the scrape queue."""

    def __init__(self, config: ScraperConfig, store, scraper_factory: Optional[ScraperFactory] = None):
        self.config = config
        self.store = store
        self.queue: Queue = Queue(maxsize=SCRAPE_QUEUE_CAPACITY)
        self.scraper_factory = scraper_factory or partial(BrowserScraper.launch, config)
        self.scraper: Optional[Scraper] = None

    async def run(self) -> None:
        logger.info("Background scraper started")
        try:
            while True:
                message = await self.queue.get()
                try:
                    if isinstance(message, Shutdown):
                        logger.info("Background scraper shutting down")
                        break
                    await self.handle_batch(message.entries)
                except Exception as e:
                    logger.error(f"Error processing scrape batch: {e}", exc_info=True)
                finally:
                    self.queue.task_done()
        finally:
            await self._close_scraper()

    async def _get_scraper(self) -> Optional[Scraper]:
        if self.scraper is None:
            try:
                self.scraper = await self.scraper_factory()
            except Exception as e:
                logger.error(f"Failed to start scraper, skipping batch: {e}")
                return None
        return self.scraper

    async def _close_scraper(self) -> None:
        if self.scraper is not None:
            try:
                await self.scraper.close()
            except Exception as e:
                logger.warning(f"Error closing scraper: {e}")
            self.scraper = None

    @trace_span("scrape_batch", tracer_name="scraper",
                attr_from_args=lambda self, entries: {"scrape.batch_size": len(entries)})
    async def handle_batch(self, entries: Sequence[Entry]) -> int:
        """Scrape the entries that need it; return how many were enriched."""
        candidates = [e for e in entries if needs_enrichment(e, self.config.min_content_length)]
        if not candidates:
            return 0

        scraper = await self._get_scraper()
        if scraper is None:
            return 0

        logger.info(f"Scraping {len(candidates)} entries")
        enriched = 0
        for entry, outcome in await scraper.scrape_entries(candidates, self.config.max_concurrency):
            if isinstance(outcome, Exception):
                logger.warning(f"Scrape failed for {entry.link}: {outcome}")
                continue
            try:
                if await self._store_result(entry, outcome):
                    enriched += 1
            except RivuletError as e:
                logger.error(f"Could not store scraped content for {entry.link}: {e}")
        logger.info(f"Enriched {enriched} of {len(candidates)} entries")
        return enriched

    async def _store_result(self, entry: Entry, result: ScrapeResult) -> bool:
        content = clean_html(result.content, base_url=entry.link) if result.is_html else result.content
        if not content:
            return False
        stored = await self.store.execute('get_entry', entry_id=entry.id)
        if stored is None:
            # Source removed while the batch was queued
            return False
        if len(content) <= len(stored.content or ""):
            logger.debug(f"Scraped content for {entry.link} is not longer than stored content")
            return False
        return await self.store.execute('update_entry_content', entry_id=entry.id, content=content)


class BackgroundScraperHandle:
    """Producer side of the scrape queue."""

    def __init__(self, scraper: BackgroundScraper, task: Task):
        self._scraper = scraper
        self._task = task

    async def _put(self, message: ScrapeMessage) -> bool:
        """Put a message, waiting while the queue is full.

        Returns False instead of waiting forever when the consumer has stopped.
        """
        if self._task.done():
            return False
        put = create_task(self._scraper.queue.put(message))
        try:
            await wait({put, self._task}, return_when=FIRST_COMPLETED)
        except CancelledError:
            put.cancel()
            raise
        if put.done():
            return True
        put.cancel()
        return False

    async def queue(self, entries: Sequence[Entry]) -> None:
        """Queue a batch, waiting while the queue is full."""
        if not entries:
            return
        if not await self._put(ScrapeBatch(list(entries))):
            logger.error(f"Background scraper is not running; {len(entries)} entries not queued for enrichment")

    async def shutdown(self) -> None:
        """Ask the consumer to stop once earlier batches are processed."""
        await self._put(Shutdown())

    async def wait_closed(self) -> None:
        try:
            await self._task
        except CancelledError:
            # A consumer cancelled from elsewhere counts as closed
            if not self._task.cancelled():
                raise

    @property
    def closed(self) -> bool:
        return self._task.done()


def spawn_background_scraper(config: Optional[ScraperConfig] = None, store=None,
                             scraper_factory: Optional[ScraperFactory] = None) -> BackgroundScraperHandle:
    """Start the scrape consumer on the running loop and return its handle."""
    if config is None:
        config = ScraperConfig.from_settings(app_config.SCRAPER_SETTINGS)
    scraper = BackgroundScraper(config, store, scraper_factory)
    task = create_task(scraper.run(), name="background-scraper")
    return BackgroundScraperHandle(scraper, task)
