import asyncio

import pytest

from domain import Entry, ScrapeResult
from errors import ScrapeError
from models import DatabaseQueue
from scraper import SCRAPE_QUEUE_CAPACITY, Scraper, ScraperConfig, spawn_background_scraper

FEED_URL = "https://example.com/feed"
LONG_HTML = "<p>" + "Full article text. " * 40 + "</p>"


def make_entry(n, content=None, summary="teaser", link=True):
    return Entry.create(1, FEED_URL, f"entry-{n}", title=f"Entry {n}",
                        link=f"https://example.com/posts/{n}" if link else None,
                        content=content, summary=summary)


class RecordingScraper(Scraper):
    def __init__(self, content=LONG_HTML, gate=None, fail_urls=()):
        self.content = content
        self.gate = gate
        self.fail_urls = set(fail_urls)
        self.urls = []
        self.closed = False

    async def scrape(self, url):
        if self.gate is not None:
            await self.gate.wait()
        self.urls.append(url)
        if url in self.fail_urls:
            raise ScrapeError(f"No content extracted from {url}")
        return ScrapeResult(content=self.content, is_html=True)

    async def close(self):
        self.closed = True


class Factory:
    def __init__(self, scraper, failures=0):
        self.scraper = scraper
        self.failures = failures
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("browser failed to start")
        return self.scraper


class MemoryStore:
    def __init__(self, entries=()):
        self.entries = {e.id: e for e in entries}
        self.updates = []

    async def execute(self, operation_name, **params):
        if operation_name == 'get_entry':
            return self.entries.get(params['entry_id'])
        if operation_name == 'update_entry_content':
            self.updates.append(params['entry_id'])
            self.entries[params['entry_id']].content = params['content']
            return True
        raise AssertionError(f"unexpected store operation {operation_name}")


@pytest.mark.asyncio
async def test_scraper_is_not_started_until_needed():
    scraper = RecordingScraper()
    factory = Factory(scraper)
    enriched = make_entry(1, content="x" * 500)
    teaser = make_entry(2)
    handle = spawn_background_scraper(ScraperConfig(), MemoryStore([enriched, teaser]), factory)

    await handle.queue([enriched])
    await handle.queue([])
    await asyncio.sleep(0.05)
    assert factory.calls == 0

    await handle.queue([teaser])
    await handle.queue([make_entry(3, link=False)])
    await handle.shutdown()
    await handle.wait_closed()

    assert factory.calls == 1
    assert scraper.urls == [teaser.link]
    assert scraper.closed


@pytest.mark.asyncio
async def test_failed_start_skips_batch_and_keeps_running():
    scraper = RecordingScraper()
    factory = Factory(scraper, failures=1)
    first, second = make_entry(1), make_entry(2)
    store = MemoryStore([first, second])
    handle = spawn_background_scraper(ScraperConfig(), store, factory)

    await handle.queue([first])
    await handle.queue([second])
    await handle.shutdown()
    await handle.wait_closed()

    assert factory.calls == 2
    assert scraper.urls == [second.link]
    assert store.updates == [second.id]


@pytest.mark.asyncio
async def test_full_queue_suspends_producer_without_dropping():
    gate = asyncio.Event()
    scraper = RecordingScraper(gate=gate)
    entries = [make_entry(n) for n in range(150)]
    store = MemoryStore(entries)
    handle = spawn_background_scraper(ScraperConfig(), store, Factory(scraper))

    # The first batch is taken by the consumer, which then blocks on the gate,
    # leaving the queue holding exactly its capacity
    for entry in entries[:SCRAPE_QUEUE_CAPACITY + 1]:
        await handle.queue([entry])
    await asyncio.sleep(0.05)

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(handle.queue([entries[SCRAPE_QUEUE_CAPACITY + 1]]), timeout=0.1)

    gate.set()
    for entry in entries[SCRAPE_QUEUE_CAPACITY + 1:]:
        await handle.queue([entry])
    await handle.shutdown()
    await handle.wait_closed()

    assert sorted(scraper.urls) == sorted(e.link for e in entries)
    assert len(store.updates) == 150


@pytest.mark.asyncio
async def test_scrape_failure_is_isolated():
    entries = [make_entry(n) for n in range(3)]
    scraper = RecordingScraper(fail_urls=[entries[1].link])
    store = MemoryStore(entries)
    handle = spawn_background_scraper(ScraperConfig(max_concurrency=2), store, Factory(scraper))

    await handle.queue(entries)
    await handle.shutdown()
    await handle.wait_closed()

    assert sorted(store.updates) == sorted([entries[0].id, entries[2].id])


@pytest.mark.asyncio
async def test_content_written_back_only_when_longer(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        source_id = await db.execute('add_source', url=FEED_URL)
        short = Entry.create(source_id, FEED_URL, "short", link="https://example.com/short", content="tiny")
        longer = Entry.create(source_id, FEED_URL, "longer", link="https://example.com/longer",
                              content="<p>" + "y" * 150 + "</p>")
        await db.execute('insert_entries', entries=[short, longer])

        scraped = "<p>" + "z" * 60 + "</p>"
        handle = spawn_background_scraper(ScraperConfig(), db, Factory(RecordingScraper(content=scraped)))
        await handle.queue([short, longer])
        await handle.shutdown()
        await handle.wait_closed()

        assert (await db.execute('get_entry', entry_id=short.id)).content == scraped
        assert (await db.execute('get_entry', entry_id=longer.id)).content == longer.content
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_scraped_html_is_sanitized_against_entry_link(tmp_path):
    entry = make_entry(1)
    html = '<div><script>alert(1)</script><p>' + "Body " * 50 + '<a href="/more">more</a></p></div>'
    store = MemoryStore([entry])
    handle = spawn_background_scraper(ScraperConfig(), store, Factory(RecordingScraper(content=html)))

    await handle.queue([entry])
    await handle.shutdown()
    await handle.wait_closed()

    content = store.entries[entry.id].content
    assert "<script>" not in content
    assert 'href="https://example.com/more"' in content


@pytest.mark.asyncio
async def test_shutdown_processes_earlier_batches_first():
    entries = [make_entry(n) for n in range(5)]
    scraper = RecordingScraper()
    handle = spawn_background_scraper(ScraperConfig(), MemoryStore(entries), Factory(scraper))

    for entry in entries:
        await handle.queue([entry])
    await handle.shutdown()
    await handle.wait_closed()

    assert len(scraper.urls) == 5
    assert handle.closed
    # Shutting down twice is harmless
    await handle.shutdown()


@pytest.mark.asyncio
async def test_queue_does_not_block_once_consumer_is_gone():
    gate = asyncio.Event()
    scraper = RecordingScraper(gate=gate)
    entries = [make_entry(n) for n in range(SCRAPE_QUEUE_CAPACITY + 2)]
    handle = spawn_background_scraper(ScraperConfig(), MemoryStore(entries), Factory(scraper))

    for entry in entries[:SCRAPE_QUEUE_CAPACITY + 1]:
        await handle.queue([entry])
    await asyncio.sleep(0.05)

    # Blocked on a full queue when the consumer dies
    pending = asyncio.create_task(handle.queue([entries[-1]]))
    await asyncio.sleep(0.05)
    assert not pending.done()
    handle._task.cancel()
    await asyncio.wait_for(pending, timeout=1)

    await handle.wait_closed()
    assert handle.closed
    await asyncio.wait_for(handle.queue([entries[0]]), timeout=1)
    await asyncio.wait_for(handle.shutdown(), timeout=1)
    assert scraper.urls == []
