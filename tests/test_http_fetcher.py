import asyncio

import pytest
import pytest_asyncio
from aiohttp import test_utils, web

from domain import FetchedContent, NotModified
from errors import TransportError
from fetcher import HttpFetcher

SEEN_HEADERS = web.AppKey("seen_headers", list)
FEED = b'<?xml version="1.0"?><rss version="2.0"><channel><title>T</title></channel></rss>'


async def feed_handler(request):
    request.app[SEEN_HEADERS].append(dict(request.headers))
    if request.headers.get('If-None-Match') == 'W/"v1"':
        return web.Response(status=304)
    if request.headers.get('If-Modified-Since') == 'Wed, 01 May 2024 12:00:00 GMT':
        return web.Response(status=304)
    return web.Response(body=FEED, headers={
        'ETag': 'W/"v1"',
        'Last-Modified': 'Wed, 01 May 2024 12:00:00 GMT',
        'Content-Type': 'application/rss+xml',
    })


async def missing_handler(request):
    return web.Response(status=404)


async def slow_handler(request):
    await asyncio.sleep(3)
    return web.Response(body=FEED)


@pytest_asyncio.fixture
async def server():
    app = web.Application()
    app[SEEN_HEADERS] = []
    app.router.add_get('/feed', feed_handler)
    app.router.add_get('/missing', missing_handler)
    app.router.add_get('/slow', slow_handler)
    test_server = test_utils.TestServer(app)
    await test_server.start_server()
    yield test_server
    await test_server.close()


@pytest.mark.asyncio
async def test_fetch_returns_body_and_validators(server):
    fetcher = HttpFetcher(timeout=5, user_agent="rivulet-test/1.0")
    try:
        result = await fetcher.fetch(str(server.make_url('/feed')))
    finally:
        await fetcher.close()

    assert isinstance(result, FetchedContent)
    assert result.body == FEED
    assert result.etag == 'W/"v1"'
    assert result.last_modified == 'Wed, 01 May 2024 12:00:00 GMT'
    headers = server.app[SEEN_HEADERS][0]
    assert headers['User-Agent'] == "rivulet-test/1.0"
    assert 'If-None-Match' not in headers


@pytest.mark.asyncio
async def test_validators_sent_verbatim_and_304_maps_to_not_modified(server):
    fetcher = HttpFetcher(timeout=5)
    try:
        by_etag = await fetcher.fetch(str(server.make_url('/feed')), etag='W/"v1"')
        by_date = await fetcher.fetch(str(server.make_url('/feed')), last_modified='Wed, 01 May 2024 12:00:00 GMT')
    finally:
        await fetcher.close()

    assert isinstance(by_etag, NotModified)
    assert isinstance(by_date, NotModified)
    assert server.app[SEEN_HEADERS][0]['If-None-Match'] == 'W/"v1"'


@pytest.mark.asyncio
async def test_http_error_status_raises_transport_error(server):
    fetcher = HttpFetcher(timeout=5)
    try:
        with pytest.raises(TransportError) as excinfo:
            await fetcher.fetch(str(server.make_url('/missing')))
    finally:
        await fetcher.close()

    assert excinfo.value.status == 404


@pytest.mark.asyncio
async def test_timeout_raises_transport_error(server):
    fetcher = HttpFetcher(timeout=1)
    try:
        with pytest.raises(TransportError):
            await fetcher.fetch(str(server.make_url('/slow')))
    finally:
        await fetcher.close()


@pytest.mark.asyncio
async def test_connection_error_raises_transport_error():
    fetcher = HttpFetcher(timeout=2)
    try:
        with pytest.raises(TransportError) as excinfo:
            await fetcher.fetch("http://127.0.0.1:1/feed")
    finally:
        await fetcher.close()

    assert excinfo.value.url == "http://127.0.0.1:1/feed"
    assert excinfo.value.status is None


@pytest.mark.asyncio
async def test_session_is_shared_and_recreated_after_close(server):
    fetcher = HttpFetcher(timeout=5)
    await fetcher.fetch(str(server.make_url('/feed')))
    first = fetcher._session
    await fetcher.fetch(str(server.make_url('/feed')))
    assert fetcher._session is first

    await fetcher.close()
    assert fetcher._session is None
    await fetcher.fetch(str(server.make_url('/feed')))
    assert fetcher._session is not first
    await fetcher.close()
