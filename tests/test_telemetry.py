import pytest
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlite3 import SQLite3Instrumentor

import telemetry
from models import DatabaseQueue
from telemetry import init_telemetry, trace_span

INSTRUMENTORS = (AioHttpClientInstrumentor, LoggingInstrumentor, SQLite3Instrumentor)


@pytest.fixture
def fresh_telemetry(monkeypatch):
    monkeypatch.delenv("DISABLE_TELEMETRY", raising=False)
    monkeypatch.delenv("OTEL_CONSOLE_EXPORT", raising=False)
    monkeypatch.setattr(telemetry, "_initialized", False)
    monkeypatch.setattr(telemetry, "_provider", None)
    monkeypatch.setattr(telemetry.atexit, "register", lambda func: None)
    yield
    for cls in INSTRUMENTORS:
        instrumentor = cls()
        if instrumentor.is_instrumented_by_opentelemetry:
            instrumentor.uninstrument()


def test_init_instruments_http_logging_and_sqlite(fresh_telemetry):
    init_telemetry("rivulet-test")
    assert all(cls().is_instrumented_by_opentelemetry for cls in INSTRUMENTORS)

    # A second call is a no-op
    init_telemetry("rivulet-test")
    assert telemetry._initialized


def test_disabled_telemetry_instruments_nothing(fresh_telemetry, monkeypatch):
    monkeypatch.setenv("DISABLE_TELEMETRY", "true")
    init_telemetry("rivulet-test")
    assert not telemetry._initialized
    assert not any(cls().is_instrumented_by_opentelemetry for cls in INSTRUMENTORS)


@pytest.mark.asyncio
async def test_store_works_over_instrumented_sqlite(fresh_telemetry, tmp_path):
    init_telemetry("rivulet-test")
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        source_id = await db.execute('add_source', url="https://example.com/feed")
        source = await db.execute('get_source', source_id=source_id)
        assert source.url == "https://example.com/feed"
    finally:
        await db.stop()


def test_trace_span_passes_results_and_exceptions_through():
    @trace_span("test.sync", attr_from_args=lambda value: {"value": value})
    def double(value):
        if value < 0:
            raise ValueError("negative")
        return value * 2

    assert double(4) == 8
    with pytest.raises(ValueError):
        double(-1)


@pytest.mark.asyncio
async def test_trace_span_wraps_coroutines():
    @trace_span("test.async", attr_from_args=lambda: 1 / 0)
    async def answer():
        return 42

    # A failing attribute callback does not break the call
    assert await answer() == 42
