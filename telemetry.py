#!/usr/bin/env python3
"""
Telemetry setup using OpenTelemetry.

Configures a tracer provider, instruments aiohttp client requests, logging
and sqlite3, and provides the ``trace_span`` decorator used on the pipeline
entry points (feed fetches, store operations, scrape batches and daemon
cycles).

Environment variables:
  - OTEL_SERVICE_NAME (default: rivulet)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - OTEL_CONSOLE_EXPORT=true to print finished spans to stdout
  - DISABLE_TELEMETRY=true to fully disable

Initialization is idempotent.
"""

from __future__ import annotations

import os
import atexit
import asyncio
import functools
import logging
import threading
from typing import Callable, Optional

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlite3 import SQLite3Instrumentor

_init_lock = threading.Lock()
_initialized = False
_provider: Optional[TracerProvider] = None

_logger = logging.getLogger(__name__)


def telemetry_disabled() -> bool:
    return os.environ.get("DISABLE_TELEMETRY", "false").lower() == "true"


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Initialize OpenTelemetry tracing.

    Safe to call multiple times. If DISABLE_TELEMETRY=true, it's a no-op.
    """
    global _initialized, _provider
    if telemetry_disabled() or _initialized:
        return
    with _init_lock:
        if _initialized:
            return

        svc = service_name or os.environ.get("OTEL_SERVICE_NAME", "rivulet")
        attrs = {"service.name": svc}
        env = os.environ.get("OTEL_ENVIRONMENT")
        if env:
            attrs["deployment.environment"] = env

        # Reuse a provider installed by external auto-instrumentation
        existing = trace.get_tracer_provider()
        if isinstance(existing, TracerProvider):
            provider = existing
        else:
            provider = TracerProvider(resource=Resource.create(attrs))
            trace.set_tracer_provider(provider)

        if os.environ.get("OTEL_CONSOLE_EXPORT", "false").lower() == "true":
            provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
            _logger.info("Telemetry initialized with console span exporter (service=%s)", svc)
        else:
            _logger.debug("Telemetry initialized without exporter (service=%s)", svc)
        _provider = provider

        _instrument_libraries()
        atexit.register(_shutdown)
        _initialized = True


def _instrument_libraries() -> None:
    # The sqlite3 instrumentor patches sqlite3.connect, so connections opened
    # before this point are not traced
    instrumentors = (
        AioHttpClientInstrumentor(),
        # Adds otelTraceID / otelSpanID to log records without changing the format
        LoggingInstrumentor(),
        SQLite3Instrumentor(),
    )
    for instrumentor in instrumentors:
        if instrumentor.is_instrumented_by_opentelemetry:
            continue
        try:
            instrumentor.instrument()
        except Exception as e:
            _logger.warning("Could not enable %s: %s", type(instrumentor).__name__, e)


def _shutdown() -> None:
    # Flushes the BatchSpanProcessor for short-lived CLI invocations
    if _provider is not None:
        try:
            _provider.shutdown()
        except Exception as e:
            _logger.debug("Telemetry shutdown failed: %s", e)


def get_tracer(name: str = "rivulet"):
    """Get the OpenTelemetry tracer for a named subsystem."""
    return trace.get_tracer(name)


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: dict | None = None,
    attr_from_args: Optional[Callable[..., dict]] = None,
):
    """Decorator to wrap a function call in an OpenTelemetry span.

    Args:
        span_name: Name of the span (defaults to module.funcname)
        tracer_name: Tracer name (defaults to the first dotted part of span_name)
        static_attrs: Attributes set on every span
        attr_from_args: Callable receiving the call's (*args, **kwargs) and
                        returning a dict of attributes

    Works with sync and async functions. Exceptions are recorded on the span
    and re-raised unchanged.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tracer = get_tracer(tracer_name or name.split(".")[0] or "rivulet")

        def _set_attrs(span, args, kwargs):
            try:
                for k, v in (static_attrs or {}).items():
                    span.set_attribute(k, v)
                if callable(attr_from_args):
                    for k, v in (attr_from_args(*args, **kwargs) or {}).items():
                        span.set_attribute(k, v)
            except Exception as e:
                # Attribute extraction must never break the traced call
                _logger.debug("Could not set span attributes on %s: %s", name, e)

        def _record(span, exc):
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR))

        if asyncio.iscoroutinefunction(func):

            @functools.wraps(func)
            async def _async_wrapper(*args, **kwargs):
                with tracer.start_as_current_span(name) as span:
                    _set_attrs(span, args, kwargs)
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        _record(span, e)
                        raise

            return _async_wrapper

        @functools.wraps(func)
        def _wrapper(*args, **kwargs):
            with tracer.start_as_current_span(name) as span:
                _set_attrs(span, args, kwargs)
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    _record(span, e)
                    raise

        return _wrapper

    return _decorator
