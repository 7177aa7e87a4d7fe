#!/usr/bin/env python3
"""
Telemetry setup using OpenTelemetry.

This module configures tracing for aiohttp client requests, stdlib logging and
the SQLite snapshot cache, plus key pipeline spans (origin fetches, per-source
fetches, tab aggregations). Spans are exported to Azure Monitor only when a
connection string is configured and the optional exporter package is present.

Environment variables:
  - APPLICATIONINSIGHTS_CONNECTION_STRING or AZURE_MONITOR_CONNECTION_STRING
  - OTEL_SERVICE_NAME (default: rss-proxy)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - DISABLE_TELEMETRY=true to fully disable

Initialization is idempotent.
"""

from __future__ import annotations

import os
import atexit
import logging
import threading
from typing import Callable, Optional
import asyncio
import functools

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlite3 import SQLite3Instrumentor

try:
    # Azure Monitor exporter is optional; only used when a connection string is present
    from azure.monitor.opentelemetry.exporter import AzureMonitorTraceExporter  # type: ignore
    _AZURE_AVAILABLE = True
    _AZURE_IMPORT_ERROR: Optional[str] = None
except ImportError as _imp_err:
    AzureMonitorTraceExporter = None  # type: ignore
    _AZURE_AVAILABLE = False
    _AZURE_IMPORT_ERROR = repr(_imp_err)

_init_lock = threading.Lock()
_initialized = False
_provider: Optional[TracerProvider] = None

_logger = logging.getLogger("NewsAggregator.telemetry")


def _connection_string() -> Optional[str]:
    return os.environ.get("APPLICATIONINSIGHTS_CONNECTION_STRING") or os.environ.get(
        "AZURE_MONITOR_CONNECTION_STRING"
    )


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Initialize OpenTelemetry tracing and instrumentation.

    Safe to call multiple times. If DISABLE_TELEMETRY=true, it's a no-op.
    """
    global _initialized, _provider
    if os.environ.get("DISABLE_TELEMETRY", "false").lower() == "true":
        return
    if _initialized:
        return
    with _init_lock:
        if _initialized:
            return

        svc = service_name or os.environ.get("OTEL_SERVICE_NAME", "rss-proxy")
        env = os.environ.get("OTEL_ENVIRONMENT")
        attrs = {"service.name": svc}
        if env:
            attrs["deployment.environment"] = env

        # Reuse a provider installed by external auto-instrumentation
        existing = trace.get_tracer_provider()
        if isinstance(existing, TracerProvider):
            provider = existing
        else:
            provider = TracerProvider(resource=Resource.create(attrs))

        conn = _connection_string()
        if conn and _AZURE_AVAILABLE:
            try:
                provider.add_span_processor(
                    BatchSpanProcessor(AzureMonitorTraceExporter.from_connection_string(conn))  # type: ignore
                )
                _logger.info("Telemetry initialized: Azure Monitor trace exporter enabled (service=%s)", svc)
            except ValueError as e:
                _logger.warning("Telemetry init: failed to enable Azure exporter (%s); spans will not be exported", e)
        else:
            _logger.info("Telemetry initialized without exporter (service=%s); spans stay in-process", svc)
            if conn and _AZURE_IMPORT_ERROR:
                _logger.warning(
                    "Azure exporter package unavailable; install 'azure-monitor-opentelemetry-exporter'. Import error: %s",
                    _AZURE_IMPORT_ERROR,
                )

        if not isinstance(existing, TracerProvider):
            trace.set_tracer_provider(provider)
        _provider = provider

        AioHttpClientInstrumentor().instrument()
        # Inject trace/span ids into log records without changing the format
        LoggingInstrumentor().instrument(set_logging_format=False)
        SQLite3Instrumentor().instrument()

        _initialized = True
        atexit.register(_shutdown)


def _shutdown() -> None:
    # TracerProvider.shutdown() flushes the BatchSpanProcessor
    if _provider is not None:
        _provider.shutdown()


def get_tracer(name: str = "rss-proxy"):
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
        static_attrs: Dict of attributes to set on the span
        attr_from_args: Callable taking (*args, **kwargs) and returning a dict
                        of attributes to set on the span

    Works with sync and async functions.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tname = tracer_name or name.split(".")[0] or "rss-proxy"

        def _set_attrs(span, args, kwargs):
            if static_attrs:
                for k, v in static_attrs.items():
                    span.set_attribute(k, v)
            if callable(attr_from_args):
                try:
                    dyn = attr_from_args(*args, **kwargs) or {}
                except (TypeError, ValueError, AttributeError):
                    # Attribute extraction must never break the call itself
                    dyn = {}
                for k, v in dyn.items():
                    span.set_attribute(k, v)

        def _record(span, error):
            span.record_exception(error)
            span.set_status(Status(StatusCode.ERROR))

        if asyncio.iscoroutinefunction(func):

            @functools.wraps(func)
            async def _aw(*args, **kwargs):
                with get_tracer(tname).start_as_current_span(name) as span:
                    _set_attrs(span, args, kwargs)
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        _record(span, e)
                        raise

            return _aw

        @functools.wraps(func)
        def _w(*args, **kwargs):
            with get_tracer(tname).start_as_current_span(name) as span:
                _set_attrs(span, args, kwargs)
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    _record(span, e)
                    raise

        return _w

    return _decorator
