"""OpenTelemetry setup and span helpers for campaign operations."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanExporter
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.semconv.resource import ResourceAttributes
from opentelemetry.trace import Status, StatusCode

from campaign_engine.core.settings import settings

TRACER_NAME = "campaign_engine"
ATTRIBUTE_PREFIX = "campaign_engine."
# Probes are polled constantly and would drown the interesting traces.
EXCLUDED_URLS = "healthz,readyz,observability/prometheus"

_provider: TracerProvider | None = None


def parse_otlp_headers(raw: str | None) -> Dict[str, str] | None:
    """Parse ``key=value,key2=value2`` header strings used by OTLP exporters."""

    if not raw:
        return None
    headers: Dict[str, str] = {}
    for pair in raw.split(","):
        key, sep, value = pair.partition("=")
        if sep and key.strip():
            headers[key.strip()] = value.strip()
    return headers or None


def _build_exporter() -> SpanExporter:
    if settings.otel_exporter_otlp_endpoint:
        return OTLPSpanExporter(
            endpoint=settings.otel_exporter_otlp_endpoint,
            headers=parse_otlp_headers(settings.otel_exporter_otlp_headers),
        )
    return ConsoleSpanExporter()


def configure_tracing(
    app: FastAPI,
    *,
    service_name: str,
    service_version: str,
    environment: str,
    sample_ratio: float = 1.0,
) -> TracerProvider:
    """Install the tracer provider once and instrument ``app`` with it."""

    global _provider

    if _provider is None:
        resource = Resource.create(
            {
                ResourceAttributes.SERVICE_NAME: service_name,
                ResourceAttributes.SERVICE_VERSION: service_version,
                ResourceAttributes.DEPLOYMENT_ENVIRONMENT: environment,
            }
        )
        ratio = min(1.0, max(0.0, sample_ratio))
        _provider = TracerProvider(resource=resource, sampler=ParentBased(TraceIdRatioBased(ratio)))
        _provider.add_span_processor(BatchSpanProcessor(_build_exporter()))
        trace.set_tracer_provider(_provider)
        LoggingInstrumentor().instrument(set_logging_format=False)

    FastAPIInstrumentor.instrument_app(app, tracer_provider=_provider, excluded_urls=EXCLUDED_URLS)
    return _provider


def shutdown_tracing() -> None:
    """Flush pending spans; called when the app lifespan ends."""

    if _provider is not None:
        _provider.force_flush()


def get_tracer() -> trace.Tracer:
    return trace.get_tracer(TRACER_NAME)


def _attribute_value(value: Any) -> Any:
    if isinstance(value, (bool, int, float, str)):
        return value
    return str(value)


@contextmanager
def campaign_span(name: str, **attributes: Any) -> Iterator[trace.Span]:
    """Open a span whose attributes are namespaced under ``campaign_engine.``.

    ``None`` attributes are dropped. Exceptions escaping the block mark the
    span as errored and are re-raised unchanged.
    """

    with get_tracer().start_as_current_span(name, record_exception=False, set_status_on_exception=False) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(f"{ATTRIBUTE_PREFIX}{key}", _attribute_value(value))
        try:
            yield span
        except Exception as exc:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, type(exc).__name__))
            raise


__all__ = [
    "ATTRIBUTE_PREFIX",
    "campaign_span",
    "configure_tracing",
    "get_tracer",
    "parse_otlp_headers",
    "shutdown_tracing",
]
