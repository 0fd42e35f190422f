"""OpenTelemetry tracing bootstrap.

Opt-in: nothing is exported unless ``OTLP_ENDPOINT`` is set.  Without a
provider ``get_tracer`` returns the global no-op tracer, so spans in the
worker cost nothing in dev and tests.

    OTLP_ENDPOINT=http://localhost:4318   (``/v1/traces`` is appended)
"""

from __future__ import annotations

import logging
import re

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

logger = logging.getLogger("feedbackbot.tracing")

_tracer_provider: TracerProvider | None = None


def traces_endpoint(base: str | None) -> str | None:
    """``http://host:4318`` or ``http://host:4318/v1/traces`` -> ``.../v1/traces``."""
    if not base:
        return None
    clean = re.sub(r"/v1/[^/]+$", "", base.rstrip("/"))
    return f"{clean}/v1/traces"


def setup_tracing(
    app=None,
    otlp_endpoint: str | None = None,
    service_name: str = "feedbackbot",
    service_version: str = "0.1.0",
) -> TracerProvider | None:
    """Install a batching OTLP span exporter; instrument *app* when given."""
    global _tracer_provider

    endpoint = traces_endpoint(otlp_endpoint)
    if endpoint is None:
        logger.info("OpenTelemetry disabled: no OTLP endpoint configured.")
        return None
    if _tracer_provider is not None:
        return _tracer_provider

    resource = Resource.create({"service.name": service_name, "service.version": service_version})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    _tracer_provider = provider
    if app is not None:
        FastAPIInstrumentor.instrument_app(app)
    logger.info("OTEL traces -> %s", endpoint)
    return provider


def shutdown_tracing() -> None:
    global _tracer_provider
    if _tracer_provider is not None:
        _tracer_provider.shutdown()
        _tracer_provider = None


def get_tracer(name: str):
    return trace.get_tracer(name)
