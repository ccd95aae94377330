"""OpenTelemetry wiring: OTLP/HTTP export plus FastAPI request spans.

Gateway calls open their own child spans through `tracer`, which is a no-op
until `enable_tracing` registers a provider.
"""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from rcmpay.common.config import settings

tracer = trace.get_tracer("rcmpay")


def enable_tracing(app: FastAPI, service_name: str, endpoint: str | None = None) -> TracerProvider:
    """Register an exporting tracer provider and instrument `app` with it."""

    provider = TracerProvider(resource=Resource.create({SERVICE_NAME: service_name}))
    exporter = OTLPSpanExporter(endpoint=endpoint or settings.otel_exporter_otlp_endpoint)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    # Probes and scrapes would drown the request spans.
    FastAPIInstrumentor.instrument_app(app, tracer_provider=provider, excluded_urls="health,metrics")
    return provider
