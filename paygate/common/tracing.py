"""OpenTelemetry wiring for the gateway.

Webhook ingestors and the chain ingestor open their own spans through
`tracer`; FastAPI request spans come from the instrumentor.
"""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from paygate.common.config import settings


# Comma-separated URL patterns the instrumentor skips.
UNTRACED_URLS = "health,metrics"

tracer = trace.get_tracer("paygate")


def setup_tracing(service_name: str) -> None:
    """Register the process tracer provider; spans are exported only when an endpoint is set."""

    resource = Resource.create({"service.name": service_name, "paygate.network": settings.chain_network})
    provider = TracerProvider(resource=resource)
    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    FastAPIInstrumentor.instrument_app(app, excluded_urls=UNTRACED_URLS)
