"""
OpenTelemetry tracing setup
"""
import structlog
from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from kbchat.services.config import Settings

logger = structlog.get_logger()


def setup_tracing(app: FastAPI, settings: Settings) -> None:
    """Install an OTLP exporter and instrument the app"""
    resource = Resource.create({"service.name": settings.OTEL_SERVICE_NAME})
    provider = TracerProvider(resource=resource)
    otlp_exporter = OTLPSpanExporter(
        endpoint=settings.OTEL_ENDPOINT,
        insecure=True
    )
    provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
    trace.set_tracer_provider(provider)

    FastAPIInstrumentor.instrument_app(app)
    logger.info("Tracing enabled", endpoint=settings.OTEL_ENDPOINT)


def get_tracer() -> trace.Tracer:
    """Tracer for pipeline spans; a no-op tracer unless tracing is set up"""
    return trace.get_tracer("kbchat")
