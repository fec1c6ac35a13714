"""
OpenTelemetry tracing configuration for the donation payment service
"""
import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from donation_gateway.core.config import Settings

logger = structlog.get_logger(__name__)


def init_tracing(app, settings: Settings, engine=None) -> bool:
    """Initialize OpenTelemetry tracing with an OTLP exporter"""
    if not settings.tracing_enabled:
        logger.info("Tracing disabled")
        return False

    try:
        resource = Resource(attributes={
            SERVICE_NAME: settings.service_name
        })

        provider = TracerProvider(resource=resource)
        provider.add_span_processor(
            BatchSpanProcessor(
                OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=True),
                max_queue_size=2048,
                max_export_batch_size=512,
                schedule_delay_millis=5000
            )
        )
        trace.set_tracer_provider(provider)

        # Health and metrics endpoints are not worth a span
        FastAPIInstrumentor.instrument_app(
            app,
            excluded_urls="/health,/metrics,/health/ready"
        )

        if engine is not None:
            SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)

        # Processor and notification calls
        HTTPXClientInstrumentor().instrument()

        logger.info(
            "OpenTelemetry tracing initialized successfully",
            service_name=settings.service_name,
            otlp_endpoint=settings.otlp_endpoint
        )
        return True

    except Exception as e:
        # Tracing problems never block startup
        logger.error("Failed to initialize tracing", error=str(e), exc_info=True)
        return False
