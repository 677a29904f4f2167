# telemetry.py - Tracing for StackFlow
"""
Service code opens spans through the OpenTelemetry API: one per unit of work
(see database.transactional) and one per notification dispatch. The API is a
no-op until setup_telemetry installs an SDK provider, which only happens when
OTEL_EXPORTER_OTLP_ENDPOINT is set and the `telemetry` extra is installed.
"""
import os
import logging
from contextlib import contextmanager

from opentelemetry import trace

logger = logging.getLogger("stackflow.telemetry")

TRACER_NAME = "stackflow"
SERVICE_NAME = os.getenv("OTEL_SERVICE_NAME", "stackflow-api")
SERVICE_VERSION = "1.0.0"
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
OTLP_ENDPOINT = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "")


def get_tracer():
    return trace.get_tracer(TRACER_NAME, SERVICE_VERSION)


@contextmanager
def service_span(name: str, **attributes):
    """Span around a service-layer step. Exceptions are recorded on the span and re-raised."""
    with get_tracer().start_as_current_span(name, attributes=attributes) as span:
        yield span


def _instrument_fastapi(app, provider):
    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
    # Health checks and socket stats would drown out real traffic
    FastAPIInstrumentor.instrument_app(app, excluded_urls="health,ws/stats", tracer_provider=provider)


def _instrument_sqlalchemy(engine, provider):
    from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine, tracer_provider=provider)


def _instrument_email_clients(provider):
    # Mailgun, SendGrid and Mailjet are all called through httpx
    from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
    HTTPXClientInstrumentor().instrument(tracer_provider=provider)


def setup_telemetry(app=None, engine=None):
    """Install an OTLP-exporting tracer provider and instrument the app, the engine and httpx.

    Returns the provider, or None when tracing stays disabled.
    """
    if not OTLP_ENDPOINT:
        logger.info("Tracing disabled (OTEL_EXPORTER_OTLP_ENDPOINT not set)")
        return None

    try:
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
        from opentelemetry.sdk.resources import Resource, SERVICE_NAME as RES_SVC_NAME
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    except ImportError:
        logger.warning("OTLP endpoint set but the telemetry extra is not installed, tracing disabled")
        return None

    provider = TracerProvider(resource=Resource.create({
        RES_SVC_NAME: SERVICE_NAME,
        "service.version": SERVICE_VERSION,
        "deployment.environment": ENVIRONMENT,
    }))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=OTLP_ENDPOINT, insecure=True)))
    trace.set_tracer_provider(provider)

    steps = [("httpx", lambda: _instrument_email_clients(provider))]
    if app is not None:
        steps.append(("fastapi", lambda: _instrument_fastapi(app, provider)))
    if engine is not None:
        steps.append(("sqlalchemy", lambda: _instrument_sqlalchemy(engine, provider)))

    for name, instrument in steps:
        try:
            instrument()
            logger.info(f"{name} instrumented")
        except ImportError:
            logger.warning(f"opentelemetry-instrumentation-{name} not installed")

    logger.info(f"Tracing enabled, exporting to {OTLP_ENDPOINT}")
    return provider
