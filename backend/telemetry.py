# telemetry.py — OpenTelemetry instrumentation for the CRM gateway
"""
Tracing is exported over OTLP when OTEL_EXPORTER_OTLP_ENDPOINT is set and is
a no-op otherwise. Gateway operations get one span each, tagged with the
resource, the method and whether the request ran under a master scope (never
with the key itself).
"""
import os
import logging
from contextlib import contextmanager

logger = logging.getLogger("crm-gateway.telemetry")

SERVICE_NAME = os.getenv("OTEL_SERVICE_NAME", "crm-gateway")
SERVICE_VERSION = "1.0.0"
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
OTLP_ENDPOINT = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "")

_tracer = None


def setup_telemetry(app=None):
    """Initialise OpenTelemetry tracing and instrument FastAPI + SQLAlchemy.

    If the OTel SDK is not installed or no exporter endpoint is configured,
    this does nothing.
    """
    global _tracer
    if not OTLP_ENDPOINT:
        logger.info("OpenTelemetry disabled (OTEL_EXPORTER_OTLP_ENDPOINT not set)")
        return None

    try:
        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
        from opentelemetry.sdk.resources import Resource, SERVICE_NAME as RES_SVC_NAME
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

        resource = Resource.create({
            RES_SVC_NAME: SERVICE_NAME,
            "service.version": SERVICE_VERSION,
            "deployment.environment": ENVIRONMENT,
        })

        provider = TracerProvider(resource=resource)
        exporter = OTLPSpanExporter(endpoint=OTLP_ENDPOINT, insecure=True)
        provider.add_span_processor(BatchSpanProcessor(exporter))
        trace.set_tracer_provider(provider)
        _tracer = trace.get_tracer("crm-gateway", SERVICE_VERSION)

        if app is not None:
            try:
                from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
                FastAPIInstrumentor.instrument_app(
                    app,
                    excluded_urls="health",
                    tracer_provider=provider,
                )
                logger.info("FastAPI instrumented with OpenTelemetry")
            except ImportError:
                logger.warning("opentelemetry-instrumentation-fastapi not installed")

        try:
            from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
            SQLAlchemyInstrumentor().instrument(tracer_provider=provider)
            logger.info("SQLAlchemy instrumented with OpenTelemetry")
        except ImportError:
            logger.warning("opentelemetry-instrumentation-sqlalchemy not installed")

        logger.info(f"OpenTelemetry initialised → {OTLP_ENDPOINT}")
        return provider

    except ImportError:
        logger.info("OpenTelemetry SDK not installed, tracing disabled")
        return None
    except Exception as e:
        logger.error(f"OpenTelemetry setup failed: {e}")
        return None


@contextmanager
def gateway_span(resource: str, method: str, is_master: bool):
    """Span around one gateway operation; a plain no-op without a tracer."""
    if _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(f"gateway {method} {resource}") as span:
        span.set_attribute("crm.resource", resource)
        span.set_attribute("crm.method", method)
        span.set_attribute("crm.master_scope", is_master)
        yield span
