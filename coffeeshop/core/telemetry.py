"""
Coffeeshop OpenTelemetry Setup

Installs the tracer provider that the spans opened throughout the queue and
product services report to:

- Resource with service name, version and environment
- Parent-based ratio sampler
- Batch export over OTLP/gRPC when an endpoint is configured
- Auto-instrumentation for SQLAlchemy and Redis
"""

import os
import socket
from typing import Optional

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.semconv.resource import ResourceAttributes

from coffeeshop import __version__

from .config import get_settings

logger = structlog.get_logger()


class TelemetryManager:
    """Owns the tracer provider for the lifetime of the process."""

    def __init__(self):
        self._settings = get_settings()
        self._tracer_provider: Optional[TracerProvider] = None
        self._instrumented = False

    @property
    def is_initialized(self) -> bool:
        return self._tracer_provider is not None

    def _create_resource(self) -> Resource:
        return Resource.create(
            {
                ResourceAttributes.SERVICE_NAME: self._settings.OTEL_SERVICE_NAME,
                ResourceAttributes.SERVICE_VERSION: __version__,
                ResourceAttributes.DEPLOYMENT_ENVIRONMENT: self._settings.ENVIRONMENT,
                ResourceAttributes.HOST_NAME: socket.gethostname(),
                ResourceAttributes.PROCESS_PID: os.getpid(),
            }
        )

    def initialize(self, instrument_libraries: bool = True) -> TracerProvider:
        """Create and register the tracer provider. Idempotent."""
        if self._tracer_provider is not None:
            return self._tracer_provider

        provider = TracerProvider(
            resource=self._create_resource(),
            sampler=ParentBased(TraceIdRatioBased(self._settings.OTEL_SAMPLE_RATE)),
        )

        endpoint = self._settings.OTEL_EXPORTER_OTLP_ENDPOINT
        if endpoint:
            provider.add_span_processor(
                BatchSpanProcessor(
                    OTLPSpanExporter(endpoint=endpoint, insecure=True, timeout=30),
                    max_queue_size=2048,
                    max_export_batch_size=512,
                    schedule_delay_millis=5000,
                )
            )
        else:
            logger.info("No OTLP endpoint configured; spans are not exported")

        trace.set_tracer_provider(provider)
        self._tracer_provider = provider

        if instrument_libraries:
            SQLAlchemyInstrumentor().instrument()
            RedisInstrumentor().instrument()
            self._instrumented = True

        logger.info(
            "Tracing initialized",
            service_name=self._settings.OTEL_SERVICE_NAME,
            endpoint=endpoint,
            sample_rate=self._settings.OTEL_SAMPLE_RATE,
            instrumented=self._instrumented,
        )
        return provider

    def shutdown(self) -> None:
        """Flush pending spans and remove instrumentation."""
        if self._tracer_provider is None:
            return

        if self._instrumented:
            SQLAlchemyInstrumentor().uninstrument()
            RedisInstrumentor().uninstrument()
            self._instrumented = False

        self._tracer_provider.shutdown()
        self._tracer_provider = None
        logger.info("Tracing shut down")
