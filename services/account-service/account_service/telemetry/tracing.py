"""OpenTelemetry tracing setup."""

from __future__ import annotations

import logging
from typing import Callable

from opentelemetry import propagate, trace
from opentelemetry.baggage.propagation import W3CBaggagePropagator
from opentelemetry.propagators.composite import CompositePropagator
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

from ..config import Settings

logger = logging.getLogger(__name__)


def init_tracing(settings: Settings) -> Callable[[], None]:
    """Install the global tracer provider and return its shutdown callable.

    When tracing is disabled nothing is installed and the returned callable is
    a no-op; spans created through ``trace.get_tracer`` are then non-recording.
    """
    if not settings.tracing_enabled:
        return lambda: None

    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor
    from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

    exporter = OTLPSpanExporter(
        endpoint=settings.tracing_otlp_endpoint,
        insecure=settings.tracing_otlp_insecure,
    )
    provider = TracerProvider(
        resource=Resource.create({SERVICE_NAME: settings.tracing_service_name}),
        sampler=ParentBased(TraceIdRatioBased(settings.tracing_sample_ratio)),
    )
    provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(provider)
    propagate.set_global_textmap(
        CompositePropagator([TraceContextTextMapPropagator(), W3CBaggagePropagator()])
    )
    logger.info(
        "tracing enabled endpoint=%s sample_ratio=%s",
        settings.tracing_otlp_endpoint,
        settings.tracing_sample_ratio,
    )
    return provider.shutdown
