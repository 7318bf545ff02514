"""OpenTelemetry tracing for ingestion, retrieval and chat."""
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.openai import OpenAIInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanExporter

from manual_qa.utils.logger import logger

SPAN_PREFIX = "manual_qa"


def get_tracer() -> trace.Tracer:
    """Tracer used by the services. Spans are no-ops until tracing is initialized."""
    return trace.get_tracer(SPAN_PREFIX)


@contextmanager
def traced(operation: str, document_id: Optional[str] = None, **attributes: Any) -> Iterator[trace.Span]:
    """
    Open a span named ``manual_qa.<operation>``.

    Args:
        operation: Short operation name, e.g. "retrieve"
        document_id: Manual the operation works on
        **attributes: Extra span attributes, prefixed with ``manual_qa.``
    """
    with get_tracer().start_as_current_span(f"{SPAN_PREFIX}.{operation}") as span:
        if document_id is not None:
            span.set_attribute(f"{SPAN_PREFIX}.document_id", document_id)
        for key, value in attributes.items():
            span.set_attribute(f"{SPAN_PREFIX}.{key}", value)
        yield span


def _build_exporter(otlp_endpoint: Optional[str]) -> SpanExporter:
    if otlp_endpoint:
        logger.info(f"Exporting traces over OTLP to {otlp_endpoint}")
        return OTLPSpanExporter(endpoint=otlp_endpoint)
    logger.info("Exporting traces to the console")
    return ConsoleSpanExporter()


def initialize_tracing(
    service_name: str = "manual-qa",
    service_version: str = "1.0.0",
    otlp_endpoint: Optional[str] = None,
    tracing_enabled: bool = True,
    instrument_openai: bool = True,
) -> Optional[TracerProvider]:
    """
    Install a tracer provider for the service.

    Args:
        service_name: service.name resource attribute
        service_version: service.version resource attribute
        otlp_endpoint: OTLP/HTTP endpoint (e.g. http://localhost:4318/v1/traces);
                      the console exporter is used when empty
        tracing_enabled: When False nothing is installed
        instrument_openai: Also trace embedding and chat completion calls made
                      through the OpenAI SDK

    Returns:
        The installed TracerProvider, or None when tracing is off or setup failed
    """
    if not tracing_enabled:
        logger.info("Tracing is disabled")
        return None

    try:
        provider = TracerProvider(
            resource=Resource.create({SERVICE_NAME: service_name, SERVICE_VERSION: service_version})
        )
        provider.add_span_processor(BatchSpanProcessor(_build_exporter(otlp_endpoint)))
        trace.set_tracer_provider(provider)
        if instrument_openai:
            OpenAIInstrumentor().instrument()
    except Exception as e:
        logger.error(f"Tracing setup failed, continuing without traces: {str(e)}", exc_info=True)
        return None

    return provider


def shutdown_tracing(provider: Optional[TracerProvider]) -> None:
    """Flush pending spans and shut the provider down."""
    if provider is None:
        return
    try:
        provider.shutdown()
    except Exception as e:
        logger.warning(f"Error during tracing shutdown: {str(e)}")
