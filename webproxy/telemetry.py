import logging
from typing import Dict, FrozenSet, Iterable, Optional, Sequence

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SpanExporter,
    SpanExportResult,
)

from webproxy.vars import OTLP_ENDPOINT, OTLP_HEADERS, SERVICE_NAME

logger = logging.getLogger("uvicorn.error")

# One span per streamed body chunk or relayed frame; a long download or a
# chatty socket would otherwise flood the collector.
PER_CHUNK_ASGI_EVENTS = frozenset(
    {"http.response.body", "websocket.send", "websocket.receive"}
)


class ChunkSpanFilter(SpanExporter):
    """Forwards spans to ``exporter``, minus the per-chunk ASGI event spans."""

    def __init__(
        self,
        exporter: SpanExporter,
        dropped_events: Iterable[str] = PER_CHUNK_ASGI_EVENTS,
    ):
        self.exporter = exporter
        self.dropped_events: FrozenSet[str] = frozenset(dropped_events)

    def _keeps(self, span: ReadableSpan) -> bool:
        event = (span.attributes or {}).get("asgi.event.type")
        return event not in self.dropped_events

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        kept = [span for span in spans if self._keeps(span)]
        if not kept:
            return SpanExportResult.SUCCESS
        return self.exporter.export(kept)

    def shutdown(self):
        return self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000):
        return self.exporter.force_flush(timeout_millis)


def parse_otlp_headers(raw: Optional[str]) -> Dict[str, str]:
    """Parse ``k1=v1,k2=v2``; entries without ``=`` or without a key are skipped."""
    headers: Dict[str, str] = {}
    for item in (raw or "").split(","):
        key, sep, value = item.partition("=")
        key = key.strip()
        if sep and key:
            headers[key] = value.strip()
    return headers


def build_tracer_provider(
    service_name: str = SERVICE_NAME,
    endpoint: Optional[str] = OTLP_ENDPOINT,
    headers: Optional[str] = OTLP_HEADERS,
) -> TracerProvider:
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    if endpoint:
        exporter = OTLPSpanExporter(
            endpoint=endpoint, headers=parse_otlp_headers(headers) or None
        )
        provider.add_span_processor(BatchSpanProcessor(ChunkSpanFilter(exporter)))
        logger.info(f"[Telemetry] Exporting traces to {endpoint}")
    return provider


def configure_tracing(app: FastAPI) -> TracerProvider:
    """Install the global tracer provider and instrument ``app``."""
    provider = build_tracer_provider()
    trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(app, excluded_urls="metrics")
    return provider
