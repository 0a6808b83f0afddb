from typing import Optional, Sequence

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
from prometheus_client import Info
from prometheus_fastapi_instrumentator import Instrumentator

from tenant_proxy.registry import TenantRegistry, registry_from_env
from tenant_proxy.routes import router
from tenant_proxy.routing import AffinityPrecedence
from tenant_proxy.vars import (
    AFFINITY_PRECEDENCE,
    METRICS_PATH,
    OTLP_ENDPOINT,
    OTLP_HEADERS,
    SERVICE_NAME,
)

# Per-chunk ASGI events: one span per proxied body chunk or WebSocket frame
_NOISY_ASGI_EVENTS = {
    "http.response.body",
    "websocket.send",
    "websocket.receive",
}


class FilteringSpanExporter(SpanExporter):
    """
    Wrapper exporter that drops the per-chunk ASGI spans produced while
    streaming proxied bodies and bridging WebSocket frames.
    """

    def __init__(self, exporter: SpanExporter):
        self.exporter = exporter

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        filtered_spans = [
            span
            for span in spans
            if not (
                span.attributes
                and span.attributes.get("asgi.event.type") in _NOISY_ASGI_EVENTS
            )
        ]
        if filtered_spans:
            return self.exporter.export(filtered_spans)
        return SpanExportResult.SUCCESS

    def shutdown(self):
        return self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000):
        return self.exporter.force_flush(timeout_millis)


def _configure_tracing() -> None:
    trace.set_tracer_provider(
        TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME}))
    )
    tracer_provider = trace.get_tracer_provider()
    if OTLP_ENDPOINT:
        otlp_exporter = OTLPSpanExporter(
            endpoint=OTLP_ENDPOINT,
            headers=((OTLP_HEADERS).split(",") if OTLP_HEADERS else None),
        )
        tracer_provider.add_span_processor(
            BatchSpanProcessor(FilteringSpanExporter(otlp_exporter))
        )


def create_app(
    registry: Optional[TenantRegistry] = None,
    precedence: Optional[AffinityPrecedence] = None,
) -> FastAPI:
    """
    Build the router application.

    A tenant table that fails validation, or two tenants sharing a prefix,
    raises here and aborts startup.
    """
    if registry is None:
        registry = registry_from_env()

    app = FastAPI()
    app.state.registry = registry
    app.state.precedence = precedence or AffinityPrecedence.parse(AFFINITY_PRECEDENCE)

    # Registered ahead of the catch-all so the metrics path is never proxied
    Instrumentator().instrument(app).expose(app, endpoint=METRICS_PATH)

    FastAPIInstrumentor.instrument_app(
        app,
        excluded_urls=METRICS_PATH,
        server_request_hook=None,
        client_request_hook=None,
    )

    app.include_router(router)
    return app


_configure_tracing()

app_info = Info("tenant_proxy_app_info", "Application Info")
app_info.info({"app_name": SERVICE_NAME})

app = create_app()
