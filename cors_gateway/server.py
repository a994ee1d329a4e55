import logging
import time
from contextlib import asynccontextmanager
from typing import Optional, Sequence

from fastapi import FastAPI, Request
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

from cors_gateway.gateway.admission import AdmissionConfig, AdmissionPipeline
from cors_gateway.gateway.errors import GatewayRejection, error_response
from cors_gateway.gateway.lifecycle import InboundLifecycleMiddleware
from cors_gateway.gateway.proxy import Forwarder, HttpxForwarder, ProxyOrchestrator
from cors_gateway.gateway.tunnel import TunnelLimiter, WebSocketTunnel
from cors_gateway.routes import router
from cors_gateway.vars import (
    INBOUND_TIMEOUT_SECONDS,
    OTLP_ENDPOINT,
    OTLP_HEADERS,
    SERVICE_NAME,
)

logger = logging.getLogger("uvicorn.error")


class FilteringSpanExporter(SpanExporter):
    """
    Wrapper exporter that drops the per-chunk ASGI body spans emitted while a
    proxied response is streamed.
    """

    def __init__(self, exporter: SpanExporter):
        self.exporter = exporter

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        filtered_spans = [
            span
            for span in spans
            if not (
                span.attributes
                and span.attributes.get("asgi.event.type") == "http.response.body"
            )
        ]
        if filtered_spans:
            return self.exporter.export(filtered_spans)
        return SpanExportResult.SUCCESS

    def shutdown(self):
        return self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000):
        return self.exporter.force_flush(timeout_millis)


trace.set_tracer_provider(
    TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME}))
)
if OTLP_ENDPOINT:
    otlp_exporter = OTLPSpanExporter(
        endpoint=OTLP_ENDPOINT,
        headers=(OTLP_HEADERS.split(",") if OTLP_HEADERS else None),
    )
    trace.get_tracer_provider().add_span_processor(
        BatchSpanProcessor(FilteringSpanExporter(otlp_exporter))
    )


async def _handle_rejection(request: Request, exc: GatewayRejection):
    return error_response(exc.kind, request.headers, exc.message, exc.headers)


def create_app(
    config: Optional[AdmissionConfig] = None,
    forwarder: Optional[Forwarder] = None,
    inbound_timeout: float = INBOUND_TIMEOUT_SECONDS,
    tunnel_limiter: Optional[TunnelLimiter] = None,
) -> FastAPI:
    """
    Build the gateway application.

    Config defaults to the environment and the forwarder to a pooled httpx
    client, which is closed when the application shuts down.
    """
    config = config or AdmissionConfig.from_env()
    forwarder = forwarder or HttpxForwarder()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"[Gateway] {SERVICE_NAME} ready. Usage: /<target-url>")
        yield
        await forwarder.aclose()

    # Docs routes would shadow targets such as "/docs", so they stay off
    app = FastAPI(
        title=SERVICE_NAME,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    orchestrator = ProxyOrchestrator(config, forwarder)
    app.state.started_at = time.monotonic()
    app.state.admission = AdmissionPipeline(config)
    app.state.orchestrator = orchestrator
    app.state.tunnel = WebSocketTunnel(orchestrator, tunnel_limiter)

    app.add_exception_handler(GatewayRejection, _handle_rejection)
    app.add_middleware(InboundLifecycleMiddleware, timeout=inbound_timeout)
    app.include_router(router)

    FastAPIInstrumentor.instrument_app(app, excluded_urls="healthz,metrics")
    return app


app = create_app()
