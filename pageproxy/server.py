import logging
import time
from contextlib import asynccontextmanager
from typing import Sequence

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
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

from pageproxy.proxy.forwarder import build_upstream_client
from pageproxy.routes import router
from pageproxy.vars import (
    ALLOW_ORIGIN,
    HOST,
    OTLP_ENDPOINT,
    OTLP_HEADERS,
    PORT,
    SERVICE_NAME,
)

logger = logging.getLogger("uvicorn.error")

CORS_ALLOW_HEADERS = ["*", "Authorization", "Content-Type", "Range"]
CORS_ALLOW_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Own the upstream connection pool for the lifetime of the app."""
    app.state.upstream_client = build_upstream_client()
    logger.info(f"[Server] {SERVICE_NAME} ready")
    try:
        yield
    finally:
        await app.state.upstream_client.aclose()


class AccessLogMiddleware:
    """Log one compact line per request: method, path, status, length, duration."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        started = time.perf_counter()
        status = {"code": 0, "length": 0}

        async def send_wrapper(message):
            if message["type"] == "http.response.start":
                status["code"] = message["status"]
            elif message["type"] == "http.response.body":
                status["length"] += len(message.get("body", b""))
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.info(
                f"{scope['method']} {scope['path']} {status['code']} "
                f"{status['length']} - {elapsed_ms:.3f} ms"
            )


class FilteringSpanExporter(SpanExporter):
    """
    Wrapper exporter that filters out noisy ASGI body spans from streaming responses.
    A relayed video would otherwise produce one span per chunk.
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


app = FastAPI(title=SERVICE_NAME, lifespan=lifespan)
instrumentator = Instrumentator()

instrumentator.instrument(app).expose(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[ALLOW_ORIGIN],
    allow_headers=CORS_ALLOW_HEADERS,
    allow_methods=CORS_ALLOW_METHODS,
)
app.add_middleware(AccessLogMiddleware)

trace.set_tracer_provider(
    TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME}))
)
tracer_provider = trace.get_tracer_provider()
if OTLP_ENDPOINT:
    otlp_exporter = OTLPSpanExporter(
        endpoint=OTLP_ENDPOINT,
        headers=OTLP_HEADERS or None,
    )
    tracer_provider.add_span_processor(
        BatchSpanProcessor(FilteringSpanExporter(otlp_exporter))
    )

FastAPIInstrumentor.instrument_app(app, excluded_urls="healthz,metrics")

# Add app_name to the metrics
app_info = Info("fastapi_app_info", "Application Info")
app_info.info({"app_name": SERVICE_NAME})

app.include_router(router)


def run():
    """Entry point of the ``pageproxy`` command."""
    uvicorn.run(app, host=HOST, port=PORT)
