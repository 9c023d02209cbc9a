import logging
from contextlib import asynccontextmanager
from typing import Optional, Sequence

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
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

from fetchproxy.auth import ApiKeyGate, UnauthorizedError
from fetchproxy.browser import SeleniumRenderer
from fetchproxy.forward import ProxyError
from fetchproxy.forward.challenge import ChallengeFetcher, SharedCookieJar
from fetchproxy.forward.dispatcher import UpstreamDispatcher, build_upstream_client
from fetchproxy.vars import API_KEY, OTLP_ENDPOINT, OTLP_HEADERS, SERVICE_NAME

from .routes import router

logger = logging.getLogger("uvicorn.error")


class FilteringSpanExporter(SpanExporter):
    """
    Wrapper exporter that filters out ASGI body spans from streaming responses.
    A relayed download otherwise produces one span per chunk.
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


def configure_tracing() -> None:
    trace.set_tracer_provider(
        TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME}))
    )
    if OTLP_ENDPOINT:
        otlp_exporter = OTLPSpanExporter(
            endpoint=OTLP_ENDPOINT,
            headers=((OTLP_HEADERS).split(",") if OTLP_HEADERS else None),
        )
        trace.get_tracer_provider().add_span_processor(
            BatchSpanProcessor(FilteringSpanExporter(otlp_exporter))
        )


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(UnauthorizedError)
    async def unauthorized_handler(request: Request, exc: UnauthorizedError):
        return JSONResponse({"error": exc.reason}, status_code=401)

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError):
        return PlainTextResponse(exc.client_message, status_code=exc.status_code)


def create_app(
    api_key: Optional[str] = API_KEY,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    renderer: Optional[SeleniumRenderer] = None,
) -> FastAPI:
    """
    Build the proxy application.

    The API key is fixed here for the lifetime of the app. ``transport``
    replaces the network for upstream calls.
    """
    cookie_jar = SharedCookieJar()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with build_upstream_client(
            transport=transport
        ) as client, build_upstream_client(
            cookie_jar=cookie_jar.cookie_jar, transport=transport
        ) as challenge_client:
            app.state.dispatcher = UpstreamDispatcher(client)
            app.state.challenge_fetcher = ChallengeFetcher(
                UpstreamDispatcher(challenge_client), cookie_jar
            )
            yield

    app = FastAPI(title=SERVICE_NAME, lifespan=lifespan)
    app.state.api_key_gate = ApiKeyGate(api_key)
    app.state.cookie_jar = cookie_jar
    app.state.renderer = renderer or SeleniumRenderer()

    register_exception_handlers(app)
    Instrumentator().instrument(app).expose(app)
    FastAPIInstrumentor.instrument_app(app, excluded_urls="/metrics")
    app.include_router(router)
    return app


configure_tracing()

# Add app_name to the metrics
app_info = Info("fastapi_app_info", "Application Info")
app_info.info({"app_name": SERVICE_NAME})

app = create_app()
