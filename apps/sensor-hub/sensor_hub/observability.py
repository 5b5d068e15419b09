"""Structured logging and optional tracing for the hub process."""
from __future__ import annotations

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI
from starlette.datastructures import MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from sensor_hub.config import Settings

try:  # pragma: no cover - tracing is an optional extra
    from opentelemetry import trace
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor
    from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
except ImportError:  # pragma: no cover
    trace = None

REQUEST_ID_HEADER = "X-Request-ID"
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)

# Attributes every LogRecord carries; anything else was passed through ``extra``.
_BUILTIN_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {
    "message",
    "asctime",
    "taskName",
}
_CONTEXT_ATTRS = ("service", "request_id", "trace_id", "span_id")


class RequestIdMiddleware:
    """Bind an ``X-Request-ID`` to each HTTP request and echo it on the response."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return
        headers = {key.decode("latin-1").lower(): value.decode("latin-1") for key, value in scope["headers"]}
        request_id = headers.get(REQUEST_ID_HEADER.lower()) or uuid.uuid4().hex

        async def send_with_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                MutableHeaders(scope=message)[REQUEST_ID_HEADER] = request_id
            await send(message)

        token = request_id_var.set(request_id)
        try:
            await self.app(scope, receive, send_with_id)
        finally:
            request_id_var.reset(token)


class LogContextFilter(logging.Filter):
    """Stamp records with the service name, request id and active span."""

    def __init__(self, service: str) -> None:
        super().__init__()
        self.service = service

    def filter(self, record: logging.LogRecord) -> bool:
        record.service = self.service
        record.request_id = getattr(record, "request_id", None) or request_id_var.get()
        record.trace_id = record.span_id = None
        if trace is not None:
            ctx = trace.get_current_span().get_span_context()
            if ctx.is_valid:
                record.trace_id = f"{ctx.trace_id:032x}"
                record.span_id = f"{ctx.span_id:016x}"
        return True


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line; ``extra`` fields are merged at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for attr in _CONTEXT_ATTRS:
            payload[attr] = getattr(record, attr, None)
        for key, value in record.__dict__.items():
            if key not in _BUILTIN_ATTRS and key not in payload:
                payload[key] = value
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(service: str, level: str = "INFO") -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(LogContextFilter(service))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level.upper())
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False
    # aiomqtt logs every reconnect attempt at INFO.
    logging.getLogger("aiomqtt").setLevel(max(logging.WARNING, root.level))
    return handler


def configure_tracing(app: FastAPI, settings: Settings) -> bool:
    """Export spans over OTLP when the ``otel`` extra is installed."""

    if trace is None:
        logging.getLogger(__name__).warning("OpenTelemetry packages missing; tracing disabled")
        return False
    resource = Resource.create({"service.name": settings.service_name, "service.version": settings.service_version})
    ratio = min(max(settings.otel_sample_ratio, 0.0), 1.0)
    provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(ratio))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(app)
    return True


def configure_observability(app: FastAPI, settings: Settings) -> None:
    configure_logging(settings.service_name, settings.log_level)
    app.add_middleware(RequestIdMiddleware)
    if settings.otel_enabled:
        configure_tracing(app, settings)
