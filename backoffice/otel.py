from __future__ import annotations

import os
import uuid
from collections.abc import Mapping
from datetime import date
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter


SERVICE_NAME = "backoffice-billing"

_exporters_attached = False
_provider: TracerProvider | None = None


def _provider_for(service_name: str) -> TracerProvider:
    global _provider

    if _provider is None:
        resource = Resource.create(
            {
                "service.name": service_name,
                "service.version": os.getenv("APP_VERSION", "0.1.0"),
                "deployment.environment": os.getenv("APP_ENV", "local"),
            }
        )
        _provider = TracerProvider(resource=resource)
        trace.set_tracer_provider(_provider)
    return _provider


def setup_otel(service_name: str = SERVICE_NAME, enable: bool = True) -> TracerProvider | None:
    """Install the SDK provider and attach exporters named by the environment.

    ``OTEL_EXPORTER_OTLP_ENDPOINT`` enables batched OTLP/HTTP export and
    ``OTEL_CONSOLE_EXPORTER=true`` echoes finished spans to stdout. Calling this
    more than once attaches exporters only the first time.
    """

    global _exporters_attached

    if not enable:
        return None

    provider = _provider_for(service_name)
    if _exporters_attached:
        return provider

    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    if os.getenv("OTEL_CONSOLE_EXPORTER", "false").lower() == "true":
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _exporters_attached = True
    return provider


def setup_inmemory_otel(service_name: str = SERVICE_NAME) -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _provider_for(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)


def _attribute_value(value: Any) -> Any:
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


def set_span_attributes(span: trace.Span, attributes: Mapping[str, Any]) -> None:
    """Copy billing identifiers onto a span, skipping unset values."""

    for key, value in attributes.items():
        if value is not None:
            span.set_attribute(key, _attribute_value(value))


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        headers = dict(scope.get("headers", []))
        set_span_attributes(
            span,
            {
                "correlation_id": (headers.get(b"x-correlation-id") or b"").decode("utf-8") or None,
                "organization_id": (headers.get(b"x-organization-id") or b"").decode("utf-8") or None,
            },
        )

    return server_request_hook
