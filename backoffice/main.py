from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from backoffice.api.routes import router as api_router
from backoffice.core.config import get_settings
from backoffice.core.events import InternalEvent, event_bus
from backoffice.logging import configure_logging
from backoffice.middleware.correlation_id import CorrelationIdMiddleware
from backoffice.middleware.request_logging import RequestLoggingMiddleware
from backoffice.otel import SERVICE_NAME, get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("backoffice.lifecycle")
_subscriptions_registered = False

_billing_alert_patterns = ["invoice.*", "subscription.*"]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name, "event_payload": event.payload})


def _on_billing_alert(event: InternalEvent) -> None:
    payload = event.payload
    needs_attention = event.name == "invoice.overdue" or (
        event.name == "subscription.status_changed" and payload.get("status") == "past_due"
    )
    if not needs_attention:
        return
    logger.warning(
        "billing.attention_required",
        extra={
            "task": event.name,
            "subscription_id": payload.get("subscription_id"),
            "invoice_id": payload.get("invoice_id"),
            "customer_org_id": payload.get("customer_org_id"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for pattern in _billing_alert_patterns:
            event_bus.subscribe(pattern, _on_billing_alert)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel(SERVICE_NAME)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
