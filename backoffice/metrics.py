from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

pricing_resolutions_total = Counter(
    "pricing_resolutions_total",
    "Total price resolutions by pricing model and outcome",
    ["pricing_model", "outcome"],
)

subscription_transitions_total = Counter(
    "subscription_transitions_total",
    "Total subscription status transitions",
    ["from_status", "to_status"],
)

coupon_redemptions_total = Counter(
    "coupon_redemptions_total",
    "Total coupon redemptions by discount type",
    ["discount_type"],
)

coupon_rejections_total = Counter(
    "coupon_rejections_total",
    "Total coupon rejections by reason",
    ["reason"],
)

invoices_generated_total = Counter(
    "invoices_generated_total",
    "Total generated invoices",
    ["currency"],
)

invoice_transitions_total = Counter(
    "invoice_transitions_total",
    "Total invoice status transitions",
    ["to_status"],
)

invoice_amount_cents = Histogram(
    "invoice_amount_cents",
    "Generated invoice totals in minor currency units",
    buckets=(0, 1_000, 5_000, 10_000, 50_000, 100_000, 500_000, 1_000_000, 5_000_000),
)

scheduled_task_runs_total = Counter(
    "scheduled_task_runs_total",
    "Total scheduled billing task runs",
    ["task", "status"],
)

rls_denied_writes_count = Counter(
    "rls_denied_writes_count",
    "Total denied writes by row-level organization scope",
    ["resource"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        for attribute in ("path_format", "path"):
            value = getattr(route, attribute, None)
            if isinstance(value, str) and value:
                return _PATH_PARAM_RE.sub("{id}", value)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_pricing_resolution(pricing_model: str, outcome: str) -> None:
    pricing_resolutions_total.labels(pricing_model=pricing_model, outcome=outcome).inc()


def observe_subscription_transition(from_status: str | None, to_status: str) -> None:
    subscription_transitions_total.labels(from_status=from_status or "none", to_status=to_status).inc()


def observe_coupon_redemption(discount_type: str) -> None:
    coupon_redemptions_total.labels(discount_type=discount_type).inc()


def observe_coupon_rejection(reason: str) -> None:
    coupon_rejections_total.labels(reason=reason).inc()


def observe_invoice_generated(currency: str, total: int) -> None:
    invoices_generated_total.labels(currency=currency).inc()
    invoice_amount_cents.observe(max(0, total))


def observe_invoice_transition(to_status: str) -> None:
    invoice_transitions_total.labels(to_status=to_status).inc()


def observe_scheduled_task(task: str, status: str) -> None:
    scheduled_task_runs_total.labels(task=task, status=status).inc()


def observe_rls_denied_write(resource: str) -> None:
    rls_denied_writes_count.labels(resource=resource).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
