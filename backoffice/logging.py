from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from backoffice.context import current_scope


# ``extra`` keys copied into the "fields" object of each line.
STRUCTURED_FIELDS = (
    "method",
    "path",
    "status_code",
    "duration_ms",
    "organization_id",
    "customer_org_id",
    "subscription_id",
    "invoice_id",
    "plan_id",
    "coupon_code",
    "old_status",
    "new_status",
    "mrr",
    "total",
    "task",
    "processed",
    "error",
    "event_name",
    "event_payload",
)
_MAX_ERROR_LENGTH = 500


def _stamp_scope(record: logging.LogRecord) -> None:
    scope = current_scope()
    if getattr(record, "correlation_id", None) is None:
        record.correlation_id = scope.correlation_id
    if getattr(record, "organization_id", None) is None:
        record.organization_id = scope.organization_id


class RequestScopeFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        _stamp_scope(record)
        return True


_base_factory = logging.getLogRecordFactory()


def _scoped_record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _base_factory(*args, **kwargs)
    _stamp_scope(record)
    return record


def structured_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = {key: getattr(record, key) for key in STRUCTURED_FIELDS if getattr(record, key, None) is not None}
    error = fields.get("error")
    if isinstance(error, str) and len(error) > _MAX_ERROR_LENGTH:
        fields["error"] = error[:_MAX_ERROR_LENGTH]
    return fields


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = structured_fields(record)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": fields,
        }
        return json.dumps(payload, default=str)


class TextLogFormatter(logging.Formatter):
    """Single-line ``key=value`` rendering for local development."""

    def format(self, record: logging.LogRecord) -> str:
        pairs = " ".join(f"{key}={value}" for key, value in structured_fields(record).items())
        line = f"{record.levelname:<7} {record.name} {record.getMessage()} correlation_id={getattr(record, 'correlation_id', None)}"
        if pairs:
            line = f"{line} {pairs}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging() -> None:
    """Route all loggers through one stdout handler.

    ``LOG_LEVEL`` picks the threshold and ``LOG_FORMAT=text`` swaps the JSON
    lines for the plain formatter. Repeated calls are no-ops.
    """

    root_logger = logging.getLogger()
    if getattr(root_logger, "_backoffice_configured", False):
        return

    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    formatter: logging.Formatter = (
        TextLogFormatter() if os.getenv("LOG_FORMAT", "json").lower() == "text" else JsonLogFormatter()
    )

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(RequestScopeFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_scoped_record_factory)
    root_logger.addHandler(handler)
    root_logger._backoffice_configured = True  # type: ignore[attr-defined]
