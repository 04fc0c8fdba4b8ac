"""
Structured logging for the billing backend.

- One JSON object per line in production, a readable line elsewhere.
- request_id and tenant_id live in context variables; RequestIdFilter
  stamps them on every record so webhook and API logs correlate.
- log_event() is the helper the billing pipeline logs through.
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

LOGGER_NAME = "clinic_billing"

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
tenant_id_ctx_var: ContextVar[Optional[str]] = ContextVar("tenant_id", default=None)

# Record attributes rendered after the message, in this order
STRUCTURED_FIELDS = (
    "tenant_id",
    "event_id",
    "event_type",
    "subscription_ref",
    "outcome",
    "error_code",
    "status",
    "path",
    "method",
    "latency_bucket",
)

# (upper bound in ms, label); the last label catches everything slower
_LATENCY_BUCKETS = (
    (10, "<10ms"),
    (100, "10-100ms"),
    (500, "100-500ms"),
    (1000, "500-1000ms"),
)

_EXTRA_VALUE_LIMIT = 500


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return default if rid is None else rid


def get_tenant_id() -> Optional[str]:
    return tenant_id_ctx_var.get()


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    """Coarse latency label, so logs group without high-cardinality numbers."""
    if latency_ms is None:
        return "unknown"
    for upper, label in _LATENCY_BUCKETS:
        if latency_ms < upper:
            return label
    return ">=1000ms"


class RequestIdFilter(logging.Filter):
    """Stamp the context's request_id and tenant_id on records missing them."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        if getattr(record, "tenant_id", None) is None:
            record.tenant_id = get_tenant_id()
        return True


def _utc_timestamp(record: logging.LogRecord) -> str:
    stamp = datetime.fromtimestamp(record.created, timezone.utc)
    return stamp.strftime("%Y-%m-%dT%H:%M:%S.") + f"{stamp.microsecond // 1000:03d}Z"


def _structured(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        field: getattr(record, field)
        for field in STRUCTURED_FIELDS
        if getattr(record, field, None) is not None
    }


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": _utc_timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        entry.update(_structured(record))
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        parts = [_utc_timestamp(record), record.levelname, f"[{record.name}]"]
        rid = getattr(record, "request_id", None)
        if rid:
            parts.append(f"[rid={rid}]")
        parts.append(record.getMessage())
        parts.extend(f"{key}={value}" for key, value in _structured(record).items())
        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(env: str = "development", level: str = "INFO") -> None:
    """Install a single stdout handler on the clinic_billing logger."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level.upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())

    logger.handlers = [handler]
    logger.propagate = True

    # uvicorn keeps its own handlers; avoid duplicate lines through the root logger
    for name in ("uvicorn", "uvicorn.error"):
        logging.getLogger(name).propagate = False


def _truncate(value: Any, limit: int = _EXTRA_VALUE_LIMIT) -> str:
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    return text if len(text) <= limit else f"{text[:limit]}...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    tenant_id: Optional[str] = None,
    event_id: Optional[str] = None,
    event_type: Optional[str] = None,
    subscription_ref: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
) -> None:
    """Log a billing event with correlation ids; extra values are truncated."""
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        # Scripts and tests that never called configure_logging()
        configure_logging(os.getenv("ENV", "development"))

    fields: Dict[str, Any] = {
        "request_id": request_id or get_request_id(),
        "tenant_id": tenant_id or get_tenant_id(),
        "event_id": event_id,
        "event_type": event_type,
        "subscription_ref": subscription_ref,
        "error_code": error_code,
    }
    fields = {key: value for key, value in fields.items() if value is not None}
    for key, value in (extra or {}).items():
        fields[key] = _truncate(value)

    logger.log(logging.getLevelName(level.upper()), msg, extra=fields)
