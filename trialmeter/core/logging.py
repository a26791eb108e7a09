"""
Logging setup for trialmeter.

Every record on the "trialmeter" logger carries the current request id (set
by RequestIdMiddleware) and, where known, the tenant it concerns. Production
writes one JSON object per line; other environments get a single readable
line per record.
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Optional

LOGGER_NAME = "trialmeter"
MAX_FIELD_CHARS = 500

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Record attributes copied into JSON lines when present
_STRUCTURED_FIELDS = (
    "tenant_id",
    "period_id",
    "event_id",
    "event_type",
    "error_code",
    "from_status",
    "to_status",
    "trigger",
)

_LATENCY_BUCKETS = ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms"))


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return default if rid is None else rid


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    """Coarse latency label, used for HTTP metrics and health output."""
    if latency_ms is None:
        return "unknown"
    for upper, label in _LATENCY_BUCKETS:
        if latency_ms < upper:
            return label
    return ">=1000ms"


def _utc_stamp(record: logging.LogRecord) -> str:
    stamp = datetime.fromtimestamp(record.created, timezone.utc)
    return stamp.strftime("%Y-%m-%dT%H:%M:%S.") + f"{stamp.microsecond // 1000:03d}Z"


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = {
            "timestamp": _utc_stamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        line.update(
            (name, getattr(record, name))
            for name in _STRUCTURED_FIELDS
            if getattr(record, name, None) is not None
        )
        if record.exc_info:
            line["exc"] = self.formatException(record.exc_info)
        return json.dumps(line, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        tags = ""
        for label, attr in (("rid", "request_id"), ("tenant", "tenant_id")):
            value = getattr(record, attr, None)
            if value:
                tags += f" [{label}={value}]"
        text = f"{_utc_stamp(record)} {record.levelname:<7} {record.name}{tags} {record.getMessage()}"
        if record.exc_info:
            text += "\n" + self.formatException(record.exc_info)
        return text


def configure_logging(env: str = "development") -> None:
    """Install a single stdout handler on the trialmeter logger."""
    formatter = JsonFormatter() if env.lower() == "production" else PrettyFormatter()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(RequestIdFilter())

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.INFO)
    logger.handlers = [handler]
    logger.propagate = True

    # uvicorn has its own handlers
    for name in ("uvicorn", "uvicorn.error"):
        logging.getLogger(name).propagate = False


def _clip(value: object) -> str:
    text = str(value)
    if len(text) > MAX_FIELD_CHARS:
        return text[:MAX_FIELD_CHARS] + "...<truncated>"
    return text


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    tenant_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
):
    """
    Log a domain event on the trialmeter logger.

    `extra` values are stringified and clipped so a large payload cannot
    flood the log. The request id defaults to the one bound to the current
    request.
    """
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        configure_logging(os.getenv("ENV", "development"))

    fields: Dict[str, object] = {
        "request_id": request_id or get_request_id(),
        "tenant_id": tenant_id,
    }
    if event_type:
        fields["event_type"] = event_type
    if error_code:
        fields["error_code"] = error_code
    for key, value in (extra or {}).items():
        fields[key] = _clip(value)

    getattr(logger, level, logger.info)(msg, extra=fields)
