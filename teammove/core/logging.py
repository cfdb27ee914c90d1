"""
Structured logging for billing.

JSON lines in production, single-line pretty output elsewhere. Each record
carries the request id and the organization bound to the current context,
so a webhook delivery or a checkout can be followed across log lines.
Use log_event for billing events; it truncates values and keeps extra
names from colliding with LogRecord attributes.
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

LOGGER_NAME = "teammove"

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
organization_ctx_var: ContextVar[Optional[str]] = ContextVar("organization_id", default=None)

# Attributes every LogRecord has; anything else on a record came from `extra`
_RESERVED = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

MAX_VALUE_LENGTH = 500


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


def bind_organization(organization_id: Optional[str]) -> None:
    """Tag later log lines in this context with the organization."""
    organization_ctx_var.set(organization_id)


def _format_timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace('+00:00', 'Z')


def _structured_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RESERVED and value is not None
    }


class ContextFilter(logging.Filter):
    """Fill request_id and organization_id from context when the caller did not."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        if getattr(record, "organization_id", None) is None:
            record.organization_id = organization_ctx_var.get()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _format_timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_structured_fields(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = _structured_fields(record)
        tags = "".join(
            f" [{label}={fields.pop(key)}]"
            for key, label in (("request_id", "rid"), ("organization_id", "org"), ("event_type", "type"))
            if key in fields
        )
        rest = " ".join(f"{k}={v}" for k, v in sorted(fields.items()))
        line = f"{_format_timestamp(record)} {record.levelname} [{LOGGER_NAME}]{tags} {record.getMessage()}"
        if rest:
            line = f"{line} {rest}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(env: str = "development") -> None:
    """Configure structured logging based on environment."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.INFO)

    formatter: logging.Formatter
    if env.lower() == "production":
        formatter = JsonFormatter()
    else:
        formatter = PrettyFormatter()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(ContextFilter())

    logger.handlers = [handler]
    logger.propagate = True

    # Reduce noise from uvicorn loggers but keep error output
    logging.getLogger("uvicorn").propagate = False
    logging.getLogger("uvicorn.error").propagate = False


def _safe_truncate(value, limit: int = MAX_VALUE_LENGTH):
    if value is None or isinstance(value, (bool, int, float)):
        return value
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    organization_id: Optional[str] = None,
    event_type: Optional[str] = None,
    event_id: Optional[str] = None,
    error_code: Optional[str] = None,
    request_id: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
    exc_info: bool = False,
):
    """Log a billing event with its correlation fields."""

    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        # Tests and workers may log before configure_logging ran
        configure_logging(os.getenv("ENV", "development"))

    payload = {
        "request_id": request_id or get_request_id(),
        "organization_id": organization_id or organization_ctx_var.get(),
        "event_type": event_type,
        "event_id": event_id,
        "error_code": error_code,
    }
    for key, value in (extra or {}).items():
        name = f"x_{key}" if key in _RESERVED else key
        payload[name] = _safe_truncate(value)

    log_fn = getattr(logger, level, logger.info)
    log_fn(msg, extra=payload, exc_info=exc_info)
