"""Structured JSON logging for the MadrasaApp backend.

Every record is emitted as one JSON object per line on stdout. Request scoped
values (correlation id, tenant, actor, timings) live in context variables so
that any logger called while a request is being served picks them up without
the caller passing them around.
"""

from __future__ import annotations

import contextvars
import json
import logging
import os
import sys
import time
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, Mapping, Optional

_request_id_ctx: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "request_id", default=None
)
_request_context_ctx: contextvars.ContextVar[Optional[Dict[str, Any]]] = (
    contextvars.ContextVar("request_context", default=None)
)

_REDACTED = "[REDACTED]"
_DEFAULT_SENSITIVE = "password,password_hash,token,email,phone,signature"

# Keys promoted to the top level of every JSON line.
_PROMOTED_FIELDS = (
    "method",
    "path",
    "status",
    "duration_ms",
    "client_ip",
    "route",
    "tenant_id",
    "actor_id",
    "role",
    "db_time_ms",
    "error_type",
    "error",
)

_JSON_LOG_FIELDS = ("ts", "level", "logger", "msg", "request_id") + _PROMOTED_FIELDS + (
    "stack",
    "extra_context",
)


def get_request_id() -> Optional[str]:
    return _request_id_ctx.get()


def set_request_id(request_id: str) -> None:
    _request_id_ctx.set(request_id)
    merge_request_context(request_id=request_id)


def clear_request_id() -> None:
    _request_id_ctx.set(None)


def get_request_context() -> Dict[str, Any]:
    """Return a copy of the values attached to the current request."""

    return dict(_request_context_ctx.get() or {})


def merge_request_context(**kwargs: Any) -> None:
    """Attach key/value pairs to the current request; ``None`` values are skipped."""

    ctx = get_request_context()
    ctx.update({key: value for key, value in kwargs.items() if value is not None})
    _request_context_ctx.set(ctx)


def clear_request_context() -> None:
    _request_context_ctx.set({})


def sensitive_fields() -> Iterable[str]:
    raw = os.environ.get("SENSITIVE_FIELDS", _DEFAULT_SENSITIVE)
    return {field.strip().lower() for field in raw.split(",") if field.strip()}


def redact_sensitive_data(data: Any, fields: Optional[Iterable[str]] = None) -> Any:
    """Replace the values of sensitive keys in nested mappings and sequences.

    Keys are matched case-insensitively. Scalars are returned unchanged.
    """

    fields_set = {field.lower() for field in (fields or sensitive_fields())}

    if isinstance(data, Mapping):
        return {
            key: _REDACTED if str(key).lower() in fields_set else redact_sensitive_data(value, fields_set)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple, set)):
        return [redact_sensitive_data(item, fields_set) for item in data]
    return data


class JSONFormatter(logging.Formatter):
    """Render log records as single-line JSON objects."""

    # LogRecord attributes that never belong in ``extra_context``.
    _RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "request_id": get_request_id(),
        }

        for key, value in get_request_context().items():
            payload.setdefault(key, value)

        for field in _PROMOTED_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload["error_type"] = record.exc_info[0].__name__
            payload["error"] = str(record.exc_info[1])
            payload["stack"] = self.formatException(record.exc_info)
        elif record.stack_info:
            payload["stack"] = record.stack_info

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in self._RESERVED and key not in payload and not key.startswith("_")
        }
        if extra:
            payload["extra_context"] = redact_sensitive_data(extra)

        for field in _JSON_LOG_FIELDS:
            payload.setdefault(field, None)

        return json.dumps(payload, default=_json_default, separators=(",", ":"))


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Decimal):
        return float(obj)
    return str(obj)


_configured = False


def configure_logging() -> None:
    """Install the JSON handler on the root logger once per process."""

    global _configured
    if _configured:
        return

    level_name = os.environ.get("LOG_LEVEL", "INFO").upper()

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JSONFormatter())

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    root.handlers = [handler]
    logging.captureWarnings(True)

    # Request middleware logs traffic itself; server access logs are noise.
    for noisy_logger in ("gunicorn.access", "werkzeug", "sqlalchemy.engine"):
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)

    _configured = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)


class DBTimer:
    """Measure a block of database work and expose it as ``db_time_ms``."""

    def __enter__(self) -> "DBTimer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        elapsed = (time.perf_counter() - self._start) * 1000
        previous = get_request_context().get("db_time_ms", 0.0)
        merge_request_context(db_time_ms=round(previous + elapsed, 2))


__all__ = [
    "DBTimer",
    "JSONFormatter",
    "clear_request_context",
    "clear_request_id",
    "configure_logging",
    "get_logger",
    "get_request_context",
    "get_request_id",
    "merge_request_context",
    "redact_sensitive_data",
    "sensitive_fields",
    "set_request_id",
]
