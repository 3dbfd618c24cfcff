"""Request/response logging hooks for Flask."""

from __future__ import annotations

import os
import random
import time
from typing import Any, Dict, Optional

from flask import Flask, Response, g, request

from app_logging import get_logger, merge_request_context, redact_sensitive_data

_DEFAULT_SAMPLE_RATE = 1.0
_DEFAULT_MAX_BYTES = 2048

# Raw bodies of these paths are never logged; they carry signed provider payloads.
_OPAQUE_BODY_PREFIXES = ("/api/webhooks/",)

_request_logger = get_logger("madrasa.request")


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, default))
    except ValueError:
        return default


def _sample_rate() -> float:
    return max(0.0, min(1.0, _env_float("REQUEST_LOG_SAMPLE_RATE", _DEFAULT_SAMPLE_RATE)))


def _max_body_bytes() -> int:
    return max(0, int(_env_float("RESPONSE_BODY_MAX_BYTES", _DEFAULT_MAX_BYTES)))


def _client_ip() -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote_addr or "unknown"


def _should_log(path: str) -> bool:
    if path == "/health" or path.startswith("/static"):
        return False
    rate = _sample_rate()
    return rate >= 1.0 or random.random() < rate


def _request_payload() -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    if request.args:
        payload["query"] = redact_sensitive_data(request.args.to_dict(flat=False))
    if request.path.startswith(_OPAQUE_BODY_PREFIXES):
        payload["body_bytes"] = request.content_length
    elif request.method in {"POST", "PUT", "PATCH", "DELETE"}:
        body = request.get_json(silent=True)
        if body is not None:
            payload["json"] = redact_sensitive_data(body)
    return payload


def _response_body(response: Response) -> Optional[str]:
    limit = _max_body_bytes()
    if limit == 0 or response.direct_passthrough or response.is_streamed:
        return None
    if response.is_json:
        body = redact_sensitive_data(response.get_json(silent=True))
        text = str(body)
    else:
        text = response.get_data(as_text=True)
    if len(text) > limit:
        return f"{text[:limit]}... truncated {len(text) - limit} bytes"
    return text


def init_request_logging(app: Flask) -> None:
    """Emit ``request_start``/``request_end`` JSON logs around every request."""

    @app.before_request
    def _log_request_start() -> None:
        g._request_start = time.perf_counter()
        g._log_request = _should_log(request.path)
        route = request.url_rule.rule if request.url_rule else None
        merge_request_context(method=request.method, path=request.path, client_ip=_client_ip(), route=route)
        if g._log_request:
            _request_logger.info(
                "request_start",
                extra={
                    "event": "request_start",
                    "user_agent": request.headers.get("User-Agent"),
                    "request_payload": _request_payload(),
                },
            )

    @app.after_request
    def _log_request_end(response: Response) -> Response:
        duration_ms = None
        if "_request_start" in g:
            duration_ms = round((time.perf_counter() - g._request_start) * 1000, 2)
        merge_request_context(status=response.status_code, duration_ms=duration_ms)
        if g.get("_log_request"):
            _request_logger.info(
                "request_end",
                extra={"event": "request_end", "response_body": _response_body(response)},
            )
        return response


__all__ = ["init_request_logging"]
