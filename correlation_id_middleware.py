"""Correlation id handling for incoming requests."""

from __future__ import annotations

import re
import uuid
from typing import Optional

from flask import Flask, g, request

from app_logging import clear_request_context, clear_request_id, set_request_id

HEADER_NAME = "X-Request-ID"

# Accept caller supplied ids only if they are short and printable.
_VALID_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def _incoming_request_id() -> Optional[str]:
    value = request.headers.get(HEADER_NAME, "").strip()
    return value if _VALID_ID.match(value) else None


def init_correlation_id(app: Flask) -> None:
    """Give every request an id, echo it back and clear it afterwards."""

    @app.before_request
    def _assign_request_id() -> None:
        g.request_id = _incoming_request_id() or uuid.uuid4().hex
        set_request_id(g.request_id)

    @app.after_request
    def _echo_request_id(response):
        request_id = g.get("request_id")
        if request_id:
            response.headers[HEADER_NAME] = request_id
        return response

    @app.teardown_request
    def _forget_request_id(_exc) -> None:
        clear_request_id()
        clear_request_context()


__all__ = ["HEADER_NAME", "init_correlation_id"]
