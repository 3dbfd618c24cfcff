"""Domain error taxonomy and the JSON error handlers that render it."""

from __future__ import annotations

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from app_logging import get_logger

_logger = get_logger("madrasa.errors")


class AppError(Exception):
    """Base class for errors that map onto an HTTP status and a user message."""

    status_code = 500
    message = "internal server error"

    def __init__(self, message: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message or self.message)
        if message is not None:
            self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(AppError):
    """Malformed, missing or out-of-range input."""

    status_code = 400
    message = "invalid request"


class NotAuthorized(AppError):
    """Wrong role, or a tenant/ownership mismatch.

    Ownership misses are raised with ``status_code=404`` so a caller cannot
    tell a foreign entity from a missing one.
    """

    status_code = 401
    message = "not authorized"


class NotFound(AppError):
    status_code = 404
    message = "not found"


class TransientStoreError(AppError):
    """The store stayed unreachable after every retry."""

    status_code = 500
    message = "database temporarily unavailable"


def _error_response(message: str, status_code: int):
    response = jsonify({'error': message})
    response.status_code = status_code
    return response


def register_error_handlers(app: Flask) -> None:
    """Render every error as ``{"error": message}``."""

    @app.errorhandler(AppError)
    def handle_app_error(error: AppError):
        if error.status_code >= 500:
            _logger.error("request failed", exc_info=error)
        return _error_response(error.message, error.status_code)

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        return _error_response(error.description or error.name, error.code or 500)

    @app.errorhandler(Exception)
    def handle_unexpected(error: Exception):
        _logger.error("unhandled exception", exc_info=error)
        return _error_response('internal server error', 500)


__all__ = [
    "AppError",
    "NotAuthorized",
    "NotFound",
    "TransientStoreError",
    "ValidationError",
    "register_error_handlers",
]
