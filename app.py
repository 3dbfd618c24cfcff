"""Flask application for the MadrasaApp backend.

This module wires configuration, the database, logging middleware, error
handlers and the portal blueprints together.

Endpoints (all JSON):

* ``GET  /health`` – liveness probe.
* ``POST /api/auth/register/student`` – claim a student record with its
  enrollment code and create a student login.
* ``/api/teacher/...`` – own classes and students, roll-call
  (``POST /attendance``) and grading (``POST /grades``) plus their history.
* ``/api/parent/...`` and ``/api/student/...`` – attendance, grades and, for
  parents, payments and checkout.
* ``/api/admin/...`` – classes, teacher assignment, students, payments and
  dashboard figures.
* ``POST /api/webhooks/payments`` – signed payment provider callbacks.
"""

from __future__ import annotations

import os
from typing import Any, Mapping, Optional

from flask import Flask, jsonify

from api import BLUEPRINTS
from app_logging import get_logger
from config import Config
from correlation_id_middleware import init_correlation_id
from db_utils import RetryPolicy
from errors import register_error_handlers
from models import db
from payments import PaymentProvider, UnconfiguredPaymentProvider
from recorder import SessionRecorder
from request_logging_middleware import init_request_logging

_logger = get_logger("madrasa.app")


def create_app(
    config_overrides: Optional[Mapping[str, Any]] = None,
    payment_provider: Optional[PaymentProvider] = None,
    retry_policy: Optional[RetryPolicy] = None,
) -> Flask:
    """Application factory used by both the server and tests.

    ``config_overrides`` is applied on top of :class:`config.Config` before
    any extension is initialised, so tests can point the app at an in-memory
    database.
    """
    app = Flask(__name__)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    db.init_app(app)

    policy = retry_policy or RetryPolicy.from_config(app.config)
    app.extensions['madrasa.retry_policy'] = policy
    app.extensions['madrasa.recorder'] = SessionRecorder(policy)
    app.extensions['madrasa.payment_provider'] = payment_provider or UnconfiguredPaymentProvider()

    init_correlation_id(app)
    init_request_logging(app)
    register_error_handlers(app)

    for blueprint in BLUEPRINTS:
        app.register_blueprint(blueprint)

    @app.route('/health')
    def healthcheck():
        return jsonify({'status': 'ok'}), 200

    @app.cli.command('init-db')
    def init_db() -> None:
        """Create all tables."""
        db.create_all()
        _logger.info("database tables created")

    return app


if __name__ == '__main__':
    # Development server only; production runs under gunicorn ("app:create_app()").
    port = int(os.environ.get('PORT', 8000))
    create_app().run(host='0.0.0.0', port=port, debug=True)
