"""Database resilience helpers.

Only the transactional boundary is retried. Business rules run inside the
unit of work passed to :func:`run_in_transaction`, so a validation failure
or a constraint violation surfaces immediately and is never replayed.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from flask import current_app
from sqlalchemy.exc import DBAPIError, DisconnectionError, IntegrityError, OperationalError

from app_logging import DBTimer, get_logger
from errors import TransientStoreError, ValidationError
from models import db

T = TypeVar("T")

_logger = get_logger("madrasa.db")

_CONNECTION_LOST_MARKERS = (
    "server closed the connection",
    "connection closed",
    "connection terminated",
    "terminating connection",
    "connection reset",
    "could not connect",
)


def is_transient_error(exc: BaseException) -> bool:
    """Return True for connection-loss failures that are safe to replay."""

    if isinstance(exc, DisconnectionError):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    if isinstance(exc, OperationalError):
        message = str(exc.orig if exc.orig is not None else exc).lower()
        return any(marker in message for marker in _CONNECTION_LOST_MARKERS)
    return False


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: ``base_delay * factor ** n`` before retry ``n + 1``."""

    max_retries: int = 3
    base_delay: float = 1.0
    factor: float = 2.0
    is_retryable: Callable[[BaseException], bool] = is_transient_error
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False)

    def delays(self):
        return [self.base_delay * (self.factor ** n) for n in range(self.max_retries)]

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        return cls(
            max_retries=int(config.get("DB_RETRY_MAX_RETRIES", 3)),
            base_delay=float(config.get("DB_RETRY_BASE_DELAY", 1.0)),
        )


def retry_with_backoff(func: Callable[[], T], policy: RetryPolicy | None = None) -> T:
    """Call ``func``, retrying transient failures according to ``policy``.

    Non-retryable exceptions propagate on the first attempt. Once every retry
    is spent the last transient error is wrapped in
    :class:`~errors.TransientStoreError`.
    """

    policy = policy or RetryPolicy()
    delays = policy.delays()
    attempt = 0
    while True:
        attempt += 1
        try:
            return func()
        except Exception as exc:
            if not policy.is_retryable(exc):
                raise
            if attempt > len(delays):
                _logger.error("transient failure, retries exhausted", extra={"attempt": attempt})
                raise TransientStoreError() from exc
            delay = delays[attempt - 1]
            _logger.warning(
                "transient failure, retrying",
                extra={"attempt": attempt, "delay_s": delay, "error": str(exc)},
            )
            policy.sleep(delay)


def current_policy() -> RetryPolicy:
    policy = current_app.extensions.get("madrasa.retry_policy")
    if policy is None:
        policy = RetryPolicy.from_config(current_app.config)
    return policy


def run_in_transaction(work: Callable[[], T], policy: RetryPolicy | None = None) -> T:
    """Run ``work`` as one unit of work on ``db.session`` and commit it.

    Any failure rolls the whole unit back. Unique and foreign key violations
    are reported as :class:`~errors.ValidationError`.
    """

    def attempt() -> T:
        with DBTimer():
            try:
                result = work()
                db.session.commit()
                return result
            except IntegrityError as exc:
                db.session.rollback()
                _logger.info("transaction rejected by constraint", extra={"error": str(exc.orig)})
                raise ValidationError("conflicting or duplicate entries in request") from exc
            except Exception:
                db.session.rollback()
                raise

    return retry_with_backoff(attempt, policy or current_policy())


__all__ = [
    "RetryPolicy",
    "current_policy",
    "is_transient_error",
    "retry_with_backoff",
    "run_in_transaction",
]
