"""Signals sent after committed writes.

Pages rendered elsewhere subscribe to :data:`views_changed` to refresh the
views named in ``keys``. Sending is fire-and-forget: nothing waits for an
answer, and a failing receiver is logged without affecting the write that
already committed.
"""

from __future__ import annotations

from typing import Iterable

from blinker import Namespace

from app_logging import get_logger

_signals = Namespace()
_logger = get_logger("madrasa.signals")

views_changed = _signals.signal('views-changed')


def attendance_views(class_id: int) -> list[str]:
    return [
        f'teacher/attendance/{class_id}',
        'teacher/attendance/history',
        'parent/attendance',
        'student/attendance',
        'admin/dashboard',
        'tag:attendance',
    ]


def grade_views(class_id: int) -> list[str]:
    return [
        f'teacher/grades/{class_id}',
        'teacher/grades/history',
        'parent/grades',
        'student/grades',
        'admin/dashboard',
        'tag:grades',
    ]


def payment_views() -> list[str]:
    return ['admin/payments', 'parent/payments', 'admin/dashboard', 'tag:payments']


def planning_views() -> list[str]:
    return [
        'admin/planning',
        'teacher/planning',
        'parent/planning',
        'student/planning',
        'admin/dashboard',
        'tag:planning',
    ]


def invalidate(sender, tenant_id: int, keys: Iterable[str]) -> None:
    keys = list(keys)
    try:
        views_changed.send(sender, tenant_id=tenant_id, keys=keys)
    except Exception:
        _logger.exception("view invalidation receiver failed", extra={"keys": keys})


@views_changed.connect
def _log_invalidation(sender, tenant_id: int, keys: list[str], **_kwargs) -> None:
    _logger.debug("views changed", extra={"tenant_id": tenant_id, "keys": keys})
