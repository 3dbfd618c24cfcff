"""Weekly class timetables.

An admin adds slots to a class in batches. Every portal reads the slots of
the classes it can see: all of them for an admin, owned classes for a
teacher, and the children's classes for a parent or student.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time
from typing import List, Optional, Sequence

from access import RequestContext, ensure_role, visible_student_ids
from app_logging import get_logger
from db_utils import run_in_transaction
from errors import NotFound, ValidationError
from models import ClassGroup, Role, Schedule, Student, Weekday, db
from signals import invalidate, planning_views

_logger = get_logger("madrasa.planning")

_WEEK_ORDER = {day.value: index for index, day in enumerate(Weekday)}


@dataclass(frozen=True)
class Slot:
    weekday: Weekday
    start_time: time
    end_time: time
    subject: str


def parse_time(value, key: str) -> time:
    if isinstance(value, time):
        return value
    if not isinstance(value, str):
        raise ValidationError(f'{key} must be HH:MM')
    try:
        return datetime.strptime(value.strip(), '%H:%M').time()
    except ValueError:
        raise ValidationError(f'{key} must be HH:MM')


def _check_slot(slot: Slot) -> None:
    if not (slot.subject or '').strip():
        raise ValidationError('subject is required')
    if slot.start_time >= slot.end_time:
        raise ValidationError('start_time must be before end_time')


def add_slots(ctx: RequestContext, class_id: int, slots: Sequence[Slot]) -> List[Schedule]:
    """Insert every slot for ``class_id`` in one transaction."""

    ensure_role(ctx, Role.ADMIN)
    if not slots:
        raise ValidationError('at least one slot is required')
    for slot in slots:
        _check_slot(slot)

    def work() -> List[Schedule]:
        class_group = db.session.execute(
            db.select(ClassGroup).filter_by(id=class_id, tenant_id=ctx.tenant_id)
        ).scalar_one_or_none()
        if class_group is None:
            raise NotFound('class not found')
        rows = [
            Schedule(
                tenant_id=ctx.tenant_id,
                class_id=class_id,
                weekday=slot.weekday.value,
                start_time=slot.start_time,
                end_time=slot.end_time,
                subject=slot.subject.strip(),
            )
            for slot in slots
        ]
        db.session.add_all(rows)
        db.session.flush()
        return rows

    rows = run_in_transaction(work)
    _logger.info("schedule updated", extra={"class_id": class_id, "slots": len(rows)})
    invalidate(add_slots, ctx.tenant_id, planning_views())
    return rows


def _visible_class_ids(ctx: RequestContext) -> Optional[List[int]]:
    if ctx.role is Role.ADMIN:
        return None
    if ctx.role is Role.TEACHER:
        return list(
            db.session.execute(
                db.select(ClassGroup.id).filter_by(tenant_id=ctx.tenant_id, teacher_id=ctx.actor_id)
            ).scalars()
        )
    student_ids = visible_student_ids(ctx)
    return list(
        db.session.execute(
            db.select(Student.class_id).where(Student.id.in_(student_ids)).distinct()
        ).scalars()
    )


def weekly_schedule(ctx: RequestContext, class_id: Optional[int] = None) -> List[Schedule]:
    """Slots visible to the caller, Monday first, then by start time."""

    ensure_role(ctx, Role.ADMIN, Role.TEACHER, Role.PARENT, Role.STUDENT)
    query = db.select(Schedule).filter_by(tenant_id=ctx.tenant_id)
    class_ids = _visible_class_ids(ctx)
    if class_ids is not None:
        query = query.where(Schedule.class_id.in_(class_ids))
    if class_id is not None:
        query = query.filter_by(class_id=class_id)
    rows = db.session.execute(query).scalars().all()
    return sorted(rows, key=lambda row: (_WEEK_ORDER.get(row.weekday, 7), row.start_time, row.id))
