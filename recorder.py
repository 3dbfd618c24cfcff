"""Session Recorder: batch attendance and batch grading.

Both operations write one session row plus one row per student inside a
single transaction. Attendance is keyed by ``(class_id, calendar day)``:
resubmitting the same day reuses the session and replaces every mark.
Grades create a new session on every call.

Membership of every student in the target class is checked for both
operations before anything is written.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, List, Optional, Sequence

from app_logging import get_logger
from access import RequestContext, ensure_role, owned_class
from db_utils import RetryPolicy, run_in_transaction
from errors import ValidationError
from models import (
    AttendanceRecord,
    AttendanceSession,
    AttendanceStatus,
    GradeRecord,
    GradeSession,
    Role,
    Student,
    db,
)
from signals import attendance_views, grade_views, invalidate

_logger = get_logger("madrasa.recorder")

NOT_MEMBERS_MESSAGE = "one or more students are not members of this class"
DEFAULT_MAX_VALUE = 20.0


@dataclass(frozen=True)
class AttendanceMark:
    student_id: int
    status: AttendanceStatus
    comment: Optional[str] = None


@dataclass(frozen=True)
class GradeEntry:
    student_id: int
    value: float
    comment: Optional[str] = None


@dataclass
class AttendanceResult:
    session: AttendanceSession
    records: List[AttendanceRecord]

    def to_dict(self) -> dict:
        return {'session': self.session.to_dict(), 'records': [r.to_dict() for r in self.records]}


@dataclass
class GradeResult:
    session: GradeSession
    records: List[GradeRecord]

    def to_dict(self) -> dict:
        return {'session': self.session.to_dict(), 'records': [r.to_dict() for r in self.records]}


def day_key(value) -> date:
    """Reduce a date, datetime or ISO-8601 string to its calendar day."""

    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith(('Z', 'z')):
            text = text[:-1] + '+00:00'
        try:
            return datetime.fromisoformat(text).date()
        except ValueError:
            pass
    raise ValidationError('date must be an ISO-8601 date (YYYY-MM-DD)')


def _check_members(ctx: RequestContext, class_id: int, student_ids: Iterable[int]) -> None:
    wanted = set(student_ids)
    if not wanted:
        return
    members = set(
        db.session.execute(
            db.select(Student.id).where(
                Student.tenant_id == ctx.tenant_id,
                Student.class_id == class_id,
                Student.id.in_(wanted),
            )
        ).scalars()
    )
    if members != wanted:
        raise ValidationError(NOT_MEMBERS_MESSAGE)


class SessionRecorder:
    """Records attendance and grade batches for the calling teacher."""

    def __init__(self, policy: RetryPolicy | None = None) -> None:
        self.policy = policy

    def record_attendance(
        self,
        ctx: RequestContext,
        class_id: int,
        when,
        marks: Sequence[AttendanceMark],
        session_comment: Optional[str] = None,
    ) -> AttendanceResult:
        ensure_role(ctx, Role.TEACHER)
        day = day_key(when)

        def work() -> AttendanceResult:
            owned_class(ctx, class_id, for_update=True)
            _check_members(ctx, class_id, (m.student_id for m in marks))

            session = db.session.execute(
                db.select(AttendanceSession).filter_by(
                    tenant_id=ctx.tenant_id, class_id=class_id, date=day
                )
            ).scalar_one_or_none()
            if session is None:
                session = AttendanceSession(
                    tenant_id=ctx.tenant_id,
                    class_id=class_id,
                    teacher_id=ctx.actor_id,
                    date=day,
                    comment=session_comment or None,
                )
                db.session.add(session)
            else:
                session.comment = session_comment or None
            db.session.flush()

            db.session.execute(
                db.delete(AttendanceRecord).where(
                    AttendanceRecord.tenant_id == ctx.tenant_id,
                    AttendanceRecord.class_id == class_id,
                    AttendanceRecord.session_id == session.id,
                ).execution_options(synchronize_session='fetch')
            )
            db.session.expire(session, ['records'])

            records = [
                AttendanceRecord(
                    tenant_id=ctx.tenant_id,
                    session_id=session.id,
                    class_id=class_id,
                    teacher_id=ctx.actor_id,
                    student_id=mark.student_id,
                    date=day,
                    status=mark.status.value,
                    comment=mark.comment or None,
                )
                for mark in marks
            ]
            db.session.add_all(records)
            db.session.flush()
            return AttendanceResult(session=session, records=records)

        result = run_in_transaction(work, self.policy)
        _logger.info(
            "attendance recorded",
            extra={"class_id": class_id, "session_id": result.session.id, "records": len(result.records)},
        )
        invalidate(self, ctx.tenant_id, attendance_views(class_id))
        return result

    def record_grades(
        self,
        ctx: RequestContext,
        class_id: int,
        subject: str,
        entries: Sequence[GradeEntry],
        max_value: float = DEFAULT_MAX_VALUE,
        session_comment: Optional[str] = None,
    ) -> GradeResult:
        ensure_role(ctx, Role.TEACHER)
        subject = (subject or '').strip()
        if not subject:
            raise ValidationError('subject is required')
        if max_value <= 0:
            raise ValidationError('max_value must be greater than 0')
        if not entries:
            raise ValidationError('at least one grade is required')
        for entry in entries:
            if not 0 <= entry.value <= max_value:
                raise ValidationError(f'grades must be between 0 and {max_value:g}')

        def work() -> GradeResult:
            owned_class(ctx, class_id, for_update=True)
            _check_members(ctx, class_id, (e.student_id for e in entries))

            session = GradeSession(
                tenant_id=ctx.tenant_id,
                class_id=class_id,
                teacher_id=ctx.actor_id,
                subject=subject,
                max_value=max_value,
                comment=session_comment or None,
            )
            db.session.add(session)
            db.session.flush()

            records = [
                GradeRecord(
                    tenant_id=ctx.tenant_id,
                    session_id=session.id,
                    class_id=class_id,
                    teacher_id=ctx.actor_id,
                    student_id=entry.student_id,
                    subject=subject,
                    value=entry.value,
                    max_value=max_value,
                    comment=entry.comment or None,
                )
                for entry in entries
            ]
            db.session.add_all(records)
            db.session.flush()
            return GradeResult(session=session, records=records)

        result = run_in_transaction(work, self.policy)
        _logger.info(
            "grades recorded",
            extra={"class_id": class_id, "session_id": result.session.id, "records": len(result.records)},
        )
        invalidate(self, ctx.tenant_id, grade_views(class_id))
        return result


__all__ = [
    "AttendanceMark",
    "AttendanceResult",
    "GradeEntry",
    "GradeResult",
    "SessionRecorder",
    "day_key",
]
