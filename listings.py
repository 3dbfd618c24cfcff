"""Read-only listings for the teacher, parent and student portals."""

from __future__ import annotations

from datetime import date
from typing import List, Optional

from access import RequestContext, ensure_role, owned_class, visible_student_ids
from models import AttendanceRecord, AttendanceSession, ClassGroup, GradeRecord, GradeSession, Role, Student, db


def teacher_classes(ctx: RequestContext) -> List[ClassGroup]:
    ensure_role(ctx, Role.TEACHER)
    return list(
        db.session.execute(
            db.select(ClassGroup)
            .filter_by(tenant_id=ctx.tenant_id, teacher_id=ctx.actor_id)
            .order_by(ClassGroup.name)
        ).scalars()
    )


def class_students(ctx: RequestContext, class_id: int) -> List[Student]:
    ensure_role(ctx, Role.TEACHER)
    owned_class(ctx, class_id)
    return list(
        db.session.execute(
            db.select(Student)
            .filter_by(tenant_id=ctx.tenant_id, class_id=class_id)
            .order_by(Student.last_name, Student.first_name)
        ).scalars()
    )


def attendance_history(ctx: RequestContext, class_id: Optional[int] = None,
                       date_from: Optional[date] = None, date_to: Optional[date] = None) -> List[dict]:
    """Roll-calls taken by the teacher, newest first, with their marks."""

    ensure_role(ctx, Role.TEACHER)
    query = db.select(AttendanceSession).filter_by(tenant_id=ctx.tenant_id, teacher_id=ctx.actor_id)
    if class_id is not None:
        query = query.filter_by(class_id=class_id)
    if date_from is not None:
        query = query.where(AttendanceSession.date >= date_from)
    if date_to is not None:
        query = query.where(AttendanceSession.date <= date_to)
    sessions = db.session.execute(query.order_by(AttendanceSession.date.desc())).scalars()
    return [
        dict(session.to_dict(), records=[r.to_dict() for r in session.records])
        for session in sessions
    ]


def grade_history(ctx: RequestContext, class_id: Optional[int] = None,
                  subject: Optional[str] = None) -> List[dict]:
    ensure_role(ctx, Role.TEACHER)
    query = db.select(GradeSession).filter_by(tenant_id=ctx.tenant_id, teacher_id=ctx.actor_id)
    if class_id is not None:
        query = query.filter_by(class_id=class_id)
    if subject:
        query = query.filter_by(subject=subject)
    sessions = db.session.execute(
        query.order_by(GradeSession.created_at.desc(), GradeSession.id.desc())
    ).scalars()
    return [
        dict(session.to_dict(), records=[r.to_dict() for r in session.records])
        for session in sessions
    ]


def family_attendance(ctx: RequestContext) -> List[AttendanceRecord]:
    """Attendance marks of the caller's children (parent) or of the caller (student)."""

    student_ids = visible_student_ids(ctx)
    if not student_ids:
        return []
    return list(
        db.session.execute(
            db.select(AttendanceRecord)
            .where(AttendanceRecord.tenant_id == ctx.tenant_id, AttendanceRecord.student_id.in_(student_ids))
            .order_by(AttendanceRecord.date.desc(), AttendanceRecord.student_id)
        ).scalars()
    )


def family_grades(ctx: RequestContext) -> List[GradeRecord]:
    student_ids = visible_student_ids(ctx)
    if not student_ids:
        return []
    return list(
        db.session.execute(
            db.select(GradeRecord)
            .where(GradeRecord.tenant_id == ctx.tenant_id, GradeRecord.student_id.in_(student_ids))
            .order_by(GradeRecord.created_at.desc(), GradeRecord.id.desc())
        ).scalars()
    )
