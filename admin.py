"""Admin operations: accounts, classes, students, announcements and the dashboard."""

from __future__ import annotations

from datetime import date
from typing import Iterable, List, Optional

from sqlalchemy import func

from access import RequestContext, ensure_role
from app_logging import get_logger
from db_utils import run_in_transaction
from enrollment import AccountDetails, add_account
from errors import NotFound, ValidationError
from models import (
    Account,
    Announcement,
    AttendanceRecord,
    ClassGroup,
    Payment,
    PaymentStatus,
    Role,
    Student,
    db,
)
from signals import invalidate

_logger = get_logger("madrasa.admin")


def _tenant_account(ctx: RequestContext, account_id: int, role: Role) -> Account:
    account = db.session.execute(
        db.select(Account).filter_by(id=account_id, tenant_id=ctx.tenant_id, role=role.value)
    ).scalar_one_or_none()
    if account is None:
        raise NotFound(f'{role.value} not found')
    return account


def _tenant_class(ctx: RequestContext, class_id: int) -> ClassGroup:
    class_group = db.session.execute(
        db.select(ClassGroup).filter_by(id=class_id, tenant_id=ctx.tenant_id)
    ).scalar_one_or_none()
    if class_group is None:
        raise NotFound('class not found')
    return class_group


def create_class(ctx: RequestContext, name: str, level: Optional[str] = None,
                 teacher_id: Optional[int] = None) -> ClassGroup:
    ensure_role(ctx, Role.ADMIN)
    name = (name or '').strip()
    if not name:
        raise ValidationError('name is required')

    def work() -> ClassGroup:
        if teacher_id is not None:
            _tenant_account(ctx, teacher_id, Role.TEACHER)
        class_group = ClassGroup(tenant_id=ctx.tenant_id, name=name, level=level or None,
                                 teacher_id=teacher_id)
        db.session.add(class_group)
        db.session.flush()
        return class_group

    class_group = run_in_transaction(work)
    invalidate(create_class, ctx.tenant_id, ['admin/classes', 'admin/dashboard'])
    return class_group


def assign_teacher(ctx: RequestContext, class_id: int, teacher_id: Optional[int]) -> ClassGroup:
    """Assign ``teacher_id`` to the class, or unassign with ``None``."""

    ensure_role(ctx, Role.ADMIN)

    def work() -> ClassGroup:
        class_group = _tenant_class(ctx, class_id)
        if teacher_id is not None:
            _tenant_account(ctx, teacher_id, Role.TEACHER)
        class_group.teacher_id = teacher_id
        return class_group

    class_group = run_in_transaction(work)
    invalidate(assign_teacher, ctx.tenant_id, ['admin/classes', 'teacher/classes'])
    return class_group


def create_student(ctx: RequestContext, class_id: int, first_name: str, last_name: str,
                   parent_id: Optional[int] = None) -> Student:
    ensure_role(ctx, Role.ADMIN)
    first_name = (first_name or '').strip()
    last_name = (last_name or '').strip()
    if not first_name or not last_name:
        raise ValidationError('first_name and last_name are required')

    def work() -> Student:
        _tenant_class(ctx, class_id)
        if parent_id is not None:
            _tenant_account(ctx, parent_id, Role.PARENT)
        student = Student(tenant_id=ctx.tenant_id, class_id=class_id, first_name=first_name,
                          last_name=last_name, parent_id=parent_id)
        db.session.add(student)
        db.session.flush()
        return student

    student = run_in_transaction(work)
    invalidate(create_student, ctx.tenant_id, ['admin/students', 'admin/dashboard'])
    return student


def dashboard_stats(ctx: RequestContext, today: Optional[date] = None) -> dict:
    ensure_role(ctx, Role.ADMIN)
    today = today or date.today()
    tenant_id = ctx.tenant_id

    def count(model, *criteria) -> int:
        return db.session.execute(
            db.select(func.count()).select_from(model).where(model.tenant_id == tenant_id, *criteria)
        ).scalar_one()

    students = count(Student)
    marks_today = count(AttendanceRecord, AttendanceRecord.date == today)
    paid_total = db.session.execute(
        db.select(func.coalesce(func.sum(Payment.amount), 0)).where(
            Payment.tenant_id == tenant_id, Payment.status == PaymentStatus.PAID.value
        )
    ).scalar_one()

    return {
        'students': students,
        'classes': count(ClassGroup),
        'teachers': count(Account, Account.role == Role.TEACHER.value),
        'payments_paid': count(Payment, Payment.status == PaymentStatus.PAID.value),
        'payments_outstanding': count(
            Payment, Payment.status.in_([PaymentStatus.PENDING.value, PaymentStatus.OVERDUE.value])
        ),
        'attendance_marks_today': marks_today,
        'attendance_rate': round(marks_today / students * 100) if students else 0,
        'paid_amount': float(paid_total or 0),
    }


# ---------------------------------------------------------------------------
# Staff and parent accounts
# ---------------------------------------------------------------------------

def create_account(ctx: RequestContext, role: Role, details: AccountDetails) -> Account:
    """Create a teacher or parent login in the admin's tenant."""

    ensure_role(ctx, Role.ADMIN)
    if role not in (Role.TEACHER, Role.PARENT):
        raise ValidationError('only teacher and parent accounts can be created here')
    details = details.cleaned()
    account = run_in_transaction(lambda: add_account(ctx.tenant_id, role, details))
    _logger.info("account created", extra={"account_id": account.id, "account_role": role.value})
    invalidate(create_account, ctx.tenant_id, [f'admin/{role.value}s', 'admin/dashboard'])
    return account


def list_accounts(ctx: RequestContext, role: Role) -> List[Account]:
    ensure_role(ctx, Role.ADMIN)
    return list(
        db.session.execute(
            db.select(Account)
            .filter_by(tenant_id=ctx.tenant_id, role=role.value)
            .order_by(Account.last_name, Account.first_name)
        ).scalars()
    )


def _unique_ids(ids: Iterable[int]) -> List[int]:
    return list(dict.fromkeys(ids))


def assign_classes(ctx: RequestContext, teacher_id: int, class_ids: Iterable[int]) -> List[ClassGroup]:
    """Make ``class_ids`` the exact set of classes taught by ``teacher_id``.

    Classes the teacher held before and that are not listed are left
    without a teacher. An empty list unassigns everything.
    """

    ensure_role(ctx, Role.ADMIN)
    class_ids = _unique_ids(class_ids)

    def work() -> List[ClassGroup]:
        _tenant_account(ctx, teacher_id, Role.TEACHER)
        classes = list(
            db.session.execute(
                db.select(ClassGroup).where(
                    ClassGroup.tenant_id == ctx.tenant_id, ClassGroup.id.in_(class_ids)
                )
            ).scalars()
        )
        if len(classes) != len(class_ids):
            raise NotFound('some classes were not found')
        db.session.execute(
            db.update(ClassGroup)
            .where(ClassGroup.tenant_id == ctx.tenant_id, ClassGroup.teacher_id == teacher_id)
            .values(teacher_id=None)
            .execution_options(synchronize_session='fetch')
        )
        for class_group in classes:
            class_group.teacher_id = teacher_id
        return classes

    classes = run_in_transaction(work)
    invalidate(assign_classes, ctx.tenant_id, ['admin/classes', 'admin/teachers', 'teacher/classes'])
    return classes


def link_students(ctx: RequestContext, parent_id: int, student_ids: Iterable[int]) -> int:
    """Attach every listed student to ``parent_id``. Returns the count."""

    ensure_role(ctx, Role.ADMIN)
    student_ids = _unique_ids(student_ids)
    if not student_ids:
        raise ValidationError('at least one student is required')

    def work() -> int:
        _tenant_account(ctx, parent_id, Role.PARENT)
        students = list(
            db.session.execute(
                db.select(Student).where(Student.tenant_id == ctx.tenant_id, Student.id.in_(student_ids))
            ).scalars()
        )
        if len(students) != len(student_ids):
            raise NotFound('some students were not found')
        for student in students:
            student.parent_id = parent_id
        return len(students)

    count = run_in_transaction(work)
    invalidate(link_students, ctx.tenant_id, ['admin/students', 'admin/parents', 'admin/dashboard', 'parent/home'])
    return count


def parent_children(ctx: RequestContext, parent_id: int) -> List[Student]:
    ensure_role(ctx, Role.ADMIN)
    _tenant_account(ctx, parent_id, Role.PARENT)
    return list(
        db.session.execute(
            db.select(Student)
            .filter_by(tenant_id=ctx.tenant_id, parent_id=parent_id)
            .order_by(Student.first_name)
        ).scalars()
    )


def set_student_parent(ctx: RequestContext, student_id: int, parent_id: Optional[int]) -> Student:
    """Link the student to ``parent_id``, or unlink with ``None``."""

    ensure_role(ctx, Role.ADMIN)

    def work() -> Student:
        student = db.session.execute(
            db.select(Student).filter_by(id=student_id, tenant_id=ctx.tenant_id)
        ).scalar_one_or_none()
        if student is None:
            raise NotFound('student not found')
        if parent_id is not None:
            _tenant_account(ctx, parent_id, Role.PARENT)
        student.parent_id = parent_id
        return student

    student = run_in_transaction(work)
    invalidate(set_student_parent, ctx.tenant_id,
               ['admin/students', f'admin/students/{student_id}', 'admin/dashboard', 'parent/home'])
    return student


# ---------------------------------------------------------------------------
# Classes
# ---------------------------------------------------------------------------

def get_class(ctx: RequestContext, class_id: int) -> ClassGroup:
    ensure_role(ctx, Role.ADMIN)
    return _tenant_class(ctx, class_id)


def update_class(ctx: RequestContext, class_id: int, name: str, level: Optional[str] = None) -> ClassGroup:
    ensure_role(ctx, Role.ADMIN)
    name = (name or '').strip()
    if not name:
        raise ValidationError('name is required')

    def work() -> ClassGroup:
        class_group = _tenant_class(ctx, class_id)
        class_group.name = name
        class_group.level = level or None
        return class_group

    class_group = run_in_transaction(work)
    invalidate(update_class, ctx.tenant_id, ['admin/classes', 'teacher/classes'])
    return class_group


# ---------------------------------------------------------------------------
# Announcements
# ---------------------------------------------------------------------------

def post_announcement(ctx: RequestContext, title: str, body: str) -> Announcement:
    ensure_role(ctx, Role.ADMIN)
    title = (title or '').strip()
    body = (body or '').strip()
    if not title:
        raise ValidationError('title is required')
    if not body:
        raise ValidationError('body is required')

    def work() -> Announcement:
        announcement = Announcement(tenant_id=ctx.tenant_id, author_id=ctx.actor_id, title=title, body=body)
        db.session.add(announcement)
        db.session.flush()
        return announcement

    announcement = run_in_transaction(work)
    invalidate(post_announcement, ctx.tenant_id, ['admin/announcements', 'admin/dashboard', 'tag:announcements'])
    return announcement


def list_announcements(ctx: RequestContext) -> List[Announcement]:
    ensure_role(ctx, Role.ADMIN)
    return list(
        db.session.execute(
            db.select(Announcement)
            .filter_by(tenant_id=ctx.tenant_id)
            .order_by(Announcement.created_at.desc(), Announcement.id.desc())
        ).scalars()
    )
