"""Database models for the MadrasaApp backend.

Every table carries a ``tenant_id`` pointing at the mosque that owns the row.
Queries must always filter on it; nothing here crosses tenants implicitly.

* :class:`Tenant` – a mosque running one or more classes.
* :class:`Account` – a login of any role (admin, teacher, parent, student).
* :class:`ClassGroup` – a cohort of students with at most one teacher.
* :class:`Student` – a pupil in exactly one class, optionally linked to a
  parent account and to a self-registered student account.
* :class:`AttendanceSession` / :class:`AttendanceRecord` – the roll-call for a
  class on a calendar day. ``(class_id, date)`` is unique so resubmitting the
  same day replaces the marks instead of adding a second session.
* :class:`GradeSession` / :class:`GradeRecord` – one grading batch. Never
  deduplicated.
* :class:`Payment` – a fee owed for a student.
* :class:`Schedule` – one weekly timetable slot of a class.
* :class:`Announcement` – a notice posted by an admin to the whole mosque.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy


db = SQLAlchemy()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() if value is not None else None


class Role(str, enum.Enum):
    ADMIN = 'admin'
    TEACHER = 'teacher'
    PARENT = 'parent'
    STUDENT = 'student'


class AttendanceStatus(str, enum.Enum):
    PRESENT = 'present'
    ABSENT = 'absent'
    LATE = 'late'
    EXCUSED = 'excused'


class PaymentStatus(str, enum.Enum):
    PENDING = 'pending'
    PAID = 'paid'
    OVERDUE = 'overdue'
    CANCELED = 'canceled'


class Weekday(str, enum.Enum):
    MONDAY = 'monday'
    TUESDAY = 'tuesday'
    WEDNESDAY = 'wednesday'
    THURSDAY = 'thursday'
    FRIDAY = 'friday'
    SATURDAY = 'saturday'
    SUNDAY = 'sunday'


class Tenant(db.Model):
    __tablename__ = 'tenant'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    address = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(40), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'address': self.address,
            'phone': self.phone,
            'email': self.email,
        }

    def __repr__(self) -> str:
        return f"<Tenant {self.name}>"


class Account(db.Model):
    """A user of any role. Email is unique across all tenants."""

    __tablename__ = 'account'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenant.id'), nullable=False, index=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    phone = db.Column(db.String(40), nullable=True)
    role = db.Column(db.String(20), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'email': self.email,
            'phone': self.phone,
            'role': self.role,
        }

    def __repr__(self) -> str:
        return f"<Account {self.email} role={self.role}>"


class ClassGroup(db.Model):
    __tablename__ = 'class_group'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenant.id'), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    level = db.Column(db.String(50), nullable=True)
    teacher_id = db.Column(db.Integer, db.ForeignKey('account.id'), nullable=True, index=True)

    teacher = db.relationship('Account', lazy=True)
    students = db.relationship('Student', backref='class_group', lazy=True, order_by='Student.last_name')

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'level': self.level,
            'teacher_id': self.teacher_id,
        }

    def __repr__(self) -> str:
        return f"<ClassGroup {self.name}>"


class Student(db.Model):
    """A pupil.

    ``account_id`` is set once, when the pupil claims their record with the
    enrollment code (the student id) and creates a login.
    """

    __tablename__ = 'student'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenant.id'), nullable=False, index=True)
    class_id = db.Column(db.Integer, db.ForeignKey('class_group.id'), nullable=False, index=True)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    parent_id = db.Column(db.Integer, db.ForeignKey('account.id'), nullable=True, index=True)
    account_id = db.Column(db.Integer, db.ForeignKey('account.id'), nullable=True, unique=True)
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'class_id': self.class_id,
            'parent_id': self.parent_id,
            'has_account': self.account_id is not None,
        }

    def __repr__(self) -> str:
        return f"<Student {self.first_name} {self.last_name}>"


class AttendanceSession(db.Model):
    """The roll-call of one class on one calendar day."""

    __tablename__ = 'attendance_session'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenant.id'), nullable=False, index=True)
    class_id = db.Column(db.Integer, db.ForeignKey('class_group.id'), nullable=False)
    teacher_id = db.Column(db.Integer, db.ForeignKey('account.id'), nullable=False)
    date = db.Column(db.Date, nullable=False)
    comment = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    records = db.relationship(
        'AttendanceRecord',
        backref='session',
        lazy=True,
        cascade='all, delete-orphan',
        passive_deletes=True,
    )

    __table_args__ = (db.UniqueConstraint('class_id', 'date', name='uix_attendance_session_class_day'),)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'class_id': self.class_id,
            'teacher_id': self.teacher_id,
            'date': _iso(self.date),
            'comment': self.comment,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    def __repr__(self) -> str:
        return f"<AttendanceSession class={self.class_id} date={self.date}>"


class AttendanceRecord(db.Model):
    __tablename__ = 'attendance_record'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenant.id'), nullable=False, index=True)
    session_id = db.Column(
        db.Integer, db.ForeignKey('attendance_session.id', ondelete='CASCADE'), nullable=False
    )
    class_id = db.Column(db.Integer, db.ForeignKey('class_group.id'), nullable=False)
    teacher_id = db.Column(db.Integer, db.ForeignKey('account.id'), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('student.id'), nullable=False, index=True)
    date = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(20), nullable=False)
    comment = db.Column(db.String(255), nullable=True)

    student = db.relationship('Student', lazy=True)

    __table_args__ = (db.UniqueConstraint('session_id', 'student_id', name='uix_attendance_record_student'),)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'session_id': self.session_id,
            'class_id': self.class_id,
            'student_id': self.student_id,
            'date': _iso(self.date),
            'status': self.status,
            'comment': self.comment,
        }

    def __repr__(self) -> str:
        return (f"<AttendanceRecord session={self.session_id} student={self.student_id} "
                f"status={self.status}>")


class GradeSession(db.Model):
    """One grading batch. A new row is created on every submission."""

    __tablename__ = 'grade_session'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenant.id'), nullable=False, index=True)
    class_id = db.Column(db.Integer, db.ForeignKey('class_group.id'), nullable=False, index=True)
    teacher_id = db.Column(db.Integer, db.ForeignKey('account.id'), nullable=False)
    subject = db.Column(db.String(100), nullable=False)
    max_value = db.Column(db.Float, nullable=False)
    comment = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow)

    records = db.relationship('GradeRecord', backref='session', lazy=True, cascade='all, delete-orphan')

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'class_id': self.class_id,
            'teacher_id': self.teacher_id,
            'subject': self.subject,
            'max_value': self.max_value,
            'comment': self.comment,
            'created_at': _iso(self.created_at),
        }


class GradeRecord(db.Model):
    __tablename__ = 'grade_record'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenant.id'), nullable=False, index=True)
    session_id = db.Column(db.Integer, db.ForeignKey('grade_session.id'), nullable=False)
    class_id = db.Column(db.Integer, db.ForeignKey('class_group.id'), nullable=False)
    teacher_id = db.Column(db.Integer, db.ForeignKey('account.id'), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('student.id'), nullable=False, index=True)
    subject = db.Column(db.String(100), nullable=False)
    value = db.Column(db.Float, nullable=False)
    max_value = db.Column(db.Float, nullable=False)
    comment = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow)

    student = db.relationship('Student', lazy=True)

    __table_args__ = (db.UniqueConstraint('session_id', 'student_id', name='uix_grade_record_student'),)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'session_id': self.session_id,
            'class_id': self.class_id,
            'student_id': self.student_id,
            'subject': self.subject,
            'value': self.value,
            'max_value': self.max_value,
            'comment': self.comment,
            'created_at': _iso(self.created_at),
        }


class Payment(db.Model):
    """A fee owed for a student.

    Only the payment provider callback moves a payment to ``paid``.
    """

    __tablename__ = 'payment'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenant.id'), nullable=False, index=True)
    student_id = db.Column(db.Integer, db.ForeignKey('student.id'), nullable=False, index=True)
    parent_id = db.Column(db.Integer, db.ForeignKey('account.id'), nullable=True, index=True)
    amount = db.Column(db.Numeric(10, 2, asdecimal=False), nullable=False)
    description = db.Column(db.String(255), nullable=True)
    due_date = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(20), nullable=False, default=PaymentStatus.PENDING.value)
    paid_at = db.Column(db.DateTime, nullable=True)
    provider_reference = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow)

    student = db.relationship('Student', lazy=True)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'student_id': self.student_id,
            'parent_id': self.parent_id,
            'amount': self.amount,
            'description': self.description,
            'due_date': _iso(self.due_date),
            'status': self.status,
            'paid_at': _iso(self.paid_at),
            'provider_reference': self.provider_reference,
            'created_at': _iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<Payment {self.id} amount={self.amount} status={self.status}>"


class Schedule(db.Model):
    """A recurring weekly slot: ``subject`` for a class on ``weekday``."""

    __tablename__ = 'schedule'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenant.id'), nullable=False, index=True)
    class_id = db.Column(db.Integer, db.ForeignKey('class_group.id'), nullable=False, index=True)
    weekday = db.Column(db.String(10), nullable=False)
    start_time = db.Column(db.Time, nullable=False)
    end_time = db.Column(db.Time, nullable=False)
    subject = db.Column(db.String(100), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow)

    class_group = db.relationship('ClassGroup', lazy=True)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'class_id': self.class_id,
            'weekday': self.weekday,
            'start_time': self.start_time.strftime('%H:%M'),
            'end_time': self.end_time.strftime('%H:%M'),
            'subject': self.subject,
        }

    def __repr__(self) -> str:
        return f"<Schedule class={self.class_id} {self.weekday} {self.start_time}>"


class Announcement(db.Model):
    __tablename__ = 'announcement'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenant.id'), nullable=False, index=True)
    author_id = db.Column(db.Integer, db.ForeignKey('account.id'), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    body = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow)

    author = db.relationship('Account', lazy=True)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'title': self.title,
            'body': self.body,
            'author': f'{self.author.first_name} {self.author.last_name}' if self.author else None,
            'created_at': _iso(self.created_at),
        }
