"""JSON API blueprints, one per portal.

Handlers only parse the request, call the service layer with the caller's
:class:`~access.RequestContext` and serialise the result. Errors raised by
services are rendered by :mod:`errors`.
"""

from __future__ import annotations

import math
from datetime import date, datetime
from typing import Any, Optional

from flask import Blueprint, current_app, jsonify, request

import admin
import listings
import payments
import planning
from access import require_role
from enrollment import AccountDetails, link_student_account, register_mosque
from errors import ValidationError
from models import AttendanceStatus, Role, Weekday
from recorder import AttendanceMark, GradeEntry, SessionRecorder, day_key

auth_bp = Blueprint('auth', __name__, url_prefix='/api/auth')
teacher_bp = Blueprint('teacher', __name__, url_prefix='/api/teacher')
parent_bp = Blueprint('parent', __name__, url_prefix='/api/parent')
student_bp = Blueprint('student', __name__, url_prefix='/api/student')
admin_bp = Blueprint('admin', __name__, url_prefix='/api/admin')
webhooks_bp = Blueprint('webhooks', __name__, url_prefix='/api/webhooks')

BLUEPRINTS = (auth_bp, teacher_bp, parent_bp, student_bp, admin_bp, webhooks_bp)


# ---------------------------------------------------------------------------
# Request parsing
# ---------------------------------------------------------------------------

def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Missing JSON payload')
    return data


def _require_int(data: dict, key: str) -> int:
    value = data.get(key)
    if value is None or value == '':
        raise ValidationError(f'{key} is required')
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ValidationError(f'{key} must be an integer')
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{key} must be an integer')


def _optional_int(data: dict, key: str) -> Optional[int]:
    if data.get(key) in (None, ''):
        return None
    return _require_int(data, key)


def _number(value: Any, key: str) -> float:
    if isinstance(value, bool):
        raise ValidationError(f'{key} must be a number')
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{key} must be a number')
    if not math.isfinite(number):
        raise ValidationError(f'{key} must be a number')
    return number


def _optional_text(data: dict, key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f'{key} must be a string')
    return value.strip() or None


def _query_date(key: str) -> Optional[date]:
    raw = request.args.get(key)
    if not raw:
        return None
    try:
        return datetime.strptime(raw, '%Y-%m-%d').date()
    except ValueError:
        raise ValidationError(f'Invalid {key}, must be YYYY-MM-DD')


def _recorder() -> SessionRecorder:
    return current_app.extensions['madrasa.recorder']


def _parse_marks(items) -> list:
    if not isinstance(items, list):
        raise ValidationError('records must be a list')
    marks = []
    for item in items:
        if not isinstance(item, dict):
            raise ValidationError('each record must be an object')
        status = str(item.get('status') or '').strip().lower()
        try:
            status = AttendanceStatus(status)
        except ValueError:
            raise ValidationError('status must be one of present, absent, late, excused')
        marks.append(AttendanceMark(
            student_id=_require_int(item, 'student_id'),
            status=status,
            comment=_optional_text(item, 'comment'),
        ))
    return marks


def _parse_grades(items) -> list:
    if not isinstance(items, list):
        raise ValidationError('entries must be a list')
    entries = []
    for item in items:
        if not isinstance(item, dict):
            raise ValidationError('each entry must be an object')
        # Blank cells in the grading sheet are skipped, not stored.
        if item.get('value') in (None, ''):
            continue
        entries.append(GradeEntry(
            student_id=_require_int(item, 'student_id'),
            value=_number(item['value'], 'value'),
            comment=_optional_text(item, 'comment'),
        ))
    return entries


def _id_list(data: dict, key: str) -> list:
    items = data.get(key)
    if not isinstance(items, list):
        raise ValidationError(f'{key} must be a list')
    return [_require_int({key: item}, key) for item in items]


def _account_details(data: dict) -> AccountDetails:
    return AccountDetails(
        first_name=_optional_text(data, 'first_name') or '',
        last_name=_optional_text(data, 'last_name') or '',
        email=_optional_text(data, 'email') or '',
        password=data.get('password') if isinstance(data.get('password'), str) else '',
        phone=_optional_text(data, 'phone'),
    )


def _parse_slots(items) -> list:
    if not isinstance(items, list):
        raise ValidationError('slots must be a list')
    slots = []
    for item in items:
        if not isinstance(item, dict):
            raise ValidationError('each slot must be an object')
        try:
            weekday = Weekday(str(item.get('weekday') or '').strip().lower())
        except ValueError:
            raise ValidationError('weekday must be a day of the week, e.g. monday')
        slots.append(planning.Slot(
            weekday=weekday,
            start_time=planning.parse_time(item.get('start_time'), 'start_time'),
            end_time=planning.parse_time(item.get('end_time'), 'end_time'),
            subject=_optional_text(item, 'subject') or '',
        ))
    return slots


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

@auth_bp.route('/register', methods=['POST'])
def register():
    data = _json_body()
    tenant, account = register_mosque(
        name=_optional_text(data, 'mosque_name') or '',
        admin=_account_details(data),
        address=_optional_text(data, 'mosque_address'),
        phone=_optional_text(data, 'mosque_phone'),
        email=_optional_text(data, 'mosque_email'),
    )
    return jsonify({'tenant': tenant.to_dict(), 'admin': account.to_dict(), 'tenant_code': tenant.id}), 201


@auth_bp.route('/register/student', methods=['POST'])
def register_student():
    data = _json_body()
    account = link_student_account(
        code=data.get('code'),
        first_name=data.get('first_name'),
        last_name=data.get('last_name'),
        email=data.get('email'),
        password=data.get('password'),
        phone=_optional_text(data, 'phone'),
    )
    return jsonify({'message': 'account created', 'account_id': account.id}), 201


# ---------------------------------------------------------------------------
# Teacher portal
# ---------------------------------------------------------------------------

@teacher_bp.route('/classes', methods=['GET'])
@require_role(Role.TEACHER)
def teacher_classes(ctx):
    return jsonify([c.to_dict() for c in listings.teacher_classes(ctx)])


@teacher_bp.route('/classes/<int:class_id>/students', methods=['GET'])
@require_role(Role.TEACHER)
def teacher_class_students(ctx, class_id: int):
    return jsonify([s.to_dict() for s in listings.class_students(ctx, class_id)])


@teacher_bp.route('/attendance', methods=['POST'])
@require_role(Role.TEACHER)
def record_attendance(ctx):
    data = _json_body()
    if not data.get('date'):
        raise ValidationError('date is required')
    result = _recorder().record_attendance(
        ctx,
        class_id=_require_int(data, 'class_id'),
        when=day_key(data['date']),
        marks=_parse_marks(data.get('records', [])),
        session_comment=_optional_text(data, 'session_comment'),
    )
    return jsonify(result.to_dict()), 201


@teacher_bp.route('/attendance', methods=['GET'])
@require_role(Role.TEACHER)
def attendance_history(ctx):
    sessions = listings.attendance_history(
        ctx,
        class_id=request.args.get('class_id', type=int),
        date_from=_query_date('date_from'),
        date_to=_query_date('date_to'),
    )
    return jsonify(sessions)


@teacher_bp.route('/grades', methods=['POST'])
@require_role(Role.TEACHER)
def record_grades(ctx):
    data = _json_body()
    max_value = data.get('max_value')
    result = _recorder().record_grades(
        ctx,
        class_id=_require_int(data, 'class_id'),
        subject=_optional_text(data, 'subject') or '',
        entries=_parse_grades(data.get('entries', [])),
        max_value=20.0 if max_value in (None, '') else _number(max_value, 'max_value'),
        session_comment=_optional_text(data, 'session_comment'),
    )
    return jsonify(result.to_dict()), 201


@teacher_bp.route('/grades', methods=['GET'])
@require_role(Role.TEACHER)
def grade_history(ctx):
    sessions = listings.grade_history(
        ctx,
        class_id=request.args.get('class_id', type=int),
        subject=request.args.get('subject') or None,
    )
    return jsonify(sessions)


@teacher_bp.route('/planning', methods=['GET'])
@require_role(Role.TEACHER)
def teacher_planning(ctx):
    return jsonify([s.to_dict() for s in planning.weekly_schedule(ctx)])


# ---------------------------------------------------------------------------
# Parent and student portals
# ---------------------------------------------------------------------------

@parent_bp.route('/attendance', methods=['GET'])
@require_role(Role.PARENT)
def parent_attendance(ctx):
    return jsonify([r.to_dict() for r in listings.family_attendance(ctx)])


@parent_bp.route('/grades', methods=['GET'])
@require_role(Role.PARENT)
def parent_grades(ctx):
    return jsonify([r.to_dict() for r in listings.family_grades(ctx)])


@parent_bp.route('/payments', methods=['GET'])
@require_role(Role.PARENT)
def parent_payments(ctx):
    return jsonify([p.to_dict() for p in payments.list_parent_payments(ctx)])


@parent_bp.route('/payments/<int:payment_id>/checkout', methods=['POST'])
@require_role(Role.PARENT)
def parent_checkout(ctx, payment_id: int):
    url = payments.start_checkout(
        ctx,
        payment_id,
        provider=current_app.extensions['madrasa.payment_provider'],
        app_url=current_app.config['APP_URL'],
    )
    return jsonify({'url': url})


@parent_bp.route('/planning', methods=['GET'])
@require_role(Role.PARENT)
def parent_planning(ctx):
    return jsonify([s.to_dict() for s in planning.weekly_schedule(ctx)])


@student_bp.route('/planning', methods=['GET'])
@require_role(Role.STUDENT)
def student_planning(ctx):
    return jsonify([s.to_dict() for s in planning.weekly_schedule(ctx)])


@student_bp.route('/attendance', methods=['GET'])
@require_role(Role.STUDENT)
def student_attendance(ctx):
    return jsonify([r.to_dict() for r in listings.family_attendance(ctx)])


@student_bp.route('/grades', methods=['GET'])
@require_role(Role.STUDENT)
def student_grades(ctx):
    return jsonify([r.to_dict() for r in listings.family_grades(ctx)])


# ---------------------------------------------------------------------------
# Admin portal
# ---------------------------------------------------------------------------

@admin_bp.route('/classes', methods=['POST'])
@require_role(Role.ADMIN)
def create_class(ctx):
    data = _json_body()
    class_group = admin.create_class(
        ctx,
        name=_optional_text(data, 'name') or '',
        level=_optional_text(data, 'level'),
        teacher_id=_optional_int(data, 'teacher_id'),
    )
    return jsonify(class_group.to_dict()), 201


@admin_bp.route('/classes/<int:class_id>', methods=['GET'])
@require_role(Role.ADMIN)
def get_class(ctx, class_id: int):
    class_group = admin.get_class(ctx, class_id)
    teacher = class_group.teacher.to_dict() if class_group.teacher else None
    return jsonify(dict(class_group.to_dict(), teacher=teacher))


@admin_bp.route('/classes/<int:class_id>', methods=['PATCH'])
@require_role(Role.ADMIN)
def update_class(ctx, class_id: int):
    data = _json_body()
    class_group = admin.update_class(
        ctx, class_id, name=_optional_text(data, 'name') or '', level=_optional_text(data, 'level')
    )
    return jsonify(class_group.to_dict())


@admin_bp.route('/classes/<int:class_id>/teacher', methods=['POST'])
@require_role(Role.ADMIN)
def assign_teacher(ctx, class_id: int):
    data = _json_body()
    class_group = admin.assign_teacher(ctx, class_id, _optional_int(data, 'teacher_id'))
    return jsonify(class_group.to_dict())


@admin_bp.route('/students', methods=['POST'])
@require_role(Role.ADMIN)
def create_student(ctx):
    data = _json_body()
    student = admin.create_student(
        ctx,
        class_id=_require_int(data, 'class_id'),
        first_name=_optional_text(data, 'first_name') or '',
        last_name=_optional_text(data, 'last_name') or '',
        parent_id=_optional_int(data, 'parent_id'),
    )
    return jsonify(student.to_dict()), 201


@admin_bp.route('/students/<int:student_id>', methods=['PATCH'])
@require_role(Role.ADMIN)
def update_student(ctx, student_id: int):
    data = _json_body()
    if 'parent_id' not in data:
        raise ValidationError('parent_id is required')
    student = admin.set_student_parent(ctx, student_id, _optional_int(data, 'parent_id'))
    return jsonify(student.to_dict())


@admin_bp.route('/teachers', methods=['GET'])
@require_role(Role.ADMIN)
def list_teachers(ctx):
    return jsonify([a.to_dict() for a in admin.list_accounts(ctx, Role.TEACHER)])


@admin_bp.route('/teachers', methods=['POST'])
@require_role(Role.ADMIN)
def create_teacher(ctx):
    account = admin.create_account(ctx, Role.TEACHER, _account_details(_json_body()))
    return jsonify(account.to_dict()), 201


@admin_bp.route('/teachers/<int:teacher_id>/classes', methods=['POST'])
@require_role(Role.ADMIN)
def assign_teacher_classes(ctx, teacher_id: int):
    classes = admin.assign_classes(ctx, teacher_id, _id_list(_json_body(), 'class_ids'))
    return jsonify([c.to_dict() for c in classes])


@admin_bp.route('/parents', methods=['GET'])
@require_role(Role.ADMIN)
def list_parents(ctx):
    return jsonify([a.to_dict() for a in admin.list_accounts(ctx, Role.PARENT)])


@admin_bp.route('/parents', methods=['POST'])
@require_role(Role.ADMIN)
def create_parent(ctx):
    account = admin.create_account(ctx, Role.PARENT, _account_details(_json_body()))
    return jsonify(account.to_dict()), 201


@admin_bp.route('/parents/<int:parent_id>/students', methods=['GET'])
@require_role(Role.ADMIN)
def parent_students(ctx, parent_id: int):
    return jsonify([s.to_dict() for s in admin.parent_children(ctx, parent_id)])


@admin_bp.route('/parents/<int:parent_id>/students', methods=['POST'])
@require_role(Role.ADMIN)
def link_parent_students(ctx, parent_id: int):
    count = admin.link_students(ctx, parent_id, _id_list(_json_body(), 'student_ids'))
    return jsonify({'message': f'{count} student(s) linked to parent', 'count': count})


@admin_bp.route('/payments', methods=['GET'])
@require_role(Role.ADMIN)
def list_payments(ctx):
    return jsonify([p.to_dict() for p in payments.list_payments(ctx, request.args.get('status') or None)])


@admin_bp.route('/payments', methods=['POST'])
@require_role(Role.ADMIN)
def create_payment(ctx):
    data = _json_body()
    if data.get('amount') in (None, ''):
        raise ValidationError('amount is required')
    if not data.get('due_date'):
        raise ValidationError('due_date is required')
    payment = payments.create_payment(
        ctx,
        student_id=_require_int(data, 'student_id'),
        amount=_number(data['amount'], 'amount'),
        due_date=day_key(data['due_date']),
        description=_optional_text(data, 'description'),
    )
    return jsonify(payment.to_dict()), 201


@admin_bp.route('/planning', methods=['GET'])
@require_role(Role.ADMIN)
def admin_planning(ctx):
    rows = planning.weekly_schedule(ctx, class_id=request.args.get('class_id', type=int))
    return jsonify([s.to_dict() for s in rows])


@admin_bp.route('/planning', methods=['POST'])
@require_role(Role.ADMIN)
def create_planning(ctx):
    data = _json_body()
    rows = planning.add_slots(ctx, _require_int(data, 'class_id'), _parse_slots(data.get('slots', [])))
    return jsonify([s.to_dict() for s in rows]), 201


@admin_bp.route('/announcements', methods=['GET'])
@require_role(Role.ADMIN)
def list_announcements(ctx):
    return jsonify([a.to_dict() for a in admin.list_announcements(ctx)])


@admin_bp.route('/announcements', methods=['POST'])
@require_role(Role.ADMIN)
def post_announcement(ctx):
    data = _json_body()
    announcement = admin.post_announcement(
        ctx, title=_optional_text(data, 'title') or '', body=_optional_text(data, 'body') or ''
    )
    return jsonify(announcement.to_dict()), 201


@admin_bp.route('/dashboard', methods=['GET'])
@require_role(Role.ADMIN)
def dashboard(ctx):
    return jsonify(admin.dashboard_stats(ctx))


# ---------------------------------------------------------------------------
# Payment provider callbacks
# ---------------------------------------------------------------------------

@webhooks_bp.route('/payments', methods=['POST'])
def payment_webhook():
    payments.handle_event(
        request.get_data(),
        request.headers.get(payments.SIGNATURE_HEADER),
        secret=current_app.config['PAYMENT_WEBHOOK_SECRET'],
        tolerance=current_app.config['PAYMENT_WEBHOOK_TOLERANCE'],
    )
    return jsonify({'received': True})
