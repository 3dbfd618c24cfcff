import warnings
from datetime import date

import pytest
from sqlalchemy.exc import SAWarning

from conftest import teacher_ctx
from errors import NotAuthorized, ValidationError
from models import AttendanceRecord, AttendanceSession, AttendanceStatus, GradeRecord, GradeSession, db
from recorder import AttendanceMark, GradeEntry, SessionRecorder, day_key
from signals import views_changed


def _roll_call(client, school, day, marks, comment=None):
    return client.post('/api/teacher/attendance', json={
        'class_id': school.class_c,
        'date': day,
        'session_comment': comment,
        'records': [{'student_id': sid, 'status': status} for sid, status in marks],
    })


def _count(model, **filters):
    return db.session.execute(
        db.select(db.func.count()).select_from(model).filter_by(**filters)
    ).scalar_one()


def test_day_key_normalises_datetimes():
    assert day_key('2024-03-01') == date(2024, 3, 1)
    assert day_key('2024-03-01T08:00:00') == day_key('2024-03-01T23:00:00')
    assert day_key('2024-03-01T23:00:00Z') == date(2024, 3, 1)
    with pytest.raises(ValidationError):
        day_key('yesterday')
    with pytest.raises(ValidationError):
        day_key(None)


def test_roll_call_resubmission_replaces_records(app, school, as_user):
    client = as_user(school.teacher)
    first = _roll_call(client, school, '2024-03-01',
                       [(school.s1, 'PRESENT'), (school.s2, 'ABSENT'), (school.s3, 'LATE')])
    assert first.status_code == 201
    first_body = first.get_json()
    assert len(first_body['records']) == 3
    assert {r['status'] for r in first_body['records']} == {'present', 'absent', 'late'}

    second = _roll_call(client, school, '2024-03-01',
                        [(school.s1, 'present'), (school.s2, 'present')], comment='short day')
    assert second.status_code == 201
    second_body = second.get_json()
    assert second_body['session']['id'] == first_body['session']['id']
    assert second_body['session']['comment'] == 'short day'

    with app.app_context():
        assert _count(AttendanceSession, class_id=school.class_c) == 1
        records = db.session.execute(
            db.select(AttendanceRecord).filter_by(session_id=first_body['session']['id'])
        ).scalars().all()
        assert sorted(r.student_id for r in records) == [school.s1, school.s2]
        assert all(r.status == 'present' for r in records)


def test_same_calendar_day_maps_to_one_session(app, school, as_user):
    client = as_user(school.teacher)
    morning = _roll_call(client, school, '2024-03-01T08:00:00', [(school.s1, 'present')])
    evening = _roll_call(client, school, '2024-03-01T23:00:00', [(school.s1, 'absent')])
    assert morning.get_json()['session']['id'] == evening.get_json()['session']['id']
    assert evening.get_json()['session']['date'] == '2024-03-01'

    other_day = _roll_call(client, school, '2024-03-02', [(school.s1, 'present')])
    assert other_day.get_json()['session']['id'] != morning.get_json()['session']['id']


def test_empty_roll_call_clears_marks(app, school, as_user):
    client = as_user(school.teacher)
    _roll_call(client, school, '2024-03-01', [(school.s1, 'present')])
    response = _roll_call(client, school, '2024-03-01', [])
    assert response.status_code == 201
    assert response.get_json()['records'] == []
    with app.app_context():
        assert _count(AttendanceRecord, class_id=school.class_c) == 0


def test_roll_call_rejects_students_outside_class(app, school, as_user):
    client = as_user(school.teacher)
    response = _roll_call(client, school, '2024-03-01', [(school.s1, 'present'), (school.s4, 'present')])
    assert response.status_code == 400
    assert response.get_json() == {'error': 'one or more students are not members of this class'}
    with app.app_context():
        assert _count(AttendanceSession) == 0


def test_roll_call_validation_errors(school, as_user):
    client = as_user(school.teacher)
    bad_status = _roll_call(client, school, '2024-03-01', [(school.s1, 'sleeping')])
    assert bad_status.status_code == 400
    missing_date = client.post('/api/teacher/attendance', json={'class_id': school.class_c, 'records': []})
    assert missing_date.status_code == 400
    assert missing_date.get_json()['error'] == 'date is required'
    no_body = client.post('/api/teacher/attendance', data='nope', content_type='text/plain')
    assert no_body.status_code == 400


def test_failed_roll_call_leaves_no_partial_state(app, school, as_user):
    client = as_user(school.teacher)
    # The duplicated student violates the per-session uniqueness on insert.
    response = _roll_call(client, school, '2024-03-05',
                          [(school.s1, 'present'), (school.s2, 'absent'), (school.s1, 'late')])
    assert response.status_code == 400
    with app.app_context():
        assert _count(AttendanceSession) == 0
        assert _count(AttendanceRecord) == 0


def test_failed_resubmission_keeps_previous_marks(app, school, as_user):
    client = as_user(school.teacher)
    _roll_call(client, school, '2024-03-01',
               [(school.s1, 'present'), (school.s2, 'absent'), (school.s3, 'late')], comment='first')
    response = _roll_call(client, school, '2024-03-01',
                          [(school.s1, 'absent'), (school.s1, 'absent')], comment='second')
    assert response.status_code == 400
    with app.app_context():
        session = db.session.execute(db.select(AttendanceSession)).scalar_one()
        assert session.comment == 'first'
        assert _count(AttendanceRecord, session_id=session.id) == 3


def test_teacher_cannot_record_for_unassigned_class(app, school, as_user):
    client = as_user(school.teacher)
    foreign = client.post('/api/teacher/attendance', json={
        'class_id': school.class_d, 'date': '2024-03-01',
        'records': [{'student_id': school.s4, 'status': 'present'}],
    })
    assert foreign.status_code == 404
    grades = client.post('/api/teacher/grades', json={
        'class_id': school.class_d, 'subject': 'Arabic',
        'entries': [{'student_id': school.s4, 'value': 10}],
    })
    assert grades.status_code == 404
    other_tenant = client.post('/api/teacher/attendance', json={
        'class_id': school.class_cb, 'date': '2024-03-01',
        'records': [{'student_id': school.sb, 'status': 'present'}],
    })
    assert other_tenant.status_code == 404
    assert other_tenant.get_json() == foreign.get_json()
    with app.app_context():
        assert _count(AttendanceSession) == 0
        assert _count(GradeSession) == 0


def test_non_teacher_roles_are_rejected(school, as_user):
    for account_id in (school.admin, school.parent):
        client = as_user(account_id)
        response = _roll_call(client, school, '2024-03-01', [(school.s1, 'present')])
        assert response.status_code == 401


def test_anonymous_caller_is_rejected(client, school):
    response = _roll_call(client, school, '2024-03-01', [(school.s1, 'present')])
    assert response.status_code == 401
    assert response.get_json() == {'error': 'not authorized'}


def test_grade_sessions_are_never_merged(app, school, as_user):
    client = as_user(school.teacher)
    first = client.post('/api/teacher/grades', json={
        'class_id': school.class_c, 'subject': 'Arabic', 'max_value': 20,
        'entries': [{'student_id': school.s1, 'value': 15}, {'student_id': school.s2, 'value': 18}],
    })
    second = client.post('/api/teacher/grades', json={
        'class_id': school.class_c, 'subject': 'Arabic', 'max_value': 20,
        'entries': [{'student_id': school.s1, 'value': 12}],
    })
    assert first.status_code == 201 and second.status_code == 201
    first_id = first.get_json()['session']['id']
    second_id = second.get_json()['session']['id']
    assert first_id != second_id

    with app.app_context():
        assert _count(GradeRecord, session_id=first_id) == 2
        assert _count(GradeRecord, session_id=second_id) == 1
        values = db.session.execute(
            db.select(GradeRecord.value).filter_by(student_id=school.s1).order_by(GradeRecord.id)
        ).scalars().all()
        assert values == [15, 12]


def test_grade_records_inherit_session_fields(school, as_user):
    client = as_user(school.teacher)
    response = client.post('/api/teacher/grades', json={
        'class_id': school.class_c, 'subject': 'Tajweed', 'max_value': 10,
        'session_comment': 'oral test',
        'entries': [
            {'student_id': school.s1, 'value': 7, 'comment': 'good'},
            {'student_id': school.s2, 'value': None},
            {'student_id': school.s3, 'value': ''},
        ],
    })
    assert response.status_code == 201
    body = response.get_json()
    assert body['session']['comment'] == 'oral test'
    assert len(body['records']) == 1
    record = body['records'][0]
    assert record['subject'] == 'Tajweed'
    assert record['max_value'] == 10
    assert record['comment'] == 'good'


def test_grades_default_max_value(school, as_user):
    client = as_user(school.teacher)
    response = client.post('/api/teacher/grades', json={
        'class_id': school.class_c, 'subject': 'Fiqh',
        'entries': [{'student_id': school.s1, 'value': 20}],
    })
    assert response.get_json()['session']['max_value'] == 20


@pytest.mark.parametrize('payload, message', [
    ({'subject': 'Arabic', 'entries': [{'value': None}]}, 'at least one grade is required'),
    ({'subject': '', 'entries': [{'value': 3}]}, 'subject is required'),
    ({'subject': 'Arabic', 'max_value': 0, 'entries': [{'value': 0}]}, 'max_value must be greater than 0'),
    ({'subject': 'Arabic', 'max_value': 20, 'entries': [{'value': 21}]}, 'grades must be between 0 and 20'),
    ({'subject': 'Arabic', 'entries': [{'value': 'abc'}]}, 'value must be a number'),
])
def test_grade_validation(school, as_user, payload, message):
    client = as_user(school.teacher)
    for entry in payload['entries']:
        entry['student_id'] = school.s1
    response = client.post('/api/teacher/grades', json=dict(payload, class_id=school.class_c))
    assert response.status_code == 400
    assert response.get_json()['error'] == message


def test_grades_reject_whole_batch_for_foreign_student(app, school, as_user):
    client = as_user(school.teacher)
    response = client.post('/api/teacher/grades', json={
        'class_id': school.class_c, 'subject': 'Arabic',
        'entries': [{'student_id': school.s1, 'value': 10}, {'student_id': school.sb, 'value': 11}],
    })
    assert response.status_code == 400
    assert response.get_json()['error'] == 'one or more students are not members of this class'
    with app.app_context():
        assert _count(GradeSession) == 0
        assert _count(GradeRecord) == 0


def test_recorder_service_scenario(app, school):
    recorder = SessionRecorder()
    ctx = teacher_ctx(school)
    received = []

    def receiver(sender, tenant_id, keys, **_):
        received.append((tenant_id, keys))

    with app.app_context(), views_changed.connected_to(receiver):
        result = recorder.record_attendance(ctx, school.class_c, '2024-03-01', [
            AttendanceMark(school.s1, AttendanceStatus.PRESENT),
            AttendanceMark(school.s2, AttendanceStatus.ABSENT),
            AttendanceMark(school.s3, AttendanceStatus.LATE),
        ])
        assert len(result.records) == 3
        again = recorder.record_attendance(ctx, school.class_c, date(2024, 3, 1), [
            AttendanceMark(school.s1, AttendanceStatus.PRESENT),
            AttendanceMark(school.s2, AttendanceStatus.PRESENT),
        ])
        assert again.session.id == result.session.id
        assert [r.student_id for r in again.records] == [school.s1, school.s2]
        assert _count(AttendanceRecord, student_id=school.s3) == 0

    assert len(received) == 2
    tenant_id, keys = received[0]
    assert tenant_id == school.tenant_a
    assert f'teacher/attendance/{school.class_c}' in keys
    assert 'parent/attendance' in keys
    assert 'admin/dashboard' in keys


def test_recorder_service_enforces_tenant_and_role(app, school):
    recorder = SessionRecorder()
    with app.app_context():
        # Right teacher id, wrong tenant: the class is invisible.
        ctx = teacher_ctx(school, tenant_id=school.tenant_b)
        with pytest.raises(NotAuthorized):
            recorder.record_grades(ctx, school.class_c, 'Arabic', [GradeEntry(school.s1, 10)])
        ctx = teacher_ctx(school, teacher_id=school.teacher2)
        with pytest.raises(NotAuthorized):
            recorder.record_attendance(ctx, school.class_c, '2024-03-01', [])
        assert _count(GradeSession) == 0
        assert _count(AttendanceSession) == 0


def test_resubmission_in_one_session_replaces_loaded_records(app, school):
    recorder = SessionRecorder()
    ctx = teacher_ctx(school)
    with app.app_context(), warnings.catch_warnings():
        warnings.simplefilter('error', SAWarning)
        first = recorder.record_attendance(ctx, school.class_c, '2024-03-01', [
            AttendanceMark(school.s1, AttendanceStatus.PRESENT),
            AttendanceMark(school.s2, AttendanceStatus.ABSENT),
        ])
        again = recorder.record_attendance(ctx, school.class_c, '2024-03-01', [
            AttendanceMark(school.s3, AttendanceStatus.LATE),
        ])
        assert len(first.records) == 2
        session = db.session.get(AttendanceSession, again.session.id)
        assert [(r.student_id, r.status) for r in session.records] == [(school.s3, 'late')]
        assert _count(AttendanceRecord) == 1


@pytest.mark.parametrize('field', ['class_id', 'student_id'])
def test_fractional_ids_are_rejected(app, school, as_user, field):
    payload = {
        'class_id': school.class_c,
        'subject': 'Arabic',
        'entries': [{'student_id': school.s1, 'value': 10}],
    }
    if field == 'class_id':
        payload['class_id'] = school.class_c + 0.9
    else:
        payload['entries'][0]['student_id'] = school.s1 + 0.5
    response = as_user(school.teacher).post('/api/teacher/grades', json=payload)
    assert response.status_code == 400
    assert response.get_json()['error'] == f'{field} must be an integer'
    with app.app_context():
        assert _count(GradeSession) == 0


def test_whole_number_floats_are_accepted_as_ids(school, as_user):
    response = _roll_call(as_user(school.teacher), school, '2024-03-01', [(float(school.s1), 'present')])
    assert response.status_code == 201
    assert response.get_json()['records'][0]['student_id'] == school.s1


@pytest.mark.parametrize('literal', ['Infinity', '-Infinity', 'NaN'])
def test_non_finite_numbers_are_rejected(app, school, as_user, literal):
    body = ('{"class_id": %d, "subject": "Arabic", "max_value": %s, '
            '"entries": [{"student_id": %d, "value": 5}]}' % (school.class_c, literal, school.s1))
    response = as_user(school.teacher).post('/api/teacher/grades', data=body, content_type='application/json')
    assert response.status_code == 400
    assert response.get_json()['error'] == 'max_value must be a number'
    with app.app_context():
        assert _count(GradeSession) == 0
