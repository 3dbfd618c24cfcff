import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Generator

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from access import RequestContext
from app import create_app
from db_utils import RetryPolicy
from models import Account, ClassGroup, Role, Student, Tenant, db
from payments import PaymentProvider

WEBHOOK_SECRET = 'whsec_test'


class FakeProvider(PaymentProvider):
    def __init__(self):
        self.calls = []

    def create_checkout(self, amount, description, success_url, cancel_url, metadata):
        self.calls.append({
            'amount': amount,
            'description': description,
            'success_url': success_url,
            'cancel_url': cancel_url,
            'metadata': metadata,
        })
        return f"https://checkout.test/session/{metadata['payment_id']}"


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def app(monkeypatch: pytest.MonkeyPatch, provider) -> Generator:
    monkeypatch.setenv('REQUEST_LOG_SAMPLE_RATE', '1')
    application = create_app(
        {
            'TESTING': True,
            'SECRET_KEY': 'test-secret',
            'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
            'PAYMENT_WEBHOOK_SECRET': WEBHOOK_SECRET,
            'APP_URL': 'https://madrasa.test',
        },
        payment_provider=provider,
        retry_policy=RetryPolicy(max_retries=3, base_delay=0, sleep=lambda _delay: None),
    )
    with application.app_context():
        db.create_all()
    yield application


@pytest.fixture
def client(app):
    return app.test_client()


def _account(tenant, role, first_name, last_name):
    account = Account(
        tenant_id=tenant.id,
        email=f'{first_name.lower()}.{tenant.id}@example.org',
        password_hash='x',
        first_name=first_name,
        last_name=last_name,
        role=role.value,
    )
    db.session.add(account)
    db.session.flush()
    return account


@pytest.fixture
def school(app) -> SimpleNamespace:
    """Two tenants.

    Tenant A: admin, teacher T owning class C (S1, S2, S3), teacher T2 owning
    class D (S4), parent P of S1 and S2. Tenant B: teacher TB owning class CB
    (SB).
    """
    with app.app_context():
        tenant_a = Tenant(name='Mosque A')
        tenant_b = Tenant(name='Mosque B')
        db.session.add_all([tenant_a, tenant_b])
        db.session.flush()

        admin = _account(tenant_a, Role.ADMIN, 'Amina', 'Haddad')
        teacher = _account(tenant_a, Role.TEACHER, 'Youssef', 'Benali')
        teacher2 = _account(tenant_a, Role.TEACHER, 'Bilal', 'Saidi')
        parent = _account(tenant_a, Role.PARENT, 'Karim', 'Mansour')
        teacher_b = _account(tenant_b, Role.TEACHER, 'Omar', 'Farouk')
        admin_b = _account(tenant_b, Role.ADMIN, 'Hana', 'Zaid')

        class_c = ClassGroup(tenant_id=tenant_a.id, name='C', teacher_id=teacher.id)
        class_d = ClassGroup(tenant_id=tenant_a.id, name='D', teacher_id=teacher2.id)
        class_cb = ClassGroup(tenant_id=tenant_b.id, name='CB', teacher_id=teacher_b.id)
        db.session.add_all([class_c, class_d, class_cb])
        db.session.flush()

        def student(tenant, class_group, first_name, last_name, parent_id=None):
            s = Student(tenant_id=tenant.id, class_id=class_group.id, first_name=first_name,
                        last_name=last_name, parent_id=parent_id)
            db.session.add(s)
            db.session.flush()
            return s.id

        ns = SimpleNamespace(
            tenant_a=tenant_a.id,
            tenant_b=tenant_b.id,
            admin=admin.id,
            admin_b=admin_b.id,
            teacher=teacher.id,
            teacher2=teacher2.id,
            teacher_b=teacher_b.id,
            parent=parent.id,
            class_c=class_c.id,
            class_d=class_d.id,
            class_cb=class_cb.id,
            s1=student(tenant_a, class_c, 'Ilyes', 'Mansour', parent.id),
            s2=student(tenant_a, class_c, 'Sara', 'Mansour', parent.id),
            s3=student(tenant_a, class_c, 'Adam', 'Toumi'),
            s4=student(tenant_a, class_d, 'Nour', 'Kaci'),
            sb=student(tenant_b, class_cb, 'Zayd', 'Amrani'),
        )
        db.session.commit()
    return ns


def login(client, account_id):
    with client.session_transaction() as sess:
        sess['account_id'] = account_id


@pytest.fixture
def as_user(client):
    def _as_user(account_id):
        login(client, account_id)
        return client
    return _as_user


def teacher_ctx(school, teacher_id=None, tenant_id=None):
    return RequestContext(
        tenant_id=tenant_id or school.tenant_a,
        actor_id=teacher_id or school.teacher,
        role=Role.TEACHER,
    )
