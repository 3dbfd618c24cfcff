"""Seed the database with a demo mosque.

Creates one account per role, two classes and a handful of students so the
portals have something to show. Every demo account uses the password
``madrasa123``.

Usage:
    python seed.py

"""

from typing import Dict

from werkzeug.security import generate_password_hash

from app import create_app
from models import Account, ClassGroup, Role, Student, Tenant, db

DEMO_PASSWORD = 'madrasa123'


def seed_data(tenant_name: str = 'Mosquée Al-Nour') -> Tenant:
    """Insert a demo tenant with accounts, classes and students."""
    tenant = Tenant(name=tenant_name)
    db.session.add(tenant)
    db.session.flush()

    password_hash = generate_password_hash(DEMO_PASSWORD)
    slug = f'tenant{tenant.id}'
    accounts: Dict[str, Account] = {}
    for role, first_name, last_name in (
        (Role.ADMIN, 'Amina', 'Haddad'),
        (Role.TEACHER, 'Youssef', 'Benali'),
        (Role.PARENT, 'Karim', 'Mansour'),
    ):
        account = Account(
            tenant_id=tenant.id,
            email=f'{role.value}@{slug}.example.org',
            password_hash=password_hash,
            first_name=first_name,
            last_name=last_name,
            role=role.value,
        )
        db.session.add(account)
        accounts[role.value] = account
    db.session.flush()

    beginners = ClassGroup(tenant_id=tenant.id, name='Qaida Nourania', level='beginner',
                           teacher_id=accounts['teacher'].id)
    hifz = ClassGroup(tenant_id=tenant.id, name='Hifz Juz Amma', level='intermediate')
    db.session.add_all([beginners, hifz])
    db.session.flush()

    parent_id = accounts['parent'].id
    for class_group, first_name, last_name, with_parent in (
        (beginners, 'Ilyes', 'Mansour', True),
        (beginners, 'Sara', 'Mansour', True),
        (beginners, 'Adam', 'Toumi', False),
        (hifz, 'Maryam', 'Kaci', False),
    ):
        db.session.add(Student(
            tenant_id=tenant.id,
            class_id=class_group.id,
            first_name=first_name,
            last_name=last_name,
            parent_id=parent_id if with_parent else None,
        ))
    db.session.commit()
    return tenant


if __name__ == '__main__':
    app = create_app()
    with app.app_context():
        db.create_all()
        tenant = seed_data()
        print(f'Seeded tenant {tenant.id} ({tenant.name}); password for all accounts: {DEMO_PASSWORD}')
