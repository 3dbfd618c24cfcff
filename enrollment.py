"""Account creation: mosque sign-up, staff accounts and student self-registration.

An admin creates the student record and hands its id to the family as the
enrollment code. The student then registers with that code, their name and
an email; the new account is attached to the record exactly once.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from werkzeug.security import generate_password_hash

from app_logging import get_logger
from db_utils import run_in_transaction
from errors import ValidationError
from models import Account, Role, Student, Tenant, db

_logger = get_logger("madrasa.enrollment")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 6


@dataclass
class AccountDetails:
    first_name: str
    last_name: str
    email: str
    password: str
    phone: Optional[str] = None

    def cleaned(self) -> 'AccountDetails':
        """Return a normalised copy, raising ``ValidationError`` on bad input."""

        first_name = (self.first_name or '').strip()
        last_name = (self.last_name or '').strip()
        email = (self.email or '').strip().lower()
        if not first_name:
            raise ValidationError('first_name is required')
        if not last_name:
            raise ValidationError('last_name is required')
        if not _EMAIL_RE.match(email):
            raise ValidationError('invalid email')
        if len(self.password or '') < MIN_PASSWORD_LENGTH:
            raise ValidationError(f'password must be at least {MIN_PASSWORD_LENGTH} characters')
        return AccountDetails(first_name, last_name, email, self.password, (self.phone or '').strip() or None)


def add_account(tenant_id: int, role: Role, details: AccountDetails) -> Account:
    """Insert an account inside the caller's transaction.

    ``details`` must already be cleaned. Email uniqueness is global.
    """

    if db.session.execute(db.select(Account.id).filter_by(email=details.email)).first() is not None:
        raise ValidationError('email already in use')
    account = Account(
        tenant_id=tenant_id,
        email=details.email,
        password_hash=generate_password_hash(details.password),
        first_name=details.first_name,
        last_name=details.last_name,
        phone=details.phone,
        role=role.value,
    )
    db.session.add(account)
    db.session.flush()
    return account


def register_mosque(name: str, admin: AccountDetails, address: Optional[str] = None,
                    phone: Optional[str] = None, email: Optional[str] = None):
    """Create a tenant and its first admin in one transaction.

    Returns ``(tenant, account)``. The tenant id doubles as the mosque code.
    """

    name = (name or '').strip()
    if not name:
        raise ValidationError('mosque name is required')
    details = admin.cleaned()
    email = (email or '').strip().lower() or None
    if email is not None and not _EMAIL_RE.match(email):
        raise ValidationError('invalid mosque email')

    def work():
        tenant = Tenant(name=name, address=address or None, phone=phone or None, email=email)
        db.session.add(tenant)
        db.session.flush()
        return tenant, add_account(tenant.id, Role.ADMIN, details)

    tenant, account = run_in_transaction(work)
    _logger.info("mosque registered", extra={"tenant_id": tenant.id, "account_id": account.id})
    return tenant, account


def link_student_account(
    code,
    first_name: str,
    last_name: str,
    email: str,
    password: str,
    phone: Optional[str] = None,
) -> Account:
    details = AccountDetails(first_name, last_name, email, password, phone).cleaned()
    try:
        student_id = int(code)
    except (TypeError, ValueError):
        raise ValidationError('invalid enrollment code')

    def work() -> Account:
        student = db.session.execute(
            db.select(Student).filter_by(id=student_id).with_for_update()
        ).scalar_one_or_none()
        if student is None:
            raise ValidationError('invalid enrollment code')
        if student.account_id is not None:
            raise ValidationError('this student already has an account')
        if (student.first_name.lower() != details.first_name.lower()
                or student.last_name.lower() != details.last_name.lower()):
            raise ValidationError('name does not match the student record')

        account = add_account(student.tenant_id, Role.STUDENT, details)
        student.account_id = account.id
        return account

    account = run_in_transaction(work)
    _logger.info("student account linked", extra={"student_id": student_id, "account_id": account.id})
    return account
