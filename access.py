"""Request context and the authorization gate shared by every endpoint.

Sessions are issued by the identity provider, which signs the Flask session
cookie with the shared ``SECRET_KEY`` and stores the authenticated
``account_id`` in it. This module turns that id into an explicit
:class:`RequestContext` and hands it to the view, which passes it on to the
service layer. Services never look at the request themselves.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import wraps

from flask import session

from app_logging import merge_request_context
from errors import NotAuthorized
from models import Account, ClassGroup, Role, Student, db


@dataclass(frozen=True)
class RequestContext:
    tenant_id: int
    actor_id: int
    role: Role


def resolve_context() -> RequestContext:
    """Build the caller's context from the signed session cookie."""

    account_id = session.get('account_id')
    if account_id is None:
        raise NotAuthorized()
    account = db.session.get(Account, account_id)
    if account is None:
        raise NotAuthorized()
    ctx = RequestContext(tenant_id=account.tenant_id, actor_id=account.id, role=Role(account.role))
    merge_request_context(tenant_id=ctx.tenant_id, actor_id=ctx.actor_id, role=ctx.role.value)
    return ctx


def ensure_role(ctx: RequestContext, *roles: Role) -> None:
    if ctx.role not in roles:
        raise NotAuthorized()


def require_role(*roles: Role):
    """Resolve the caller, check the role and pass the context as ``ctx``."""

    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            ctx = resolve_context()
            ensure_role(ctx, *roles)
            return view(ctx, *args, **kwargs)

        return wrapper

    return decorator


def owned_class(ctx: RequestContext, class_id: int, *, for_update: bool = False) -> ClassGroup:
    """Return the class ``class_id`` if it is assigned to the calling teacher.

    With ``for_update`` the row is locked until the transaction ends, which
    serialises concurrent batch writes for the class.
    """

    query = db.select(ClassGroup).filter_by(
        id=class_id, tenant_id=ctx.tenant_id, teacher_id=ctx.actor_id
    )
    if for_update:
        query = query.with_for_update()
    class_group = db.session.execute(query).scalar_one_or_none()
    if class_group is None:
        raise NotAuthorized('class not found or not assigned to you', status_code=404)
    return class_group


def tenant_student(ctx: RequestContext, student_id: int) -> Student:
    student = db.session.execute(
        db.select(Student).filter_by(id=student_id, tenant_id=ctx.tenant_id)
    ).scalar_one_or_none()
    if student is None:
        raise NotAuthorized('student not found', status_code=404)
    return student


def visible_student_ids(ctx: RequestContext) -> list[int]:
    """Ids of the students a parent or student account may look at."""

    ensure_role(ctx, Role.PARENT, Role.STUDENT)
    column = Student.parent_id if ctx.role is Role.PARENT else Student.account_id
    return list(
        db.session.execute(
            db.select(Student.id).where(Student.tenant_id == ctx.tenant_id, column == ctx.actor_id)
        ).scalars()
    )


__all__ = [
    "RequestContext",
    "ensure_role",
    "owned_class",
    "require_role",
    "resolve_context",
    "tenant_student",
    "visible_student_ids",
]
