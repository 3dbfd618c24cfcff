"""Fee payments: creation, checkout hand-off and provider callbacks.

The payment provider is an injected collaborator. It creates hosted checkout
pages and later calls back ``POST /api/webhooks/payments`` with a signed
event. The callback is the only code path that marks a payment as paid.

Signature header format::

    X-Payment-Signature: t=<unix seconds>,v1=<hex hmac-sha256>

where the HMAC covers ``"<t>.<raw request body>"`` keyed with the shared
webhook secret.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from app_logging import get_logger
from access import RequestContext, ensure_role, tenant_student
from db_utils import run_in_transaction
from errors import AppError, NotAuthorized, ValidationError
from models import Payment, PaymentStatus, Role, db
from signals import invalidate, payment_views

_logger = get_logger("madrasa.payments")

SIGNATURE_HEADER = 'X-Payment-Signature'
COMPLETED_EVENT = 'checkout.session.completed'
_PAYABLE = (PaymentStatus.PENDING.value, PaymentStatus.OVERDUE.value)


class PaymentProvider:
    """Interface of the hosted checkout collaborator."""

    def create_checkout(
        self,
        amount: float,
        description: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, Any],
    ) -> str:
        raise NotImplementedError


class UnconfiguredPaymentProvider(PaymentProvider):
    def create_checkout(self, amount, description, success_url, cancel_url, metadata):
        raise AppError('payment provider is not configured', status_code=503)


def create_payment(ctx: RequestContext, student_id: int, amount: float, due_date,
                   description: Optional[str] = None) -> Payment:
    ensure_role(ctx, Role.ADMIN)
    if amount is None or amount <= 0:
        raise ValidationError('amount must be positive')

    def work() -> Payment:
        student = tenant_student(ctx, student_id)
        payment = Payment(
            tenant_id=ctx.tenant_id,
            student_id=student.id,
            parent_id=student.parent_id,
            amount=amount,
            description=description or None,
            due_date=due_date,
            status=PaymentStatus.PENDING.value,
        )
        db.session.add(payment)
        db.session.flush()
        return payment

    payment = run_in_transaction(work)
    invalidate(create_payment, ctx.tenant_id, payment_views())
    return payment


def list_parent_payments(ctx: RequestContext) -> List[Payment]:
    ensure_role(ctx, Role.PARENT)
    return list(
        db.session.execute(
            db.select(Payment)
            .filter_by(tenant_id=ctx.tenant_id, parent_id=ctx.actor_id)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
        ).scalars()
    )


def list_payments(ctx: RequestContext, status: Optional[str] = None) -> List[Payment]:
    """Every payment of the tenant, newest first, optionally by status."""

    ensure_role(ctx, Role.ADMIN)
    query = db.select(Payment).filter_by(tenant_id=ctx.tenant_id)
    if status:
        try:
            query = query.filter_by(status=PaymentStatus(status).value)
        except ValueError:
            raise ValidationError('unknown payment status')
    return list(
        db.session.execute(query.order_by(Payment.created_at.desc(), Payment.id.desc())).scalars()
    )


def start_checkout(ctx: RequestContext, payment_id: int, provider: PaymentProvider,
                   app_url: str) -> str:
    """Ask the provider for a checkout page and return its URL."""

    ensure_role(ctx, Role.PARENT)
    payment = db.session.execute(
        db.select(Payment).where(
            Payment.id == payment_id,
            Payment.tenant_id == ctx.tenant_id,
            Payment.parent_id == ctx.actor_id,
            Payment.status.in_(_PAYABLE),
        )
    ).scalar_one_or_none()
    if payment is None:
        raise NotAuthorized('payment not found or already paid', status_code=404)

    student = payment.student
    description = payment.description or f'Fees - {student.first_name} {student.last_name}'
    url = provider.create_checkout(
        amount=payment.amount,
        description=description,
        success_url=f'{app_url}/parent/payments?success=true',
        cancel_url=f'{app_url}/parent/payments?canceled=true',
        metadata={'payment_id': str(payment.id)},
    )
    _logger.info("checkout started", extra={"payment_id": payment.id})
    return url


def sign_payload(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build the signature header value for ``payload``."""

    timestamp = int(time.time()) if timestamp is None else int(timestamp)
    signed = f'{timestamp}.'.encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f't={timestamp},v1={digest}'


def verify_signature(payload: bytes, header: Optional[str], secret: str,
                     tolerance: int = 300, now: Optional[float] = None) -> None:
    if not secret:
        raise AppError('webhook secret is not configured', status_code=500)
    if not header:
        raise ValidationError('missing signature')

    parts: Dict[str, List[str]] = {}
    for item in header.split(','):
        key, _, value = item.strip().partition('=')
        parts.setdefault(key, []).append(value)
    try:
        timestamp = int(parts['t'][0])
    except (KeyError, ValueError):
        raise ValidationError('malformed signature')

    now = time.time() if now is None else now
    if abs(now - timestamp) > tolerance:
        raise ValidationError('signature timestamp outside tolerance')

    expected = sign_payload(payload, secret, timestamp).split('v1=', 1)[1]
    if not any(hmac.compare_digest(expected, candidate) for candidate in parts.get('v1', [])):
        raise ValidationError('invalid signature')


def _event_object(event: dict) -> dict:
    """Return ``data.object`` of a completed checkout with ``metadata`` as a dict."""

    data = event.get('data')
    if not isinstance(data, dict):
        raise ValidationError('invalid event')
    obj = data.get('object')
    if not isinstance(obj, dict):
        raise ValidationError('invalid event')
    metadata = obj.get('metadata')
    if metadata is None:
        metadata = {}
    if not isinstance(metadata, dict):
        raise ValidationError('invalid event')
    return dict(obj, metadata=metadata)


def handle_event(payload: bytes, header: Optional[str], secret: str, tolerance: int = 300) -> Optional[Payment]:
    """Verify and apply a provider callback.

    Returns the payment that was marked paid, or ``None`` when the event did
    not change anything.
    """

    verify_signature(payload, header, secret, tolerance)
    try:
        event = json.loads(payload)
    except ValueError:
        raise ValidationError('invalid JSON payload')
    if not isinstance(event, dict):
        raise ValidationError('invalid event')

    if event.get('type') != COMPLETED_EVENT:
        _logger.info("ignoring payment event", extra={"event_type": event.get('type')})
        return None

    obj = _event_object(event)
    payment_id = obj['metadata'].get('payment_id')
    if not payment_id:
        _logger.warning("completed checkout without payment_id")
        return None
    try:
        payment_id = int(payment_id)
    except (TypeError, ValueError):
        raise ValidationError('invalid payment_id in event metadata')

    def work() -> Optional[Payment]:
        payment = db.session.execute(
            db.select(Payment).filter_by(id=payment_id).with_for_update()
        ).scalar_one_or_none()
        if payment is None:
            _logger.warning("completed checkout for unknown payment", extra={"payment_id": payment_id})
            return None
        if payment.status == PaymentStatus.PAID.value:
            return None
        payment.status = PaymentStatus.PAID.value
        payment.paid_at = datetime.now(timezone.utc).replace(tzinfo=None)
        payment.provider_reference = obj.get('payment_intent') or obj.get('id')
        return payment

    payment = run_in_transaction(work)
    if payment is not None:
        _logger.info("payment confirmed", extra={"payment_id": payment.id})
        invalidate(handle_event, payment.tenant_id, payment_views())
    return payment
