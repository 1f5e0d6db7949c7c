import logging
from datetime import date
from decimal import Decimal, InvalidOperation

from django.db import IntegrityError, transaction
from django.utils import timezone

from finance.exceptions import ConflictError, NotFoundError, ValidationError
from finance.models import Payment
from finance.notifications import schedule_payment_receipt
from finance.services.allocation import allocate_to_outstanding, lock_tenant

logger = logging.getLogger(__name__)


def to_amount(value):
    try:
        amount = Decimal(str(value)).quantize(Decimal('0.01'))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Invalid amount: {value!r}")
    if amount <= 0:
        raise ValidationError("Amount must be greater than zero")
    return amount


def _replay_or_conflict(existing, tenant_id, amount):
    if existing.tenant_id == tenant_id and existing.amount == amount:
        logger.warning(f"Duplicate payment reference {existing.external_reference}; returning the recorded payment")
        return existing
    raise ConflictError(
        f"Payment reference {existing.external_reference} is already recorded with different details",
        payment_id=existing.pk,
    )


def record_payment(tenant_id, amount, payment_method, external_reference=None,
                   status=Payment.Status.COMPLETED, payment_date=None, account_reference='',
                   phone_number='', notes='', user=None, allocate=True, notify=True):
    """
    Record money received for a tenant.

    ``external_reference`` is the idempotency key: replaying the same
    reference for the same tenant and amount returns the existing payment.
    Completed payments are allocated to outstanding invoices immediately.

    Returns a ``(payment, created)`` tuple.
    """
    amount = to_amount(amount)
    if status not in Payment.Status.values:
        raise ValidationError(f"Unknown payment status {status!r}")
    if payment_method not in dict(Payment.PAYMENT_METHODS):
        raise ValidationError(f"Unknown payment method {payment_method!r}")

    if external_reference:
        existing = Payment.objects.filter(external_reference=external_reference).first()
        if existing:
            return _replay_or_conflict(existing, tenant_id, amount), False

    with transaction.atomic():
        lock_tenant(tenant_id)
        try:
            with transaction.atomic():
                payment = Payment.objects.create(
                    tenant_id=tenant_id,
                    amount=amount,
                    unallocated_amount=amount,
                    payment_method=payment_method,
                    status=status,
                    external_reference=external_reference or None,
                    payment_date=payment_date or date.today(),
                    account_reference=account_reference or '',
                    phone_number=phone_number or '',
                    notes=notes or '',
                    recorded_by=user,
                    confirmed_at=timezone.now() if status == Payment.Status.COMPLETED else None,
                )
        except IntegrityError:
            existing = Payment.objects.filter(external_reference=external_reference).first()
            if existing is None:
                raise
            return _replay_or_conflict(existing, tenant_id, amount), False

        logger.info(
            f"Recorded {status} payment {payment.external_reference} of {amount} "
            f"for tenant {tenant_id} via {payment_method}"
        )

        if payment.status == Payment.Status.COMPLETED:
            if allocate:
                allocate_to_outstanding(payment.pk, user=user)
                payment.refresh_from_db()
            if notify:
                schedule_payment_receipt(payment.pk)

        return payment, True


def confirm_payment(payment_id, user=None):
    """Move a pending payment to completed and allocate it."""
    with transaction.atomic():
        tenant_id = Payment.objects.filter(pk=payment_id).values_list('tenant_id', flat=True).first()
        if tenant_id is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        lock_tenant(tenant_id)
        payment = Payment.objects.select_for_update().get(pk=payment_id)

        if payment.status == Payment.Status.COMPLETED:
            logger.warning(f"Payment {payment.external_reference} is already completed")
            return payment
        if payment.status == Payment.Status.FAILED:
            raise ConflictError(f"Payment {payment.external_reference} failed and cannot be confirmed")

        payment.status = Payment.Status.COMPLETED
        payment.confirmed_at = timezone.now()
        payment.save(update_fields=['status', 'confirmed_at', 'updated_at'])
        logger.info(f"Payment {payment.external_reference} confirmed by {user or 'system'}")

        allocate_to_outstanding(payment.pk, user=user)
        schedule_payment_receipt(payment.pk)
        payment.refresh_from_db()
        return payment
