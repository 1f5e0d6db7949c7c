"""
Quarantine for money that cannot be attributed to a tenant, and the manual
triage that later turns it into a real payment.
"""
import logging

from django.db import IntegrityError, transaction
from django.utils import timezone

from finance.exceptions import ConflictError, NotFoundError, ReconciliationError, ValidationError
from finance.models import Invoice, Payment, UnmatchedPayment
from finance.services.allocation import allocate_explicit, lock_tenant
from finance.services.payments import record_payment, to_amount

logger = logging.getLogger(__name__)


def _narrow_by_short_code(units, business_short_code):
    if not business_short_code:
        return units
    narrowed = units.filter(property__paybill_number=business_short_code)
    return narrowed if narrowed.exists() else units


def resolve_account_reference(account_reference, business_short_code=None):
    """Map the account reference a payer typed to the active tenant it names.

    The dedicated payment account number of a unit wins over its unit
    number. Raises ReconciliationError when nothing or more than one
    tenant matches.
    """
    from property.models import Unit
    from tenant.models import Tenant

    reference = (account_reference or '').strip()
    if not reference:
        raise ReconciliationError("Payment carries no account reference")

    units = _narrow_by_short_code(
        Unit.objects.filter(payment_account_number__iexact=reference), business_short_code)
    if not units.exists():
        units = _narrow_by_short_code(
            Unit.objects.filter(unit_number__iexact=reference), business_short_code)

    unit_ids = list(units.values_list('id', flat=True)[:2])
    if not unit_ids:
        raise ReconciliationError(f"Account reference {reference!r} does not match any unit")
    if len(unit_ids) > 1:
        raise ReconciliationError(f"Account reference {reference!r} matches more than one unit")

    tenants = list(Tenant.objects.filter(unit_id=unit_ids[0], status=Tenant.TenantStatus.ACTIVE)[:2])
    if not tenants:
        raise ReconciliationError(f"Unit for account reference {reference!r} has no active tenant")
    if len(tenants) > 1:
        raise ReconciliationError(f"Unit for account reference {reference!r} has more than one active tenant")
    return tenants[0]


def quarantine(external_reference, amount, account_reference='', raw_payload=None, reason='',
               phone_number='', business_short_code='', rental_property=None, checkout_request_id=''):
    """Park unattributable money. A repeated reference returns the existing record.

    ``checkout_request_id`` ties money that answered an STK prompt to the
    push, so settle_parked_push() can claim it once the push is known.

    Returns a ``(record, created)`` tuple.
    """
    if not external_reference:
        raise ValidationError("External reference is required to quarantine a payment")
    amount = to_amount(amount)

    existing = UnmatchedPayment.objects.filter(external_reference=external_reference).first()
    if existing:
        logger.warning(f"Unmatched payment {external_reference} already quarantined")
        return existing, False

    if rental_property is None and business_short_code:
        from property.models import Property
        rental_property = Property.objects.filter(paybill_number=business_short_code).first()

    try:
        with transaction.atomic():
            record = UnmatchedPayment.objects.create(
                external_reference=external_reference,
                amount=amount,
                account_reference=account_reference or '',
                phone_number=phone_number or '',
                business_short_code=business_short_code or '',
                raw_payload=raw_payload or {},
                reason=reason or '',
                rental_property=rental_property,
                checkout_request_id=checkout_request_id or '',
            )
    except IntegrityError:
        return UnmatchedPayment.objects.get(external_reference=external_reference), False

    logger.info(
        f"Quarantined {amount} under {external_reference} "
        f"(account reference {account_reference!r}): {reason}"
    )
    return record, True


def _lock_record(unmatched_id):
    try:
        return UnmatchedPayment.objects.select_for_update().get(pk=unmatched_id)
    except UnmatchedPayment.DoesNotExist:
        raise NotFoundError(f"Unmatched payment {unmatched_id} not found")


def update_status(unmatched_id, status, user=None, notes=''):
    """Triage between pending and ignored. Only resolve() may mark a record resolved."""
    if status == UnmatchedPayment.Status.RESOLVED:
        raise ValidationError("Use resolve to mark an unmatched payment as resolved")
    if status not in (UnmatchedPayment.Status.PENDING, UnmatchedPayment.Status.IGNORED):
        raise ValidationError(f"Unknown unmatched payment status {status!r}")

    with transaction.atomic():
        record = _lock_record(unmatched_id)
        if record.status == UnmatchedPayment.Status.RESOLVED:
            raise ConflictError(f"Unmatched payment {record.external_reference} is already resolved")
        if record.status == status:
            return record

        previous = record.status
        record.status = status
        if notes:
            record.resolution_notes = notes
        record.save(update_fields=['status', 'resolution_notes', 'updated_at'])
        logger.info(
            f"Unmatched payment {record.external_reference} moved {previous} -> {status} by {user or 'system'}")
        return record


def _invoice_for_period(tenant_id, period):
    period_start, period_end = period
    if period_end <= period_start:
        raise ValidationError("Period end must be after period start")
    invoice = Invoice.objects.filter(
        tenant_id=tenant_id, period_start=period_start, period_end=period_end).first()
    if invoice is None:
        raise NotFoundError(f"No invoice for tenant {tenant_id} covering {period_start} to {period_end}")
    return invoice


def _push_already_paid(checkout_request_id):
    from mpesa.models import ExternalTransaction
    return ExternalTransaction.objects.filter(
        checkout_request_id=checkout_request_id, payment__isnull=False).exists()


def settle_parked_push(unmatched_id, tenant_id, checkout_request_id):
    """Claim money an early STK callback parked, as the payment of the push.

    A record someone already resolved keeps its payment and the push links
    to it. Returns ``(record, payment)``.
    """
    with transaction.atomic():
        lock_tenant(tenant_id)
        record = _lock_record(unmatched_id)

        if record.status == UnmatchedPayment.Status.RESOLVED:
            if record.resolved_payment.tenant_id != tenant_id:
                logger.warning(
                    f"STK push {checkout_request_id} belongs to tenant {tenant_id} but "
                    f"{record.external_reference} was resolved to tenant {record.resolved_payment.tenant_id}")
            return record, record.resolved_payment

        payment, _ = record_payment(
            tenant_id=tenant_id,
            amount=record.amount,
            payment_method='mobile_money',
            external_reference=record.external_reference,
            account_reference=record.account_reference,
            phone_number=record.phone_number,
            notes=f"M-Pesa STK push {checkout_request_id}",
        )
        record.status = UnmatchedPayment.Status.RESOLVED
        record.resolved_payment = payment
        record.resolved_at = timezone.now()
        record.resolution_notes = f"Settled by STK push {checkout_request_id}"
        record.save()

        logger.info(
            f"Parked payment {record.external_reference} claimed by STK push "
            f"{checkout_request_id} as payment {payment.pk}")
        return record, payment


def resolve(unmatched_id, tenant_id, invoice_id=None, period=None, user=None, notes=''):
    """Attribute a quarantined payment to a tenant and replay it into allocation.

    With an invoice (or a billing period naming one) the money goes to that
    invoice; otherwise it is spread over the tenant's outstanding invoices.
    The record keeps status resolved even if the payment is reversed later.
    """
    if invoice_id is None and period is not None:
        invoice_id = _invoice_for_period(tenant_id, period).pk
    elif invoice_id is not None and not Invoice.objects.filter(pk=invoice_id, tenant_id=tenant_id).exists():
        raise NotFoundError(f"Invoice {invoice_id} not found for tenant {tenant_id}")

    with transaction.atomic():
        lock_tenant(tenant_id)
        record = _lock_record(unmatched_id)

        if record.status != UnmatchedPayment.Status.PENDING:
            raise ConflictError(
                f"Unmatched payment {record.external_reference} is {record.status} and cannot be resolved")
        if Payment.objects.filter(external_reference=record.external_reference).exists():
            raise ConflictError(
                f"A payment with reference {record.external_reference} already exists")
        if record.checkout_request_id and _push_already_paid(record.checkout_request_id):
            raise ConflictError(
                f"STK push {record.checkout_request_id} already settled "
                f"the money parked as {record.external_reference}")

        payment, _ = record_payment(
            tenant_id=tenant_id,
            amount=record.amount,
            payment_method='mobile_money',
            external_reference=record.external_reference,
            account_reference=record.account_reference,
            phone_number=record.phone_number,
            notes=f"Resolved from unmatched payment {record.external_reference}",
            user=user,
            allocate=invoice_id is None,
        )
        if invoice_id is not None:
            allocate_explicit(payment.pk, invoice_id, user=user)
            payment.refresh_from_db()

        record.status = UnmatchedPayment.Status.RESOLVED
        record.resolved_payment = payment
        record.resolved_by = user
        record.resolved_at = timezone.now()
        record.resolution_notes = notes or ''
        record.save()

        logger.info(
            f"Unmatched payment {record.external_reference} resolved to tenant {tenant_id} "
            f"as payment {payment.pk} by {user or 'system'}"
        )
        return record
